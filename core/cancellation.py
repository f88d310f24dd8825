# Copyright (C) 2025 grodz
#
# This file is part of Cadence.
#
# Cadence is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Cooperative Cancellation

Bulk operations (playlist imports, queue imports) poll a token between items
instead of being interrupted. In-flight network calls always run to completion;
the token only decides whether the next item is started.
"""

from dataclasses import dataclass, field
from itertools import count
from time import monotonic as _now


_TOKEN_IDS = count(1)


@dataclass(slots=True, eq=False)
class CancellationToken:
    """Cancellation flag bound to one long-running task.

    ``cancelled`` only ever goes from False to True. Tokens compare by identity
    so a guild session can hold several of them without collisions.
    """

    id: int = field(default_factory=lambda: next(_TOKEN_IDS))
    created_at: float = field(default_factory=_now)
    _cancelled: bool = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Mark the token cancelled.

        Returns:
            True if this call cancelled the token, False if it already was.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        return True
