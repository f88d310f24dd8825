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
Context Managers for Safe State Management

Provides context managers that guarantee cleanup even when errors occur.
Replaces manual flag management patterns with safer, more Pythonic code.
"""

from contextlib import contextmanager
from typing import Any, Optional

from core.cancellation import CancellationToken


@contextmanager
def bound_cancellation(session: Any, token: Optional[CancellationToken] = None):
    """
    Bind a cancellation token to a guild session for the duration of a bulk task.

    Usage:
        with bound_cancellation(session) as cancellation:
            await queue.process_playlist(msg, cancellation, ...)

    The token is unbound exactly once, whether the block finishes, raises,
    or stops early because the token was cancelled.

    Args:
        session: GuildSession (anything with bind_cancellation/unbind_cancellation)
        token: Token to bind, a new one is created if omitted
    """
    token = session.bind_cancellation(token or CancellationToken())
    try:
        yield token
    finally:
        session.unbind_cancellation(token)


@contextmanager
def suppress_callbacks(controller: Any):
    """
    Temporarily suppress track-end callbacks during manual playback control.

    Usage:
        with suppress_callbacks(controller):
            voice_client.stop()  # Won't trigger the track-end callback

    Also invalidates the active playback session so that any in-flight
    callbacks for the previous stream exit early.

    Args:
        controller: PlaybackController instance with _suppress_callback attribute
    """
    cancel_session = getattr(controller, "cancel_active_session", None)
    if callable(cancel_session):
        cancel_session()

    # Preserve previous state to handle nested calls correctly
    prev = getattr(controller, "_suppress_callback", False)
    controller._suppress_callback = True
    try:
        yield
    finally:
        controller._suppress_callback = prev
