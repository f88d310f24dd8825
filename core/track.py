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
Queue Entries and the Portable Queue Format

Represents tracks waiting in (or playing from) a guild queue, plus the versioned
export format used by the export/import commands and by backups:

    {"version": QUEUE_FORMAT_VERSION, "data": [{...metadata, "addedBy": {...}}, ...]}
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Import from config
from config import QUEUE_FORMAT_VERSION


class IncompatibleQueueVersion(ValueError):
    """Raised when an exported queue was written by a different format version."""

    def __init__(self, found):
        self.found = found
        self.expected = QUEUE_FORMAT_VERSION
        super().__init__(f"queue format v{found} is not compatible with v{QUEUE_FORMAT_VERSION}")


class SourceType(str, Enum):
    """Where a queue entry's audio comes from."""
    CUSTOM = "custom"
    YOUTUBE = "youtube"


def format_duration(length: float) -> str:
    """
    Format a length in seconds as MM:SS or HH:MM:SS.

    Live entries (NaN length) are shown as "LIVE".
    """
    if length is None or math.isnan(length):
        return "LIVE"
    mins, secs = divmod(int(length), 60)
    hrs, mins = divmod(mins, 60)
    if hrs > 0:
        return f"{hrs:02d}:{mins:02d}:{secs:02d}"
    return f"{mins:02d}:{secs:02d}"


@dataclass(eq=False)
class TrackMetadata:
    """
    Normalized description of a track, independent of which strategy fetched it.

    Invariant: ``length`` is NaN if and only if ``is_live`` is True.
    """

    title: str
    description: str = ""
    length: float = 0.0
    channel: str = ""
    channel_url: str = ""
    thumbnail: str = ""
    is_live: bool = False

    def __post_init__(self):
        if self.is_live:
            self.length = math.nan
        elif self.length is None or math.isnan(self.length):
            # A non-live source with no usable length is stored as zero seconds
            self.length = 0.0

    def export(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "length": None if self.is_live else self.length,
            "channel": self.channel,
            "channelUrl": self.channel_url,
            "thumbnail": self.thumbnail,
            "isLive": self.is_live,
        }

    @classmethod
    def from_export(cls, data: Dict[str, Any]) -> "TrackMetadata":
        length = data.get("length")
        return cls(
            title=data.get("title") or "",
            description=data.get("description") or "",
            length=math.nan if length is None else float(length),
            channel=data.get("channel") or data.get("author") or "",
            channel_url=data.get("channelUrl") or "",
            thumbnail=data.get("thumbnail") or "",
            is_live=bool(data.get("isLive", False)),
        )

    def __eq__(self, other) -> bool:
        """Compare by exported form so two live entries (NaN lengths) are equal."""
        return isinstance(other, TrackMetadata) and self.export() == other.export()


@dataclass(frozen=True)
class Submitter:
    """The guild member who added an entry (kept as plain ids for export)."""

    user_id: str
    display_name: str = ""

    @classmethod
    def from_member(cls, member) -> "Submitter":
        return cls(user_id=str(member.id), display_name=getattr(member, "display_name", "") or "")

    def export(self) -> Dict[str, str]:
        return {"userId": self.user_id, "displayName": self.display_name}

    @classmethod
    def from_export(cls, data: Optional[Dict[str, Any]]) -> "Submitter":
        data = data or {}
        return cls(user_id=str(data.get("userId", "0")), display_name=data.get("displayName", ""))


class QueueEntry:
    """
    A track waiting in the queue (index 0 is the one playing).

    Attributes:
        entry_id: Unique identifier (auto-incremented), used to discard stale
                  playback callbacks
        url: Canonical source url
        source_type: SourceType tag
        metadata: TrackMetadata
        added_by: Submitter
        source: Resolver object for this url (holds the optional stream cache)

    Design notes:
        - Equality is identity based (entry_id); same_track() compares content
        - metadata is refreshed in place when a live stream restarts
    """

    _next_id = 0  # Class variable: auto-incrementing ID counter

    def __init__(self, url: str, source_type: SourceType, metadata: TrackMetadata,
                 added_by: Submitter, source=None):
        self.entry_id = QueueEntry._next_id
        QueueEntry._next_id += 1
        self.url = url
        self.source_type = SourceType(source_type)
        self.metadata = metadata
        self.added_by = added_by
        self.source = source

    @property
    def title(self) -> str:
        return self.metadata.title

    def export(self) -> Dict[str, Any]:
        """Export as one item of the portable queue format."""
        return {
            "url": self.url,
            **self.metadata.export(),
            "sourceType": self.source_type.value,
            "addedBy": self.added_by.export(),
        }

    def same_track(self, other: "QueueEntry") -> bool:
        return (
            self.url == other.url
            and self.metadata == other.metadata
            and self.added_by == other.added_by
        )

    def __eq__(self, other) -> bool:
        return isinstance(other, QueueEntry) and self.entry_id == other.entry_id

    def __hash__(self) -> int:
        return hash(self.entry_id)

    def __repr__(self) -> str:
        return f"QueueEntry(id={self.entry_id}, title={self.title!r}, url={self.url})"


def build_queue_export(entries: List[QueueEntry]) -> Dict[str, Any]:
    """Build a portable queue export for the given entries."""
    return {
        "version": QUEUE_FORMAT_VERSION,
        "data": [entry.export() for entry in entries],
    }


def parse_queue_export(payload: Any) -> List[Tuple[Dict[str, Any], Submitter]]:
    """
    Validate a portable queue export.

    Returns:
        List of (item, submitter) pairs in queue order

    Raises:
        IncompatibleQueueVersion: version differs from QUEUE_FORMAT_VERSION
        ValueError: payload is not a queue export at all
    """
    if not isinstance(payload, dict) or "version" not in payload:
        raise ValueError("not a queue export")
    if payload["version"] != QUEUE_FORMAT_VERSION:
        raise IncompatibleQueueVersion(payload["version"])
    data = payload.get("data")
    if not isinstance(data, list):
        raise ValueError("queue export has no data list")

    items = []
    for item in data:
        if not isinstance(item, dict) or not item.get("url"):
            raise ValueError("queue export contains an invalid entry")
        items.append((item, Submitter.from_export(item.get("addedBy"))))
    return items
