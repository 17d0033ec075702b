"""
Queue entry model for StreamBot.

Defines QueueEntry, the immutable record produced by the resolver and consumed
read-only by the playback controller.
"""

import dataclasses
import enum
import uuid
from dataclasses import dataclass, field


class EntryKind(enum.Enum):
    """How the playback attempt obtains its pipeline input."""
    REMOTE_RESOLVED = "youtube"  # downloaded to a transient local file first
    LIVE_STREAM = "live"  # direct stream URI resolved at play time, no temp file
    DIRECT_LINK = "direct"  # source is handed to ffmpeg as-is


@dataclass(frozen=True)
class QueueEntry:
    """
    A single requested media item.

    Attributes:
        title: Human-readable title shown in status and queue listings
        source: Page URL, direct media URL or local path
        kind: How the source becomes pipeline input
        is_live: True if the source is a live broadcast
        requester: Name of whoever asked for it
        entry_id: Unique per entry, so the same URL queued twice is two entries
    """
    title: str
    source: str
    kind: EntryKind = EntryKind.DIRECT_LINK
    is_live: bool = False
    requester: str = ""
    entry_id: uuid.UUID = field(default_factory=uuid.uuid4, compare=False)

    def with_requester(self, requester: str) -> "QueueEntry":
        """Return a copy stamped with requester and a fresh entry_id."""
        return dataclasses.replace(self, requester=requester, entry_id=uuid.uuid4())

    @property
    def needs_download(self) -> bool:
        return self.kind == EntryKind.REMOTE_RESOLVED and not self.is_live

    @property
    def needs_stream_uri(self) -> bool:
        return self.is_live and self.kind in (EntryKind.REMOTE_RESOLVED, EntryKind.LIVE_STREAM)
