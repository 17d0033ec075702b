"""
Media resolver interface for StreamBot.

A resolver turns a user query into QueueEntries at request time, and turns an
entry into pipeline input at play time.
"""

from abc import ABC, abstractmethod
from typing import List

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.queue_entry import QueueEntry


class MediaResolver(ABC):
    """
    Abstract base class for media resolvers.

    All resolvers must implement resolve(), resolve_stream_uri() and
    download_to_local_file().
    """

    @abstractmethod
    def resolve(self, query: str, requester: str = "") -> List[QueueEntry]:
        """
        Resolve a video link, playlist link, direct link or free-text search.

        Args:
            query: Raw user input
            requester: Name stamped on the produced entries

        Returns:
            Entries in play order (never empty)

        Raises:
            RestrictedContentError: Content exists but access is denied
            ResolutionError: Nothing playable was found
        """
        ...

    @abstractmethod
    def resolve_stream_uri(self, entry: QueueEntry) -> str:
        """
        Get a direct stream URI ffmpeg can read (used for live entries).

        Raises:
            ResolutionError: No stream URI could be obtained
        """
        ...

    @abstractmethod
    def download_to_local_file(self, entry: QueueEntry, token: CancellationToken) -> str:
        """
        Download entry to a transient local file.

        The download aborts when token is cancelled; partial files are removed.

        Returns:
            Path of the downloaded file

        Raises:
            CancellationExpected: token was cancelled during the download
            ResolutionError: The download failed
        """
        ...
