"""
Resolver module for StreamBot.

Turns user queries into QueueEntries and entries into pipeline input.
"""

from .base import MediaResolver
from .ytdlp_resolver import YtDlpResolver

__all__ = ["MediaResolver", "YtDlpResolver"]
