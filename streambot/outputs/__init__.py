"""
Outputs module for StreamBot.

This package contains output sinks (null, file, HTTP push) that receive the
ffmpeg pipeline's stream for each playback attempt.
"""

from .base_sink import BaseSink
from .null_sink import NullSink
from .file_sink import FileSink
from .http_sink import HTTPPushSink
from .factory import create_output_sink

__all__ = [
    "BaseSink",
    "NullSink",
    "FileSink",
    "HTTPPushSink",
    "create_output_sink",
]
