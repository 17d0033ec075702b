from .base_sink import BaseSink
from .file_sink import FileSink
from .http_sink import HTTPPushSink
from .null_sink import NullSink


def create_output_sink(config) -> BaseSink:
    """
    Create an output sink based on configuration.

    Config fields:
        output_mode: "null" | "file" | "http" (default: "null")
        output_path: Path for file output when mode is "file"
        output_url: Ingest URL when mode is "http"

    Returns:
        BaseSink instance configured according to config

    Raises:
        ValueError: Unknown mode, or http mode without a URL
    """
    mode = (config.output_mode or "null").lower()

    if mode == "file":
        return FileSink(config.output_path)

    if mode == "http":
        if not config.output_url:
            raise ValueError("STREAM_OUTPUT_URL is required when STREAM_OUTPUT_MODE=http")
        return HTTPPushSink(config.output_url)

    if mode == "null":
        # Discard output, playback logic still runs
        return NullSink()

    raise ValueError(f"Unknown STREAM_OUTPUT_MODE: {config.output_mode!r}")
