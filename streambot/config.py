"""
Configuration management for StreamBot.

Reads configuration from .env file and environment variables with sensible defaults.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Default .env file location (relative to the working directory)
DEFAULT_ENV_FILE = Path(".env")

VALID_VIDEO_CODECS = ["VP8", "H264", "H265", "VP9", "AV1", "H264_NVENC", "HEVC_NVENC"]
VALID_PRESETS = ["ultrafast", "superfast", "veryfast", "faster", "fast", "medium", "slow", "slower", "veryslow"]
VALID_OUTPUT_MODES = ["null", "file", "http"]

logger = logging.getLogger(__name__)


def _load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("STREAMBOT_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "")
    if value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name, "")
    if value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_video_codec(value: Optional[str]) -> str:
    """
    Normalize a codec name. Unknown values fall back to H264 with a warning.

    Args:
        value: Raw codec name (case-insensitive)

    Returns:
        One of VALID_VIDEO_CODECS
    """
    if not value:
        return "H264"
    codec = value.strip().upper()
    if codec in VALID_VIDEO_CODECS:
        return codec
    logger.warning(f"Invalid or unsupported video codec {value!r}. Defaulting to H264.")
    return "H264"


def parse_preset(value: Optional[str]) -> str:
    """Normalize an x264/x265 preset name. Unknown values fall back to ultrafast."""
    preset = (value or "").strip().lower()
    return preset if preset in VALID_PRESETS else "ultrafast"


@dataclass
class StreamConfig:
    """StreamBot configuration loaded from .env file and environment variables."""

    # Command binding
    prefix: str = "$"
    sink_target: str = "default"

    # Stream encoding
    width: int = 1280
    height: int = 720
    fps: int = 30
    bitrate_kbps: int = 2000
    max_bitrate_kbps: int = 2500
    hardware_acceleration: bool = False
    h26x_preset: str = "ultrafast"
    video_codec: str = "H264"
    respect_video_params: bool = False

    # Playback
    idle_disconnect_sec: float = 30.0
    terminate_grace_sec: float = 2.0
    temp_dir: str = field(default_factory=tempfile.gettempdir)
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"

    # Output sink
    output_mode: str = "null"
    output_path: str = "/tmp/streambot_output.ts"
    output_url: Optional[str] = None

    # HTTP control API
    http_enabled: bool = False
    http_host: str = "127.0.0.1"
    http_port: int = 8010

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def load_config(cls) -> "StreamConfig":
        """
        Load configuration from environment variables.

        Returns:
            StreamConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        config = cls(
            prefix=os.getenv("STREAM_PREFIX", "$"),
            sink_target=os.getenv("STREAM_TARGET", "default"),
            width=_env_int("STREAM_WIDTH", 1280),
            height=_env_int("STREAM_HEIGHT", 720),
            fps=_env_int("STREAM_FPS", 30),
            bitrate_kbps=_env_int("STREAM_BITRATE_KBPS", 2000),
            max_bitrate_kbps=_env_int("STREAM_MAX_BITRATE_KBPS", 2500),
            hardware_acceleration=_env_bool("STREAM_HARDWARE_ACCELERATION"),
            h26x_preset=parse_preset(os.getenv("STREAM_H26X_PRESET")),
            video_codec=parse_video_codec(os.getenv("STREAM_VIDEO_CODEC")),
            respect_video_params=_env_bool("STREAM_RESPECT_VIDEO_PARAMS"),
            idle_disconnect_sec=_env_float("STREAM_IDLE_DISCONNECT_SEC", 30.0),
            terminate_grace_sec=_env_float("STREAM_TERMINATE_GRACE_SEC", 2.0),
            temp_dir=os.getenv("STREAM_TEMP_DIR") or tempfile.gettempdir(),
            ffmpeg_bin=os.getenv("STREAM_FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("STREAM_FFPROBE_BIN", "ffprobe"),
            output_mode=os.getenv("STREAM_OUTPUT_MODE", "null").strip().lower(),
            output_path=os.getenv("STREAM_OUTPUT_PATH", "/tmp/streambot_output.ts"),
            output_url=os.getenv("STREAM_OUTPUT_URL") or None,
            http_enabled=_env_bool("STREAM_HTTP_ENABLED"),
            http_host=os.getenv("STREAM_HTTP_HOST", "127.0.0.1"),
            http_port=_env_int("STREAM_HTTP_PORT", 8010),
            log_level=os.getenv("STREAM_LOG_LEVEL", "INFO"),
            log_file=os.getenv("STREAM_LOG_FILE") or None,
        )

        # Validate configuration
        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.prefix:
            raise ValueError("Command prefix cannot be empty")

        for name in ("width", "height", "fps", "bitrate_kbps", "max_bitrate_kbps"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Invalid {name}: {getattr(self, name)} (must be > 0)")

        if self.max_bitrate_kbps < self.bitrate_kbps:
            raise ValueError(
                f"Invalid max bitrate: {self.max_bitrate_kbps} kbps "
                f"(must be >= bitrate {self.bitrate_kbps} kbps)"
            )

        if self.video_codec not in VALID_VIDEO_CODECS:
            raise ValueError(
                f"Invalid video codec: {self.video_codec} "
                f"(must be one of: {', '.join(VALID_VIDEO_CODECS)})"
            )

        if self.h26x_preset not in VALID_PRESETS:
            raise ValueError(f"Invalid preset: {self.h26x_preset}")

        if self.idle_disconnect_sec < 0:
            raise ValueError(f"Invalid idle disconnect delay: {self.idle_disconnect_sec} (must be >= 0)")

        if self.terminate_grace_sec <= 0:
            raise ValueError(f"Invalid terminate grace period: {self.terminate_grace_sec} (must be > 0)")

        if self.output_mode not in VALID_OUTPUT_MODES:
            raise ValueError(
                f"Invalid STREAM_OUTPUT_MODE: {self.output_mode} "
                f"(must be one of: {', '.join(VALID_OUTPUT_MODES)})"
            )

        if self.output_mode == "http" and not self.output_url:
            raise ValueError("STREAM_OUTPUT_URL is required when STREAM_OUTPUT_MODE is 'http'")

        if self.http_port < 1 or self.http_port > 65535:
            raise ValueError(f"Invalid port: {self.http_port} (must be 1-65535)")

        # Validate log level
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(valid_log_levels)})"
            )


def load_config() -> StreamConfig:
    """
    Load and validate StreamBot configuration from environment variables.

    Returns:
        StreamConfig instance with loaded and validated values

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return StreamConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise


_CONFIG: Optional[StreamConfig] = None


def get_global_config() -> StreamConfig:
    """
    Get or load the global config instance.

    Returns:
        StreamConfig instance
    """
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG
