"""
yt-dlp backed media resolver for StreamBot.

Handles YouTube video links, YouTube playlists, free-text YouTube search and
plain direct links. Non-live YouTube entries are downloaded to a transient
local file at play time; live entries resolve to a direct HLS/DASH URL.
"""

import glob
import logging
import os
import re
import tempfile
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

import yt_dlp
from yt_dlp.utils import DownloadError

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import CancellationExpected, ResolutionError, RestrictedContentError
from streambot.broadcast_core.queue_entry import EntryKind, QueueEntry
from streambot.resolver.base import MediaResolver

logger = logging.getLogger(__name__)

LIVE_FORMAT = "best[protocol=m3u8_native]/best[protocol=http_dash_segments]/best"
DOWNLOAD_FORMAT = "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[height<=720][ext=mp4]/best"

TEMP_FILE_PREFIX = "ytdlp_temp_"

_URL_RE = re.compile(r"(https?://[^\s]+)")

_YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtu.be",
}

# Substrings of yt-dlp error messages that mean access is denied rather than missing
_RESTRICTED_MARKERS = (
    "members-only",
    "available to this channel's members",
    "join this channel",
    "private video",
)


def _is_youtube_url(url: str) -> bool:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return host in _YOUTUBE_HOSTS


def _looks_like_playlist(url: str) -> bool:
    parsed = urlparse(url)
    path = (parsed.path or "").lower()
    if path.startswith("/watch") or (parsed.hostname or "").lower() == "youtu.be":
        # A watch URL with &list= plays the single video, like noplaylist does
        return False
    return bool(parse_qs(parsed.query).get("list")) or "playlist" in path


def _is_restricted(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _RESTRICTED_MARKERS)


def direct_link_title(url: str) -> str:
    """Title for a direct link: the URL-decoded last path segment, or 'Direct Link'."""
    try:
        segment = urlparse(url).path.rstrip("/").split("/")[-1]
    except ValueError:
        logger.warning("[RESOLVER] Could not parse URL for filename, using default title")
        return "Direct Link"
    return unquote(segment) or "Direct Link"


class YtDlpResolver(MediaResolver):
    """
    Resolver built on the yt_dlp package.

    Every yt-dlp call uses a fresh YoutubeDL instance, so the resolver is safe
    to use from the command threads and the playback loop at the same time.
    """

    def __init__(self, temp_dir: Optional[str] = None, extra_opts: Optional[Dict[str, Any]] = None):
        """
        Initialize resolver.

        Args:
            temp_dir: Directory for transient downloads (default: system temp dir)
            extra_opts: Additional YoutubeDL options (cookies, proxy, ...)
        """
        self.temp_dir = temp_dir or tempfile.gettempdir()
        self._extra_opts = dict(extra_opts or {})
        os.makedirs(self.temp_dir, exist_ok=True)

    def _ydl_opts(self, **overrides) -> Dict[str, Any]:
        opts: Dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
        }
        opts.update(self._extra_opts)
        opts.update(overrides)
        return opts

    def _extract_info(self, url: str, **overrides) -> Dict[str, Any]:
        opts = self._ydl_opts(**overrides)
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as e:
            message = str(e)
            if _is_restricted(message):
                logger.warning(f"[RESOLVER] Restricted content: {url}")
                raise RestrictedContentError(f"Restricted content: {url}") from e
            logger.error(f"[RESOLVER] Failed to get info for {url}: {message}")
            raise ResolutionError(f"Could not get information for {url}") from e

        if not info:
            raise ResolutionError(f"Could not get information for {url}")
        return info

    # ------------------------------------------------------------------
    # Request time
    # ------------------------------------------------------------------

    def resolve(self, query: str, requester: str = "") -> List[QueueEntry]:
        query = (query or "").strip()
        if not query:
            raise ResolutionError("Nothing to play")

        url_match = _URL_RE.search(query)
        if url_match is None:
            logger.info(f"[RESOLVER] Searching YouTube for: {query!r}")
            return [self._search(query, requester)]

        url = url_match.group(1)
        if _is_youtube_url(url):
            if _looks_like_playlist(url):
                logger.info(f"[RESOLVER] YouTube playlist: {url}")
                return self._resolve_playlist(url, requester)
            logger.info(f"[RESOLVER] YouTube video: {url}")
            return [self._entry_from_info(self._extract_info(url), requester)]

        logger.info(f"[RESOLVER] Direct link: {url}")
        return [
            QueueEntry(
                title=direct_link_title(url),
                source=url,
                kind=EntryKind.DIRECT_LINK,
                is_live=False,
                requester=requester,
            )
        ]

    def _search(self, query: str, requester: str) -> QueueEntry:
        info = self._extract_info(f"ytsearch1:{query}")
        entries = [e for e in (info.get("entries") or []) if e]
        if not entries:
            raise ResolutionError(f'Video not found on YouTube for "{query}".')
        return self._entry_from_info(entries[0], requester)

    def _resolve_playlist(self, url: str, requester: str) -> List[QueueEntry]:
        info = self._extract_info(url, noplaylist=False, extract_flat="in_playlist")
        playlist_title = info.get("title") or url

        entries = []
        for item in info.get("entries") or []:
            video_id = (item or {}).get("id")
            if not video_id:
                logger.warning(f"[RESOLVER] Skipping a video in playlist {playlist_title!r} because it has no ID")
                continue
            is_live = item.get("live_status") == "is_live"
            entries.append(
                QueueEntry(
                    title=item.get("title") or "Untitled Video",
                    source=f"https://www.youtube.com/watch?v={video_id}",
                    kind=EntryKind.LIVE_STREAM if is_live else EntryKind.REMOTE_RESOLVED,
                    is_live=is_live,
                    requester=requester,
                )
            )

        if not entries:
            raise ResolutionError("Could not get videos from this playlist.")
        logger.info(f"[RESOLVER] Playlist {playlist_title!r}: {len(entries)} videos")
        return entries

    def _entry_from_info(self, info: Dict[str, Any], requester: str) -> QueueEntry:
        video_id = info.get("id")
        source = info.get("webpage_url") or (f"https://www.youtube.com/watch?v={video_id}" if video_id else None)
        if not source:
            raise ResolutionError("yt-dlp returned no usable URL")
        is_live = bool(info.get("is_live")) or info.get("live_status") == "is_live"
        return QueueEntry(
            title=info.get("title") or "Untitled Video",
            source=source,
            kind=EntryKind.LIVE_STREAM if is_live else EntryKind.REMOTE_RESOLVED,
            is_live=is_live,
            requester=requester,
        )

    # ------------------------------------------------------------------
    # Play time
    # ------------------------------------------------------------------

    def resolve_stream_uri(self, entry: QueueEntry) -> str:
        fmt = LIVE_FORMAT if entry.is_live else DOWNLOAD_FORMAT
        logger.info(f"[RESOLVER] Fetching stream URL with format: {fmt}")
        info = self._extract_info(entry.source, format=fmt)

        stream_url = info.get("url")
        if not stream_url:
            # Merged video+audio selections carry one URL per requested format
            requested = info.get("requested_formats") or []
            stream_url = requested[0].get("url") if requested else None
        if not stream_url:
            raise ResolutionError(f"yt-dlp did not return a valid stream URL for {entry.source}")
        return stream_url

    def download_to_local_file(self, entry: QueueEntry, token: CancellationToken) -> str:
        token.raise_if_cancelled()
        basename = f"{TEMP_FILE_PREFIX}{uuid.uuid4().hex[:12]}"
        expected_path = os.path.join(self.temp_dir, f"{basename}.mp4")

        def _progress_hook(progress: Dict[str, Any]) -> None:
            if token.cancelled:
                raise CancellationExpected(f"download of {entry.title!r} cancelled")

        opts = self._ydl_opts(
            format=DOWNLOAD_FORMAT,
            outtmpl=os.path.join(self.temp_dir, f"{basename}.%(ext)s"),
            merge_output_format="mp4",
            progress_hooks=[_progress_hook],
        )

        logger.info(f"[RESOLVER] Downloading {entry.source} to {expected_path}")
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                ydl.download([entry.source])
        except CancellationExpected:
            self._remove_partial_files(basename)
            raise
        except DownloadError as e:
            self._remove_partial_files(basename)
            if token.cancelled:
                raise CancellationExpected(f"download of {entry.title!r} cancelled") from e
            if _is_restricted(str(e)):
                raise RestrictedContentError(f"Restricted content: {entry.source}") from e
            logger.error(f"[RESOLVER] Download failed for {entry.source}: {e}")
            raise ResolutionError(f"Download failed for {entry.title!r}") from e

        if token.cancelled:
            self._remove_partial_files(basename)
            raise CancellationExpected(f"download of {entry.title!r} cancelled")

        if os.path.exists(expected_path):
            return expected_path

        # Fallback formats may not be mp4
        candidates = [
            path for path in glob.glob(os.path.join(self.temp_dir, f"{basename}.*"))
            if not path.endswith((".part", ".ytdl"))
        ]
        if candidates:
            return candidates[0]
        raise ResolutionError(f"Download of {entry.title!r} produced no file")

    def _remove_partial_files(self, basename: str) -> None:
        for path in glob.glob(os.path.join(self.temp_dir, f"{basename}*")):
            try:
                os.remove(path)
                logger.info(f"[RESOLVER] Removed partial download: {path}")
            except OSError as e:
                logger.warning(f"[RESOLVER] Could not remove partial download {path}: {e}")
