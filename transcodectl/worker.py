import logging
import os
import subprocess
import threading
import time
from typing import List, Optional

from . import repository
from .db import connect_db
from .models import FAILED, READY, JobPayload, Variant
from .utils import truncate

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "index.m3u8"
PUBLIC_PREFIX = "/hls"

# How often a running transcoder is checked for cancellation / timeout
POLL_SECONDS = 0.5


class TranscodeError(RuntimeError):
    """The job failed; the asset has been marked FAILED."""


class SourceUnavailableError(TranscodeError):
    pass


class TranscodeCancelled(RuntimeError):
    """The scheduler is shutting down; the asset is left untouched."""


def media_dirname(media_id: int) -> str:
    return f"media-{media_id}"


def playlist_url(media_id: int) -> str:
    return f"{PUBLIC_PREFIX}/{media_dirname(media_id)}/{PLAYLIST_NAME}"


def build_hls_command(binary: str, source: str, playlist: str) -> List[str]:
    # 0:a:0? keeps sources without an audio track from failing
    return [
        binary,
        "-y", "-i", source,
        "-preset", "veryfast",
        "-map", "0:v:0", "-map", "0:a:0?",
        "-c:v", "h264", "-c:a", "aac",
        "-b:v", "4000k",
        "-f", "hls",
        "-hls_time", "4",
        "-hls_playlist_type", "vod",
        playlist,
    ]


def run_transcoder(args: List[str], cancel: Optional[threading.Event] = None,
                   timeout: Optional[int] = None) -> subprocess.CompletedProcess:
    """
    Run the transcoder, capturing stderr for diagnostics.
    Kills the process and raises TranscodeCancelled when `cancel` is set,
    and raises subprocess.TimeoutExpired after `timeout` seconds.
    """
    proc = subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
    )
    deadline = time.monotonic() + timeout if timeout else None
    while True:
        try:
            _, stderr = proc.communicate(timeout=POLL_SECONDS)
            return subprocess.CompletedProcess(args, proc.returncode, stderr=stderr or "")
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                proc.kill()
                proc.communicate()
                raise TranscodeCancelled(f"{args[0]} cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                proc.kill()
                _, stderr = proc.communicate()
                raise subprocess.TimeoutExpired(args, timeout, stderr=stderr)


class TranscodeWorker:
    """Turns one JobPayload into HLS output and records the outcome on the asset."""

    def __init__(self, binary: str, output_dir: str, db_path: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.binary = binary
        self.output_dir = output_dir
        self.db_path = db_path
        self.timeout = timeout

    def process(self, payload: JobPayload, cancel: Optional[threading.Event] = None):
        conn = connect_db(self.db_path)
        try:
            self._process(conn, payload, cancel)
        finally:
            conn.close()

    def _process(self, conn, payload: JobPayload, cancel: Optional[threading.Event]):
        media_id = payload.media_id

        if not os.path.isfile(payload.source) or not os.access(payload.source, os.R_OK):
            self._fail(conn, media_id)
            raise SourceUnavailableError(f"Source not accessible for media {media_id}: {payload.source}")

        out_dir = os.path.join(self.output_dir, media_dirname(media_id))
        try:
            os.makedirs(out_dir, exist_ok=True)
        except OSError as e:
            self._fail(conn, media_id)
            raise TranscodeError(f"Could not create output dir {out_dir}: {e}") from e

        args = build_hls_command(self.binary, payload.source, os.path.join(out_dir, PLAYLIST_NAME))
        logger.info("Transcoding media %s from %s", media_id, payload.source)
        started = time.monotonic()
        try:
            result = run_transcoder(args, cancel=cancel, timeout=self.timeout)
        except OSError as e:
            self._fail(conn, media_id)
            raise TranscodeError(f"Could not start {self.binary}: {e}") from e
        except subprocess.TimeoutExpired as e:
            self._fail(conn, media_id)
            raise TranscodeError(
                f"{self.binary} timed out after {self.timeout}s, stderr={_tail(e.stderr)}"
            ) from e

        if result.returncode != 0:
            self._fail(conn, media_id)
            raise TranscodeError(
                f"{self.binary} exited with code {result.returncode}, stderr={_tail(result.stderr)}"
            )

        variants = [Variant(quality="1080p", format="HLS", cdn_url=playlist_url(media_id))]
        try:
            repository.save_variants(conn, media_id, variants)
            repository.update_status(conn, media_id, READY)
        except RuntimeError:
            # an asset left PROCESSING here would never finish
            self._fail(conn, media_id)
            raise
        logger.info("Media %s ready in %.1fs", media_id, time.monotonic() - started)

    def _fail(self, conn, media_id: int):
        try:
            repository.update_status(conn, media_id, FAILED)
        except RuntimeError as e:
            logger.error("Could not mark media %s FAILED: %s", media_id, e)


def _tail(stderr) -> str:
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return truncate((stderr or "").strip())
