import logging
import os
import shutil
import threading
from typing import Any, Dict, Optional, Tuple

import requests

from . import repository
from .db import connect_db
from .dispatcher import Dispatcher, SubmissionError
from .models import FAILED, JobPayload
from .utils import remote_name, upload_name

logger = logging.getLogger(__name__)

# Authentication is handled outside this package; every asset gets this owner.
DEFAULT_OWNER = "demo-user"
REMOTE_FETCH_TIMEOUT = 30
CHUNK_SIZE = 64 * 1024


class AssetNotFound(LookupError):
    pass


class FetchError(RuntimeError):
    pass


class MediaService:
    """What an HTTP layer would call; the CLI calls it directly."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        upload_dir: str,
        db_path: Optional[str] = None,
        owner_id: str = DEFAULT_OWNER,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.upload_dir = upload_dir
        self.db_path = db_path
        self.owner_id = owner_id
        self._session = session or requests.Session()

    # ---------- upload ----------
    def submit_upload(self, path: str, filename: Optional[str] = None) -> int:
        """Store a local file in the upload dir, create its asset and enqueue it."""

        if not os.path.isfile(path):
            raise ValueError(f"File not found: {path}")
        dest = os.path.join(self.upload_dir, upload_name(filename or os.path.basename(path)))
        try:
            shutil.copyfile(path, dest)
        except OSError as exc:
            raise RuntimeError(f"Could not store upload {path}: {exc}") from exc

        conn = connect_db(self.db_path)
        try:
            media_id = repository.create_asset(conn, owner_id=self.owner_id, original_url=dest)
            self._submit(conn, media_id, dest)
        finally:
            conn.close()
        return media_id

    # ---------- remote fetch ----------
    def fetch_remote(self, url: str) -> Tuple[int, threading.Thread]:
        """Create the asset now and download + enqueue in the background.

        The returned thread is already running; callers that outlive it need
        not join it. Any failure in the download or hand-off marks the asset
        FAILED.
        """

        url = (url or "").strip()
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL: {url!r}")

        conn = connect_db(self.db_path)
        try:
            media_id = repository.create_asset(conn, owner_id=self.owner_id, original_url=url)
        finally:
            conn.close()

        thread = threading.Thread(
            target=self._fetch_and_submit,
            args=(media_id, url),
            name=f"fetch-media-{media_id}",
            daemon=True,
        )
        thread.start()
        return media_id, thread

    def _fetch_and_submit(self, media_id: int, url: str) -> None:
        conn = connect_db(self.db_path)
        try:
            try:
                dest = self._download(media_id, url)
            except (requests.RequestException, FetchError, OSError) as exc:
                logger.error("Fetching %s for media %s failed: %s", url, media_id, exc)
                self._mark_failed(conn, media_id)
                return
            try:
                self._submit(conn, media_id, dest)
            except SubmissionError:
                return
        except Exception:
            # nothing above this thread would see the error
            logger.exception("Background fetch for media %s crashed", media_id)
            self._mark_failed(conn, media_id)
        finally:
            conn.close()

    def _mark_failed(self, conn, media_id: int) -> None:
        try:
            repository.update_status(conn, media_id, FAILED)
        except RuntimeError as exc:
            logger.error("Could not mark media %s FAILED: %s", media_id, exc)

    def _download(self, media_id: int, url: str) -> str:
        dest = os.path.join(self.upload_dir, remote_name(media_id))
        response = self._session.get(url, stream=True, timeout=REMOTE_FETCH_TIMEOUT)
        try:
            if response.status_code >= 400:
                raise FetchError(f"download failed: status={response.status_code}")
            with open(dest, "wb") as fh:
                for chunk in response.iter_content(CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)
        except BaseException:
            if os.path.exists(dest):
                os.remove(dest)
            raise
        finally:
            response.close()
        logger.info("Fetched %s for media %s into %s", url, media_id, dest)
        return dest

    # ---------- playback ----------
    def playback(self, media_id: int) -> Dict[str, Any]:
        conn = connect_db(self.db_path)
        try:
            asset = repository.get_asset(conn, media_id)
        finally:
            conn.close()
        if asset is None:
            raise AssetNotFound(f"Media {media_id} not found")
        return {"status": asset.status, "variants": [v.to_dict() for v in asset.variants]}

    def _submit(self, conn, media_id: int, source: str) -> str:
        try:
            return self.dispatcher.submit(JobPayload(media_id=media_id, source=source))
        except SubmissionError:
            # the job never reached the queue, so nothing will finish this asset
            repository.update_status(conn, media_id, FAILED)
            raise
