import json
import os
from unittest import mock

import pytest
import requests

from transcodectl import repository
from transcodectl.broker import BrokerError
from transcodectl.db import connect_db
from transcodectl.dispatcher import Dispatcher, SubmissionError
from transcodectl.models import FAILED, PROCESSING
from transcodectl.service import AssetNotFound, MediaService

STREAM = "transcode_jobs"


class FakeResponse:
    def __init__(self, status_code=200, chunks=(b"abc", b"", b"def")):
        self.status_code = status_code
        self._chunks = chunks
        self.closed = False

    def iter_content(self, chunk_size):
        return iter(self._chunks)

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def _status(db_path, media_id):
    conn = connect_db(db_path)
    try:
        return repository.get_asset(conn, media_id).status
    finally:
        conn.close()


def _payloads(broker):
    return [json.loads(fields["payload"]) for _, fields in broker.streams.get(STREAM, [])]


@pytest.fixture
def service(broker, db_path, upload_dir):
    return MediaService(Dispatcher(broker, STREAM), upload_dir=upload_dir, db_path=db_path)


def test_submit_upload_stores_file_and_enqueues(broker, service, upload_dir, source_file):
    media_id = service.submit_upload(source_file, filename="My Clip.MP4")

    stored = os.listdir(upload_dir)
    assert len(stored) == 1
    assert stored[0].startswith("upload-") and stored[0].endswith("-my-clip.mp4")
    assert _payloads(broker) == [{"mediaId": media_id, "source": os.path.join(upload_dir, stored[0])}]
    assert service.playback(media_id) == {"status": PROCESSING, "variants": []}


def test_submit_upload_missing_file(service, tmp_path):
    with pytest.raises(ValueError):
        service.submit_upload(str(tmp_path / "nothing.mp4"))


def test_submission_failure_marks_failed(db_path, upload_dir, source_file):
    client = mock.Mock()
    client.append.side_effect = BrokerError("Connection refused")
    service = MediaService(Dispatcher(client, STREAM), upload_dir=upload_dir, db_path=db_path)

    with pytest.raises(SubmissionError):
        service.submit_upload(source_file)

    conn = connect_db(db_path)
    try:
        rows = repository.list_assets(conn)
    finally:
        conn.close()
    assert [r["status"] for r in rows] == [FAILED]


@pytest.mark.parametrize("url", ["", "ftp://example.com/a.mp4", "example.com/a.mp4"])
def test_fetch_rejects_non_http_urls(service, url):
    with pytest.raises(ValueError):
        service.fetch_remote(url)


def test_fetch_downloads_in_background(broker, db_path, upload_dir):
    response = FakeResponse()
    session = FakeSession(response)
    service = MediaService(Dispatcher(broker, STREAM), upload_dir=upload_dir, db_path=db_path, session=session)

    media_id, task = service.fetch_remote("  https://cdn.example.com/video.mp4 ")
    task.join(timeout=5)

    assert session.calls[0][0] == "https://cdn.example.com/video.mp4"
    assert session.calls[0][1]["stream"] is True
    assert response.closed
    payloads = _payloads(broker)
    assert len(payloads) == 1 and payloads[0]["mediaId"] == media_id
    with open(payloads[0]["source"], "rb") as fh:
        assert fh.read() == b"abcdef"
    assert os.path.basename(payloads[0]["source"]).startswith(f"remote-{media_id}-")
    assert _status(db_path, media_id) == PROCESSING


def test_fetch_http_error_marks_failed(broker, db_path, upload_dir):
    session = FakeSession(FakeResponse(status_code=404))
    service = MediaService(Dispatcher(broker, STREAM), upload_dir=upload_dir, db_path=db_path, session=session)

    media_id, task = service.fetch_remote("http://example.com/gone.mp4")
    task.join(timeout=5)

    assert _status(db_path, media_id) == FAILED
    assert _payloads(broker) == []
    assert os.listdir(upload_dir) == []


def test_fetch_connection_error_marks_failed(broker, db_path, upload_dir):
    session = FakeSession(error=requests.ConnectionError("unreachable"))
    service = MediaService(Dispatcher(broker, STREAM), upload_dir=upload_dir, db_path=db_path, session=session)

    media_id, task = service.fetch_remote("http://example.com/a.mp4")
    task.join(timeout=5)

    assert _status(db_path, media_id) == FAILED


def test_playback_unknown_media(service):
    with pytest.raises(AssetNotFound):
        service.playback(12345)


@pytest.mark.parametrize("error", [requests.ConnectionError("unreachable"), KeyError("content-length")])
def test_fetch_failure_survives_status_write_error(monkeypatch, caplog, broker, db_path, upload_dir, error):
    service = MediaService(
        Dispatcher(broker, STREAM), upload_dir=upload_dir, db_path=db_path, session=FakeSession(error=error)
    )

    def locked(conn, media_id, status):
        raise RuntimeError("DB error while updating asset: database is locked")

    media_id, task = service.fetch_remote("http://example.com/a.mp4")
    task.join(timeout=5)
    monkeypatch.setattr(repository, "update_status", locked)
    # run the background step again in this thread with the store failing
    service._fetch_and_submit(media_id, "http://example.com/a.mp4")

    assert f"Could not mark media {media_id} FAILED" in caplog.text
    assert _payloads(broker) == []
