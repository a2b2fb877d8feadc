import stat
import threading
import time

import pytest

from transcodectl.broker import BrokerError
from transcodectl.db import init_db
from transcodectl.models import StreamEntry


class FakeBroker:
    """
    In-memory stand-in for BrokerClient with consumer-group semantics.
    Idle time is measured against `now_ms`, which tests advance by hand.
    """

    def __init__(self):
        self.now_ms = 0
        self.streams = {}
        self.groups = {}
        self.ensure_calls = 0
        self.acked = []
        self.fail_reads = 0
        self._seq = 0
        self._lock = threading.Lock()

    # ---------- helpers for tests ----------
    def advance(self, ms):
        with self._lock:
            self.now_ms += ms

    def pending(self, stream, group):
        with self._lock:
            return dict(self.groups[(stream, group)]["pending"])

    # ---------- BrokerClient surface ----------
    def append(self, stream, fields):
        with self._lock:
            self._seq += 1
            entry_id = f"{self._seq}-0"
            self.streams.setdefault(stream, []).append((entry_id, dict(fields)))
            return entry_id

    def ensure_group(self, stream, group):
        with self._lock:
            self.ensure_calls += 1
            self.streams.setdefault(stream, [])
            if (stream, group) in self.groups:
                return False
            self.groups[(stream, group)] = {"last": 0, "pending": {}}
            return True

    def read_group(self, stream, group, consumer, *, count, block_ms):
        with self._lock:
            if self.fail_reads:
                self.fail_reads -= 1
                raise BrokerError("connection refused")
            g = self.groups[(stream, group)]
            batch = self.streams[stream][g["last"]:g["last"] + count]
            g["last"] += len(batch)
            for entry_id, _ in batch:
                g["pending"][entry_id] = {"consumer": consumer, "delivered_at": self.now_ms, "deliveries": 1}
        if not batch:
            # stand in for the blocking wait without stalling the tests
            time.sleep(min(block_ms, 20) / 1000)
        return [StreamEntry(entry_id=i, fields=dict(f)) for i, f in batch]

    def auto_claim(self, stream, group, consumer, *, min_idle_ms, cursor="0-0", count):
        with self._lock:
            g = self.groups[(stream, group)]
            fields_by_id = dict(self.streams[stream])
            start = _seq_of(cursor)
            candidates = sorted(
                (i for i in g["pending"] if _seq_of(i) >= start),
                key=_seq_of,
            )
            claimed = []
            next_cursor = "0-0"
            for entry_id in candidates:
                info = g["pending"][entry_id]
                if self.now_ms - info["delivered_at"] < min_idle_ms:
                    continue
                if len(claimed) == count:
                    next_cursor = entry_id
                    break
                info.update(consumer=consumer, delivered_at=self.now_ms, deliveries=info["deliveries"] + 1)
                claimed.append(StreamEntry(entry_id=entry_id, fields=dict(fields_by_id[entry_id])))
            return claimed, next_cursor

    def ack(self, stream, group, entry_id):
        with self._lock:
            self.acked.append(entry_id)
            return self.groups[(stream, group)]["pending"].pop(entry_id, None) is not None

    def pending_count(self, stream, group):
        with self._lock:
            g = self.groups.get((stream, group))
            return len(g["pending"]) if g else 0

    def ping(self):
        return True


def _seq_of(entry_id):
    ms, _, seq = entry_id.partition("-")
    return (int(ms), int(seq or 0))


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def write_script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "transcode.db")
    init_db(path)
    return path


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / "output"
    path.mkdir()
    return str(path)


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return str(path)


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "in.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return str(path)


@pytest.fixture
def ok_transcoder(tmp_path):
    """Writes a playlist at its last argument and records its arguments."""
    args_file = tmp_path / "transcoder-args.txt"
    return write_script(
        tmp_path / "fake-ffmpeg",
        f'printf "%s\\n" "$@" > "{args_file}"\n'
        'for last; do :; done\n'
        'mkdir -p "$(dirname "$last")"\n'
        'printf "#EXTM3U\\n" > "$last"\n',
    )


@pytest.fixture
def failing_transcoder(tmp_path):
    return write_script(
        tmp_path / "broken-ffmpeg",
        'echo "in.mp4: Invalid data found when processing input" >&2\n'
        'exit 1\n',
    )


@pytest.fixture
def slow_transcoder(tmp_path):
    return write_script(tmp_path / "slow-ffmpeg", "exec sleep 30\n")


@pytest.fixture(autouse=True)
def _no_log_dir(monkeypatch):
    monkeypatch.delenv("TRANSCODECTL_LOG_DIR", raising=False)
