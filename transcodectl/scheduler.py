import logging
import signal
import threading
import time
from typing import Iterable, List, Optional

from .broker import CLAIM_START, BrokerClient, BrokerError
from .models import PAYLOAD_FIELD, JobPayload, PayloadError, StreamEntry
from .worker import TranscodeCancelled

logger = logging.getLogger(__name__)

# Scheduler states
STOPPED = "stopped"
RUNNING = "running"

DEFAULT_GROUP = "transcode_group"
DEFAULT_CONSUMER = "consumer-main"

MIN_IDLE_MS = 30_000    # pending entries idle this long are reclaimed
CLAIM_COUNT = 20        # entries per XAUTOCLAIM call
CLAIM_ROUNDS = 10       # XAUTOCLAIM calls per reclaim pass before fresh reads get a turn
READ_COUNT = 10
BLOCK_MS = 5_000
ERROR_BACKOFF = 1.0


class Scheduler:
    """
    One consumer-group member. A single background thread reclaims stale
    entries, reads fresh ones and runs them through the worker one at a time.
    """

    def __init__(
        self,
        broker: BrokerClient,
        worker,
        stream: str,
        *,
        group: str = DEFAULT_GROUP,
        consumer: str = DEFAULT_CONSUMER,
        min_idle_ms: int = MIN_IDLE_MS,
        claim_count: int = CLAIM_COUNT,
        claim_rounds: int = CLAIM_ROUNDS,
        read_count: int = READ_COUNT,
        block_ms: int = BLOCK_MS,
        error_backoff: float = ERROR_BACKOFF,
    ):
        self.broker = broker
        self.worker = worker
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.min_idle_ms = min_idle_ms
        self.claim_count = claim_count
        self.claim_rounds = claim_rounds
        self.read_count = read_count
        self.block_ms = block_ms
        self.error_backoff = error_backoff

        self._state = STOPPED
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == RUNNING

    # ---------- lifecycle ----------
    def start(self) -> bool:
        """
        Ensure the consumer group and launch the loop thread.
        Only the first call does anything; later calls (including after stop)
        return False. Raises BrokerError if the group cannot be ensured.
        """
        with self._state_lock:
            if self._state == RUNNING or self._stop.is_set():
                return False
            self.broker.ensure_group(self.stream, self.group)
            self._thread = threading.Thread(
                target=self._loop, name=f"scheduler-{self.consumer}", daemon=True
            )
            self._state = RUNNING
            self._thread.start()
        logger.info("[%s] Scheduler started on %s/%s", self.consumer, self.stream, self.group)
        return True

    def request_stop(self):
        self._stop.set()

    def stop(self, timeout: Optional[float] = None):
        """Signal the loop to exit; in-flight entries stay pending for reclamation."""
        self.request_stop()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        with self._state_lock:
            if thread is None or not thread.is_alive():
                self._state = STOPPED

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)

    # ---------- loop ----------
    def _loop(self):
        try:
            while not self._stop.is_set():
                try:
                    self._iterate()
                except BrokerError as e:
                    logger.error("[%s] Broker error: %s", self.consumer, e)
                    self._stop.wait(self.error_backoff)
                except Exception:
                    logger.exception("[%s] Unexpected error in scheduler loop", self.consumer)
                    self._stop.wait(self.error_backoff)
        finally:
            with self._state_lock:
                self._state = STOPPED
            logger.info("[%s] Scheduler stopped.", self.consumer)

    def _iterate(self):
        self.reclaim_pending()
        if self._stop.is_set():
            return
        entries = self.broker.read_group(
            self.stream, self.group, self.consumer,
            count=self.read_count, block_ms=self.block_ms,
        )
        self.process_entries(entries)

    def reclaim_pending(self) -> int:
        """Claim entries idle past min_idle_ms and process them. Returns how many were claimed."""
        cursor = CLAIM_START
        claimed = 0
        for _ in range(self.claim_rounds):
            entries, cursor = self.broker.auto_claim(
                self.stream, self.group, self.consumer,
                min_idle_ms=self.min_idle_ms, cursor=cursor, count=self.claim_count,
            )
            if not entries:
                break
            claimed += len(entries)
            logger.info("[%s] Reclaimed %d stale entries", self.consumer, len(entries))
            self.process_entries(entries)
            if cursor == CLAIM_START or self._stop.is_set():
                break
        return claimed

    def process_entries(self, entries: Iterable[StreamEntry]):
        for entry in entries:
            if self._stop.is_set():
                # leave the rest pending; a later XAUTOCLAIM picks them up
                return
            self._process_entry(entry)

    def _process_entry(self, entry: StreamEntry):
        raw = entry.fields.get(PAYLOAD_FIELD)
        if raw is None:
            logger.warning("[%s] Entry %s has no %s field: %r; discarding",
                           self.consumer, entry.entry_id, PAYLOAD_FIELD, entry.fields)
            self._ack(entry)
            return

        try:
            payload = JobPayload.from_json(raw)
        except PayloadError as e:
            logger.warning("[%s] Entry %s is malformed (%s); discarding", self.consumer, entry.entry_id, e)
            self._ack(entry)
            return

        started = time.monotonic()
        try:
            self.worker.process(payload, cancel=self._stop)
        except TranscodeCancelled:
            logger.info("[%s] Entry %s interrupted by shutdown; left pending", self.consumer, entry.entry_id)
            return
        except Exception as e:
            # the worker has recorded FAILED on the asset; redelivery would fail the same way
            logger.error("[%s] Job %s (media %s) failed: %s", self.consumer, entry.entry_id, payload.media_id, e)
            self._ack(entry)
            return

        logger.info("[%s] Job %s (media %s) completed in %.1fs",
                    self.consumer, entry.entry_id, payload.media_id, time.monotonic() - started)
        self._ack(entry)

    def _ack(self, entry: StreamEntry):
        try:
            self.broker.ack(self.stream, self.group, entry.entry_id)
        except BrokerError as e:
            logger.error("[%s] Ack of %s failed: %s", self.consumer, entry.entry_id, e)


# ---------- process runner ----------
def consumer_names(base: str, count: int) -> List[str]:
    """A single scheduler keeps the stable base name; several get numbered suffixes."""
    if count <= 1:
        return [base]
    return [f"{base}-{i + 1}" for i in range(count)]


def run_schedulers(schedulers: List[Scheduler], stop_event: Optional[threading.Event] = None):
    """Start the schedulers and block until SIGINT/SIGTERM or stop_event, then stop them."""
    stop_event = stop_event or threading.Event()

    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping schedulers", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            pass

    try:
        for s in schedulers:
            s.start()
        while not stop_event.is_set() and any(s.running for s in schedulers):
            stop_event.wait(0.5)
    finally:
        for s in schedulers:
            s.request_stop()
        for s in schedulers:
            s.stop()
        logger.info("All schedulers stopped.")
