import logging

from .broker import BrokerClient, BrokerError
from .models import PAYLOAD_FIELD, JobPayload

logger = logging.getLogger(__name__)


class SubmissionError(RuntimeError):
    """A job could not be handed to the broker; the caller should reject the request."""


class Dispatcher:
    """Append-only write path from request handlers to the job stream."""

    def __init__(self, broker: BrokerClient, stream: str):
        self.broker = broker
        self.stream = stream

    def submit(self, payload: JobPayload) -> str:
        # no retry here: the client resubmits if this fails
        try:
            entry_id = self.broker.append(self.stream, {PAYLOAD_FIELD: payload.to_json()})
        except BrokerError as e:
            logger.error("Could not enqueue media %s: %s", payload.media_id, e)
            raise SubmissionError(f"Could not enqueue transcode job for media {payload.media_id}: {e}") from e
        logger.info("Enqueued media %s as %s on %s", payload.media_id, entry_id, self.stream)
        return entry_id
