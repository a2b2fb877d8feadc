import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Asset States
PROCESSING = "PROCESSING"
READY = "READY"
FAILED = "FAILED"

ASSET_STATES = (PROCESSING, READY, FAILED)
TERMINAL_STATES = (READY, FAILED)

# Name of the single field carrying a serialized JobPayload in a stream entry
PAYLOAD_FIELD = "payload"


class PayloadError(ValueError):
    """Raised when a stream entry cannot be turned into a JobPayload."""


@dataclass(frozen=True)
class JobPayload:
    media_id: int
    source: str

    def to_json(self) -> str:
        return json.dumps({"mediaId": self.media_id, "source": self.source})

    @classmethod
    def from_json(cls, raw) -> "JobPayload":
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise PayloadError(f"payload is not utf-8: {e}")
        if not isinstance(raw, str):
            raise PayloadError(f"payload has unexpected type {type(raw).__name__}")
        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise PayloadError(f"payload is not valid JSON: {e}")
        if not isinstance(doc, dict):
            raise PayloadError("payload must be a JSON object")

        media_id = doc.get("mediaId")
        source = doc.get("source")
        # bool is an int subclass; reject it explicitly
        if isinstance(media_id, bool) or not isinstance(media_id, int):
            raise PayloadError(f"mediaId must be an integer, got {media_id!r}")
        if not isinstance(source, str) or not source.strip():
            raise PayloadError("source must be a non-empty string")
        return cls(media_id=media_id, source=source)


@dataclass(frozen=True)
class StreamEntry:
    entry_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Variant:
    quality: str
    format: str
    cdn_url: str

    def to_dict(self) -> Dict[str, str]:
        return {"quality": self.quality, "format": self.format, "cdnUrl": self.cdn_url}


@dataclass
class Asset:
    id: int
    owner_id: str
    status: str = PROCESSING
    original_url: str = ""
    duration: Optional[float] = None
    created_at: str = ""
    updated_at: str = ""
    variants: List[Variant] = field(default_factory=list)
