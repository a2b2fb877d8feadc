import os
from dataclasses import dataclass, asdict
from typing import Dict, Optional

DEFAULT_CONFIG = {
    "APP_ENV": "development",
    "TRANSCODECTL_DB": "transcode.db",
    "REDIS_URL": "redis://localhost:6379/0",
    "QUEUE_STREAM": "transcode_jobs",
    "QUEUE_GROUP": "transcode_group",
    "QUEUE_CONSUMER": "consumer-main",
    "FFMPEG_BINARY": "ffmpeg",
    "TRANSCODE_OUTPUT": "./data/output",
    "UPLOAD_DIR": "./data/uploads",
    "TRANSCODE_TIMEOUT": "0",  # seconds, 0 = wait for the process
    "LOG_LEVEL": "INFO",
}


@dataclass(frozen=True)
class Settings:
    env: str
    db_path: str
    redis_url: str
    stream: str
    group: str
    consumer: str
    ffmpeg_binary: str
    output_dir: str
    upload_dir: str
    transcode_timeout: Optional[int]
    log_level: str

    @property
    def production(self) -> bool:
        return self.env == "production"

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


def _getenv(env: Dict[str, str], key: str) -> str:
    value = env.get(key, "").strip()
    return value or DEFAULT_CONFIG[key]


def load_settings(environ: Optional[Dict[str, str]] = None, ensure_dirs: bool = True) -> Settings:
    """
    Build Settings from environment variables, falling back to DEFAULT_CONFIG.
    Creates the output and upload directories unless ensure_dirs is False.
    """
    env = os.environ if environ is None else environ

    raw_timeout = _getenv(env, "TRANSCODE_TIMEOUT")
    try:
        timeout = int(raw_timeout)
    except ValueError:
        raise ValueError(f"TRANSCODE_TIMEOUT must be an integer, got {raw_timeout!r}")
    if timeout < 0:
        raise ValueError("TRANSCODE_TIMEOUT must be >= 0")

    settings = Settings(
        env=_getenv(env, "APP_ENV"),
        db_path=_getenv(env, "TRANSCODECTL_DB"),
        redis_url=_getenv(env, "REDIS_URL"),
        stream=_getenv(env, "QUEUE_STREAM"),
        group=_getenv(env, "QUEUE_GROUP"),
        consumer=_getenv(env, "QUEUE_CONSUMER"),
        ffmpeg_binary=_getenv(env, "FFMPEG_BINARY"),
        output_dir=_getenv(env, "TRANSCODE_OUTPUT"),
        upload_dir=_getenv(env, "UPLOAD_DIR"),
        transcode_timeout=timeout or None,
        log_level=_getenv(env, "LOG_LEVEL").upper(),
    )

    if ensure_dirs:
        for path in (settings.output_dir, settings.upload_dir):
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as e:
                raise RuntimeError(f"Could not create directory {path}: {e}")
    return settings
