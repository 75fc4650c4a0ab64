"""Server configuration.

Values come from three layers, later ones winning:

1. dataclass defaults below,
2. the JSON config file (``config/server.json``; see
   ``config/server.example.json``),
3. environment variables (``PORT``, ``HOST``, ``MODEL_BUCKET``, ...), which
   may also be provided through a ``.env`` file.

CLI flags in ``main`` override the result for host and port.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT_FILES = [
    "group1-shard1of4.bin",
    "group1-shard2of4.bin",
    "group1-shard3of4.bin",
    "group1-shard4of4.bin",
]


@dataclass
class ServerSection:
    host: str = "0.0.0.0"
    port: int = 3000
    tls_enabled: bool = True
    tls_cert: str = "cert/cert.pem"
    tls_key: str = "cert/key.pem"
    max_body_bytes: int = 1_000_000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


@dataclass
class ModelSection:
    bucket: str = "model_mlgc_yasin"
    topology_file: str = "model.json"
    weight_files: list[str] = field(default_factory=lambda: list(DEFAULT_WEIGHT_FILES))
    cache_dir: str = "model"
    blob_backend: str = "gcs"
    local_blob_root: str = "blobs"
    http_base_url: str = "https://storage.googleapis.com"
    fetch_timeout_seconds: float = 60.0
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 1.0
    max_concurrent_predictions: int = 4
    prediction_timeout_seconds: float = 30.0

    @property
    def artifact_files(self) -> list[str]:
        return [self.topology_file, *self.weight_files]


@dataclass
class StorageSection:
    backend: str = "firestore"
    collection: str = "predictions"
    records_root: str = "records"
    project: str | None = None
    database: str | None = None
    timeout_seconds: float = 10.0


@dataclass
class AppConfig:
    server: ServerSection = field(default_factory=ServerSection)
    model: ModelSection = field(default_factory=ModelSection)
    storage: StorageSection = field(default_factory=StorageSection)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AppConfig":
        if not isinstance(payload, Mapping):
            raise ValueError("Configuration root must be a JSON object")
        return cls(
            server=_build_section(ServerSection, payload.get("server")),
            model=_build_section(ModelSection, payload.get("model")),
            storage=_build_section(StorageSection, payload.get("storage")),
        )


_BLOB_BACKENDS = {"gcs", "http", "local"}
_STORAGE_BACKENDS = {"firestore", "filesystem"}

# (environment variable, section, attribute)
_ENV_OVERRIDES = [
    ("HOST", "server", "host"),
    ("PORT", "server", "port"),
    ("LOG_LEVEL", "server", "log_level"),
    ("MODEL_BUCKET", "model", "bucket"),
    ("MODEL_CACHE_DIR", "model", "cache_dir"),
    ("MODEL_BLOB_BACKEND", "model", "blob_backend"),
    ("RECORD_STORE", "storage", "backend"),
    ("FIRESTORE_COLLECTION", "storage", "collection"),
    ("GOOGLE_CLOUD_PROJECT", "storage", "project"),
]


def load_config(
    path: str | Path | None = None, environ: Mapping[str, str] | None = None
) -> AppConfig:
    """Build the configuration.

    ``path=None`` skips the file layer. A path that does not exist raises
    ``FileNotFoundError``; malformed content raises ``ValueError``.
    """
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(config_path)
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {config_path}: {exc}") from exc
        cfg = AppConfig.from_dict(payload)
        logger.info("Loaded configuration from %s", config_path)
    else:
        cfg = AppConfig()

    _apply_env(cfg, os.environ if environ is None else environ)
    _validate(cfg)
    return cfg


def _build_section(section_cls: type, payload: Any) -> Any:
    if payload is None:
        return section_cls()
    if not isinstance(payload, Mapping):
        raise ValueError(f"Section {section_cls.__name__} must be a JSON object")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(payload) - known)
    if unknown:
        logger.warning(
            "Ignoring unknown %s keys: %s", section_cls.__name__, ", ".join(unknown)
        )
    section = section_cls()
    for name in known & set(payload):
        setattr(section, name, _coerce(section, name, payload[name]))
    return section


def _apply_env(cfg: AppConfig, environ: Mapping[str, str]) -> None:
    for env_name, section_name, attr in _ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or not raw.strip():
            continue
        section = getattr(cfg, section_name)
        setattr(section, attr, _coerce(section, attr, raw.strip()))
        logger.debug("Config override from %s: %s.%s", env_name, section_name, attr)


def _coerce(section: Any, name: str, value: Any) -> Any:
    current = getattr(section, name)
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return [str(item) for item in value]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {name}: {value!r}") from exc
    return None if value is None else str(value)


def _validate(cfg: AppConfig) -> None:
    if cfg.model.blob_backend not in _BLOB_BACKENDS:
        raise ValueError(
            f"model.blob_backend must be one of {sorted(_BLOB_BACKENDS)}, got {cfg.model.blob_backend!r}"
        )
    if cfg.storage.backend not in _STORAGE_BACKENDS:
        raise ValueError(
            f"storage.backend must be one of {sorted(_STORAGE_BACKENDS)}, got {cfg.storage.backend!r}"
        )
    if not 0 < cfg.server.port < 65536:
        raise ValueError(f"server.port out of range: {cfg.server.port}")
    if cfg.server.max_body_bytes <= 0:
        raise ValueError("server.max_body_bytes must be positive")
    if cfg.model.max_concurrent_predictions < 1:
        raise ValueError("model.max_concurrent_predictions must be at least 1")


__all__ = [
    "AppConfig",
    "ServerSection",
    "ModelSection",
    "StorageSection",
    "DEFAULT_WEIGHT_FILES",
    "load_config",
]
