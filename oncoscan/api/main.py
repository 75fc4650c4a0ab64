from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from ..ai.graph_model import GraphModel, load_model
from ..datalake.artifacts import (
    ArtifactFetcher,
    BlobStore,
    GCSBlobStore,
    HttpBlobStore,
    LocalBlobStore,
)
from ..datalake.storage import FileSystemRecordStore, FirestoreRecordStore, RecordStore
from ..errors import ServiceError, StartupError
from .config_loader import AppConfig, ModelSection, ServerSection, StorageSection, load_config
from .server import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oncoscan-api",
        description="Serve cancer image predictions over HTTPS.",
        epilog="Settings are read from the JSON file given by --config, then "
               "from environment variables (PORT, MODEL_BUCKET, RECORD_STORE, ...).",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/server.json",
        help="JSON settings file; defaults are used when it is absent",
    )
    parser.add_argument("--host", type=str, default=None, help="bind address")
    parser.add_argument("--port", type=int, default=None, help="listen port")
    return parser


def build_blob_store(cfg: ModelSection) -> BlobStore:
    if cfg.blob_backend == "local":
        return LocalBlobStore(Path(cfg.local_blob_root))
    if cfg.blob_backend == "http":
        return HttpBlobStore(base_url=cfg.http_base_url, timeout=cfg.fetch_timeout_seconds)
    return GCSBlobStore(timeout=cfg.fetch_timeout_seconds)


def build_record_store(cfg: StorageSection) -> RecordStore:
    if cfg.backend == "filesystem":
        return FileSystemRecordStore(Path(cfg.records_root))
    return FirestoreRecordStore(
        cfg.collection,
        project=cfg.project,
        database=cfg.database,
        timeout=cfg.timeout_seconds,
    )


def check_tls_files(cfg: ServerSection) -> tuple[str, str] | None:
    """Return ``(certfile, keyfile)`` when TLS is enabled and both files are readable."""
    if not cfg.tls_enabled:
        return None
    for label, value in (("certificate", cfg.tls_cert), ("key", cfg.tls_key)):
        path = Path(value)
        try:
            with path.open("rb") as handle:
                handle.read(1)
        except OSError as exc:
            raise StartupError(f"TLS {label} {path} is not readable: {exc}") from exc
    return cfg.tls_cert, cfg.tls_key


def prepare_model(cfg: ModelSection, store: BlobStore) -> GraphModel:
    fetcher = ArtifactFetcher(
        store=store,
        retries=cfg.fetch_retries,
        backoff_seconds=cfg.fetch_backoff_seconds,
    )
    topology_path = fetcher.ensure_cached(
        cfg.bucket, cfg.artifact_files, Path(cfg.cache_dir)
    )
    model = load_model(topology_path)
    logger.info("Model ready source=gs://%s/%s metadata=%s", cfg.bucket, cfg.topology_file, model.metadata)
    return model


def _load_app_config(path: str) -> AppConfig:
    try:
        return load_config(path if Path(path).exists() else None)
    except Exception as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)


def main() -> None:
    load_dotenv()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s"
        )
    parser = build_parser()
    args = parser.parse_args()

    if not Path(args.config).exists():
        logger.info(
            "Configuration file %s not found; using defaults. "
            "Copy config/server.example.json to config/server.json",
            args.config,
        )
    cfg = _load_app_config(args.config)

    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port
    logging.getLogger().setLevel(cfg.server.log_level.upper())

    logger.info("Server configuration: %s:%s tls=%s", cfg.server.host, cfg.server.port, cfg.server.tls_enabled)
    logger.info("Model source: backend=%s bucket=%s", cfg.model.blob_backend, cfg.model.bucket)
    logger.info("Record store: %s", cfg.storage.backend)

    try:
        tls_files = check_tls_files(cfg.server)
        model = prepare_model(cfg.model, build_blob_store(cfg.model))
        records = build_record_store(cfg.storage)
    except (StartupError, ServiceError) as exc:
        logger.error("Startup failed: %s", exc)
        sys.exit(1)

    app = create_app(
        model,
        records,
        max_body_bytes=cfg.server.max_body_bytes,
        cors_origins=cfg.server.cors_origins,
        max_concurrent_predictions=cfg.model.max_concurrent_predictions,
        prediction_timeout_seconds=cfg.model.prediction_timeout_seconds,
        storage_timeout_seconds=cfg.storage.timeout_seconds,
    )

    certfile, keyfile = tls_files if tls_files else (None, None)
    config = uvicorn.Config(
        app,
        host=cfg.server.host,
        port=cfg.server.port,
        log_level=cfg.server.log_level.lower(),
        ssl_certfile=certfile,
        ssl_keyfile=keyfile,
        timeout_graceful_shutdown=1,
    )
    server = uvicorn.Server(config)

    scheme = "https" if tls_files else "http"
    logger.info("Server start at: %s://%s:%s", scheme, cfg.server.host, cfg.server.port)
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received during shutdown")


if __name__ == "__main__":
    main()
