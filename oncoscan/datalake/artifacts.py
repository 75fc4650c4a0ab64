from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import requests

from ..errors import BlobNotFoundError, StorageFetchError


logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def download(self, bucket: str, key: str) -> bytes: ...


class GCSBlobStore:
    """Read objects from Google Cloud Storage with application default credentials."""

    def __init__(self, client: Any | None = None, timeout: float = 60.0) -> None:
        if client is None:
            from google.auth.exceptions import GoogleAuthError
            from google.cloud import storage

            try:
                client = storage.Client()
            except GoogleAuthError as exc:
                raise StorageFetchError(f"Cannot create storage client: {exc}") from exc
        self._client = client
        self._timeout = timeout

    def download(self, bucket: str, key: str) -> bytes:
        from google.api_core import exceptions as api_exceptions

        blob = self._client.bucket(bucket).blob(key)
        try:
            return blob.download_as_bytes(timeout=self._timeout)
        except api_exceptions.NotFound as exc:
            raise BlobNotFoundError(f"gs://{bucket}/{key} does not exist") from exc
        except api_exceptions.GoogleAPIError as exc:
            raise StorageFetchError(f"Failed to download gs://{bucket}/{key}: {exc}") from exc


@dataclass
class HttpBlobStore:
    """Read publicly readable objects over plain HTTPS."""

    base_url: str = "https://storage.googleapis.com"
    timeout: float = 60.0
    session: requests.Session = field(default_factory=requests.Session)

    def download(self, bucket: str, key: str) -> bytes:
        url = f"{self.base_url.rstrip('/')}/{bucket}/{key}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StorageFetchError(f"Failed to reach {url}: {exc}") from exc
        if response.status_code == 404:
            raise BlobNotFoundError(f"{url} does not exist")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise StorageFetchError(f"Failed to download {url}: {exc}") from exc
        return response.content


class LocalBlobStore:
    """Serve objects from ``<root>/<bucket>/<key>`` on the local filesystem."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def download(self, bucket: str, key: str) -> bytes:
        path = self._root / bucket / key
        if not path.is_file():
            raise BlobNotFoundError(f"{path} does not exist")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageFetchError(f"Failed to read {path}: {exc}") from exc


@dataclass
class ArtifactFetcher:
    store: BlobStore
    retries: int = 3
    backoff_seconds: float = 1.0
    sleep: Callable[[float], None] = time.sleep

    def fetch(self, bucket: str, remote_name: str, local_path: Path) -> None:
        attempts = max(1, int(self.retries))
        for attempt in range(1, attempts + 1):
            try:
                data = self.store.download(bucket, remote_name)
                break
            except BlobNotFoundError:
                raise
            except StorageFetchError as exc:
                if attempt >= attempts:
                    raise
                delay = max(0.0, self.backoff_seconds) * 2 ** (attempt - 1)
                logger.warning(
                    "Download failed bucket=%s name=%s attempt=%d/%d retry_in=%.1fs error=%s",
                    bucket,
                    remote_name,
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)

        tmp_path = local_path.with_name(f"{local_path.name}.part")
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, local_path)
        except OSError as exc:
            raise StorageFetchError(f"Failed to write {local_path}: {exc}") from exc
        logger.info("Downloaded %s to %s (%d bytes)", remote_name, local_path, len(data))

    def ensure_cached(
        self, bucket: str, file_names: Sequence[str], cache_dir: Path
    ) -> Path:
        """Fetch every artifact file missing from ``cache_dir``.

        Returns the local path of the first file, the topology descriptor.
        """
        if not file_names:
            raise StorageFetchError("No model artifact files configured")
        for name in file_names:
            local_path = cache_dir / name
            if local_path.is_file():
                logger.info("Using cached %s", local_path)
                continue
            self.fetch(bucket, name, local_path)
        return cache_dir / file_names[0]


__all__ = [
    "BlobStore",
    "GCSBlobStore",
    "HttpBlobStore",
    "LocalBlobStore",
    "ArtifactFetcher",
]
