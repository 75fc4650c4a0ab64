from __future__ import annotations


PREDICTION_FAILED_MESSAGE = "Terjadi kesalahan dalam melakukan prediksi"


class ServiceError(Exception):
    """Request-level failure that is reported to the caller."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InputError(ServiceError):
    status_code = 400


class PredictionError(InputError):
    """Classification failed.

    Only the fixed message reaches the caller. ``stage`` and ``__cause__``
    are kept for logs.
    """

    def __init__(self, stage: str) -> None:
        super().__init__(PREDICTION_FAILED_MESSAGE)
        self.stage = stage


class PayloadTooLargeError(InputError):
    status_code = 413

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Payload content length greater than maximum allowed: {limit}"
        )
        self.limit = limit


class PersistenceError(ServiceError):
    pass


class ServiceTimeoutError(ServiceError):
    status_code = 503


class ImageDecodeError(ValueError):
    pass


class StartupError(RuntimeError):
    pass


class StorageFetchError(StartupError):
    pass


class BlobNotFoundError(StorageFetchError):
    pass


class ModelLoadError(StartupError):
    pass


__all__ = [
    "PREDICTION_FAILED_MESSAGE",
    "ServiceError",
    "InputError",
    "PredictionError",
    "PayloadTooLargeError",
    "PersistenceError",
    "ServiceTimeoutError",
    "ImageDecodeError",
    "StartupError",
    "StorageFetchError",
    "BlobNotFoundError",
    "ModelLoadError",
]
