from __future__ import annotations

import logging
from typing import Any, Dict, Sequence

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..ai.types import ModelHandle
from ..datalake.storage import RecordStore
from ..errors import InputError, PayloadTooLargeError, ServiceError
from .schemas import (
    FailResponse,
    HealthResponse,
    HistoriesResponse,
    HistoryEntry,
    PredictionData,
    PredictResponse,
)
from .service import PredictionService


logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An internal server error occurred"

_FAIL_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": FailResponse, "description": "Invalid input"},
    413: {"model": FailResponse, "description": "Payload too large"},
    500: {"model": FailResponse, "description": "Server error"},
}


def _fail(status_code: int, message: str, headers: Dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "fail", "message": message},
        headers=headers,
    )


def create_app(
    model: ModelHandle,
    records: RecordStore,
    *,
    max_body_bytes: int = 1_000_000,
    cors_origins: Sequence[str] = ("*",),
    max_concurrent_predictions: int = 4,
    prediction_timeout_seconds: float | None = 30.0,
    storage_timeout_seconds: float | None = 10.0,
) -> FastAPI:
    service = PredictionService(
        model=model,
        records=records,
        max_concurrent_predictions=max_concurrent_predictions,
        prediction_timeout_seconds=prediction_timeout_seconds,
        storage_timeout_seconds=storage_timeout_seconds,
    )

    app = FastAPI(title="OncoScan API", version=__version__)
    app.state.model = model
    app.state.records = records
    app.state.service = service
    app.state.max_body_bytes = max_body_bytes

    # Registered first so it sits inside CORSMiddleware; a handler for
    # ``Exception`` would run in ServerErrorMiddleware, outside CORS.
    @app.middleware("http")
    async def convert_unexpected_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error path=%s", request.url.path, exc_info=exc)
            return _fail(500, INTERNAL_ERROR_MESSAGE)

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length is not None:
            try:
                declared = int(length)
            except ValueError:
                return _fail(400, "Invalid Content-Length header")
            if declared > max_body_bytes:
                logger.warning(
                    "Rejected oversized request path=%s content_length=%d limit=%d",
                    request.url.path,
                    declared,
                    max_body_bytes,
                )
                return _fail(413, PayloadTooLargeError(max_body_bytes).message)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError) -> JSONResponse:
        return _fail(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _fail(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(
            "Rejected invalid request path=%s errors=%s", request.url.path, exc.errors()
        )
        return _fail(400, "Invalid request payload")

    @app.get("/health", response_model=HealthResponse)
    def healthcheck() -> HealthResponse:
        return HealthResponse(status="ok", model=getattr(model, "metadata", None))

    @app.post(
        "/predict",
        status_code=201,
        response_model=PredictResponse,
        responses=_FAIL_RESPONSES,
    )
    async def predict(image: UploadFile | None = File(default=None)) -> PredictResponse:
        if image is None:
            raise InputError("Image is required")
        image_bytes = await image.read()
        if len(image_bytes) > max_body_bytes:
            raise PayloadTooLargeError(max_body_bytes)
        record = await service.predict(image_bytes)
        return PredictResponse(data=PredictionData(**record.to_dict()))

    @app.post(
        "/predict/histories",
        response_model=HistoriesResponse,
        responses=_FAIL_RESPONSES,
    )
    async def predict_histories() -> HistoriesResponse:
        entries = await service.list_histories()
        return HistoriesResponse(data=[HistoryEntry(**entry) for entry in entries])

    logger.info(
        "API server initialised model=%s records=%s max_body_bytes=%d max_concurrent=%d",
        model.__class__.__name__,
        records.__class__.__name__,
        max_body_bytes,
        service.max_concurrent_predictions,
    )
    return app


__all__ = ["create_app"]
