from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..ai.classifier import classify_image
from ..ai.types import Classification, ModelHandle
from ..datalake.storage import PredictionRecord, RecordStore, StoredRecord
from ..errors import InputError, PersistenceError, PredictionError, ServiceTimeoutError


logger = logging.getLogger(__name__)


@dataclass
class PredictionService:
    model: ModelHandle
    records: RecordStore
    max_concurrent_predictions: int = 4
    prediction_timeout_seconds: float | None = 30.0
    storage_timeout_seconds: float | None = 10.0
    _slots: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.max_concurrent_predictions = max(1, int(self.max_concurrent_predictions))
        self._slots = asyncio.Semaphore(self.max_concurrent_predictions)

    async def predict(self, image_bytes: bytes | None) -> PredictionRecord:
        if not image_bytes:
            raise InputError("Image is required")

        logger.info("Running prediction image_bytes=%d", len(image_bytes))
        classification = await self._classify(image_bytes)

        record = PredictionRecord(
            id=str(uuid.uuid4()),
            result=classification.label,
            suggestion=classification.suggestion,
            created_at=datetime.now(timezone.utc),
        )
        # Not abandoned on a deadline: the record store applies its own
        # timeout, so an outcome is only reported once it is persisted.
        try:
            await asyncio.to_thread(self.records.store, record)
        except PersistenceError as exc:
            logger.error(
                "Failed to store prediction id=%s status=%d error=%s",
                record.id,
                exc.status_code,
                exc.message,
            )
            raise

        logger.info(
            "Prediction stored id=%s result=%s confidence=%.2f",
            record.id,
            record.result,
            classification.confidence,
        )
        return record

    async def list_histories(self) -> List[Dict[str, Any]]:
        try:
            stored = await asyncio.wait_for(
                asyncio.to_thread(self.records.list_all),
                self.storage_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Timed out listing predictions")
            raise ServiceTimeoutError(
                "Timed out listing predictions", status_code=504
            ) from exc
        logger.debug("Listed predictions count=%d", len(stored))
        return [format_history(item) for item in stored]

    async def _classify(self, image_bytes: bytes) -> Classification:
        try:
            await asyncio.wait_for(self._slots.acquire(), self.prediction_timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error(
                "No prediction slot free after %.1fs max_concurrent=%d",
                self.prediction_timeout_seconds,
                self.max_concurrent_predictions,
            )
            raise ServiceTimeoutError("Prediction timed out") from exc

        # The slot follows the worker thread, not this request: a timed out
        # prediction keeps it until the model call returns.
        work = asyncio.ensure_future(
            asyncio.to_thread(classify_image, self.model, image_bytes)
        )
        work.add_done_callback(self._release_slot)
        try:
            return await asyncio.wait_for(
                asyncio.shield(work), self.prediction_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "Prediction timed out after %.1fs", self.prediction_timeout_seconds
            )
            raise ServiceTimeoutError("Prediction timed out") from exc
        except PredictionError as exc:
            logger.warning(
                "Prediction failed stage=%s cause=%r",
                exc.stage,
                exc.__cause__,
                exc_info=exc.__cause__,
            )
            raise

    def _release_slot(self, work: asyncio.Future) -> None:
        self._slots.release()
        if not work.cancelled() and work.exception() is not None:
            logger.debug("Prediction worker finished with %r", work.exception())


def format_history(stored: StoredRecord) -> Dict[str, Any]:
    data = stored.data
    return {
        "id": stored.record_id,
        "history": {
            "result": data.get("result"),
            "createdAt": data.get("createdAt"),
            "suggestion": data.get("suggestion"),
            "id": stored.record_id,
        },
    }


__all__ = ["PredictionService", "format_history"]
