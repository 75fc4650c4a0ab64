from __future__ import annotations

import logging
import math
from typing import Any

import numpy as np

from ..errors import PredictionError
from .preprocess import decode_image
from .types import (
    CANCER_CONFIDENCE_THRESHOLD,
    LABEL_CANCER,
    LABEL_NON_CANCER,
    SUGGESTION_CANCER,
    SUGGESTION_NON_CANCER,
    Classification,
    ModelHandle,
)


logger = logging.getLogger(__name__)


def confidence_from_scores(scores: Any) -> float:
    """Scale the largest raw score to a 0-100 percentage."""
    values = np.asarray(scores, dtype=np.float64).ravel()
    if values.size == 0:
        raise ValueError("Model returned an empty score vector")
    confidence = float(values.max()) * 100
    if not math.isfinite(confidence):
        raise ValueError(f"Model returned a non-finite score: {confidence}")
    return confidence


def decide(confidence: float) -> tuple[str, str]:
    if confidence <= CANCER_CONFIDENCE_THRESHOLD:
        return LABEL_NON_CANCER, SUGGESTION_NON_CANCER
    return LABEL_CANCER, SUGGESTION_CANCER


def classify(model: ModelHandle, tensor: np.ndarray) -> Classification:
    try:
        scores = model.predict(tensor)
    except Exception as exc:
        raise PredictionError("predict") from exc
    try:
        confidence = confidence_from_scores(scores)
    except (TypeError, ValueError) as exc:
        raise PredictionError("score") from exc
    label, suggestion = decide(confidence)
    logger.debug(
        "Classified tensor confidence=%.2f label=%s", confidence, label
    )
    return Classification(label=label, suggestion=suggestion, confidence=confidence)


def classify_image(model: ModelHandle, image_bytes: bytes) -> Classification:
    try:
        tensor = decode_image(image_bytes)
    except Exception as exc:
        raise PredictionError("decode") from exc
    return classify(model, tensor)


__all__ = ["classify", "classify_image", "confidence_from_scores", "decide"]
