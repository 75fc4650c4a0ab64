from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np

# Confidence percentages at or below this value are reported as non-cancer.
CANCER_CONFIDENCE_THRESHOLD: float = 50.0

LABEL_CANCER = "Cancer"
LABEL_NON_CANCER = "Non-cancer"

SUGGESTION_CANCER = "Segera periksa ke dokter!"
SUGGESTION_NON_CANCER = "Penyakit kanker tidak terdeteksi."

INPUT_SIZE: tuple[int, int] = (224, 224)


class ModelHandle(Protocol):
    def predict(self, tensor: np.ndarray) -> np.ndarray: ...


@dataclass(frozen=True)
class Classification:
    label: str
    suggestion: str
    confidence: float


__all__ = [
    "ModelHandle",
    "Classification",
    "CANCER_CONFIDENCE_THRESHOLD",
    "LABEL_CANCER",
    "LABEL_NON_CANCER",
    "SUGGESTION_CANCER",
    "SUGGESTION_NON_CANCER",
    "INPUT_SIZE",
]
