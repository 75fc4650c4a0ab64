from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field


class PredictionData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Generated prediction identifier (UUID4)")
    result: Literal["Cancer", "Non-cancer"]
    suggestion: str
    created_at: str = Field(..., alias="createdAt", description="ISO-8601 UTC timestamp")


class PredictResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str = "Model is predicted successfully"
    data: PredictionData


class HistoryRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result: str | None = None
    created_at: str | None = Field(default=None, alias="createdAt")
    suggestion: str | None = None
    id: str


class HistoryEntry(BaseModel):
    id: str
    history: HistoryRecord


class HistoriesResponse(BaseModel):
    status: Literal["success"] = "success"
    data: List[HistoryEntry] = Field(default_factory=list)


class FailResponse(BaseModel):
    status: Literal["fail"] = "fail"
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    model: Dict[str, Any] | None = None


__all__ = [
    "PredictionData",
    "PredictResponse",
    "HistoryRecord",
    "HistoryEntry",
    "HistoriesResponse",
    "FailResponse",
    "HealthResponse",
]
