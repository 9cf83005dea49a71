"""
Wire and data models for the localization experiment service.

Includes:
* **PayloadVariant** – one named, immutable unit of payload content.
* **ExperimentRequest** / **ExperimentResponse** – the ``/experiment`` contract.
* **HealthResponse**, **ErrorResponse** – static bodies.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

EXPERIMENT_ID = "exp-localization-v1"


class PayloadVariant(BaseModel):
    """Raw JSON *content* served verbatim under *name*."""

    model_config = ConfigDict(frozen=True)

    name: str
    content: bytes


class ExperimentRequest(BaseModel):
    user_id: str = Field("", alias="userId")


class ExperimentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    experiment_id: str = Field(EXPERIMENT_ID, alias="experimentId")
    selected_payload_name: str = Field(..., alias="selectedPayloadName")
    payload: Any = Field(..., description="Variant content embedded as a JSON value")


class HealthResponse(BaseModel):
    status: str = "ok"
    message: str = "Server is running"


class ErrorResponse(BaseModel):
    error: str
