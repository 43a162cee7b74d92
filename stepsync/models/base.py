"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class StepSyncBase(BaseModel):
    """Base model with shared config for all StepSync schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorDetail(BaseModel):
    detail: str
