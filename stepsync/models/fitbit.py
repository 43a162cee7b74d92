"""Pydantic models for Fitbit Web API responses.

Only the fields the sync pipeline reads are modelled; everything else in the
provider JSON is ignored.
"""

from __future__ import annotations

from datetime import date, time

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _FitbitModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TimeSeriesPoint(_FitbitModel):
    """``{"dateTime": "2024-01-15", "value": "8432"}``; Fitbit sends the value as a string."""

    date_time: date = Field(alias="dateTime")
    value: int = Field(ge=0)

    @field_validator("value", mode="before")
    @classmethod
    def _numeric_string(cls, v):
        if isinstance(v, str):
            return int(float(v))
        return v


class IntradayPoint(_FitbitModel):
    time_of_day: time = Field(alias="time")
    value: int = Field(ge=0)


class IntradaySeries(_FitbitModel):
    dataset: list[IntradayPoint] = Field(default_factory=list)
    dataset_interval: int | None = Field(default=None, alias="datasetInterval")
    dataset_type: str | None = Field(default=None, alias="datasetType")


class IntradayStepsResponse(_FitbitModel):
    intraday: IntradaySeries = Field(alias="activities-steps-intraday")


class TokenResponse(_FitbitModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int = 28800


class ApiSubscription(_FitbitModel):
    subscription_id: str = Field(alias="subscriptionId")
    collection_type: str | None = Field(default=None, alias="collectionType")
    owner_id: str | None = Field(default=None, alias="ownerId")
    owner_type: str | None = Field(default=None, alias="ownerType")
    subscriber_id: str | None = Field(default=None, alias="subscriberId")


class ApiSubscriptionList(_FitbitModel):
    subscriptions: list[ApiSubscription] = Field(default_factory=list, alias="apiSubscriptions")
