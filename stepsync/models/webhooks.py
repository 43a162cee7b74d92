"""Pydantic models for inbound Fitbit subscription notifications."""

from __future__ import annotations

import re
from datetime import date
from enum import Enum

from pydantic import Field, TypeAdapter, field_validator

from stepsync.models.base import StepSyncBase

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class CollectionType(str, Enum):
    activities = "activities"
    body = "body"
    foods = "foods"
    sleep = "sleep"
    user_revoked_access = "userRevokedAccess"
    delete_user = "deleteUser"


REVOCATION_COLLECTIONS = frozenset(
    {CollectionType.user_revoked_access, CollectionType.delete_user}
)


class FitbitNotification(StepSyncBase):
    """One element of the JSON array Fitbit POSTs to the subscriber endpoint.

    Example::

        {"collectionType": "activities", "date": "2024-01-15",
         "ownerId": "ABC123", "ownerType": "user", "subscriptionId": "u1-activities-1"}
    """

    collection_type: CollectionType = Field(alias="collectionType")
    date: str
    owner_id: str = Field(alias="ownerId", min_length=1)
    owner_type: str = Field(alias="ownerType")
    subscription_id: str = Field(alias="subscriptionId", min_length=1)

    @field_validator("date")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        if not _ISO_DATE.match(v):
            raise ValueError("date must be YYYY-MM-DD")
        date.fromisoformat(v)
        return v

    @property
    def notification_date(self) -> date:
        return date.fromisoformat(self.date)

    @property
    def is_revocation(self) -> bool:
        return self.collection_type in REVOCATION_COLLECTIONS


NotificationBatch = TypeAdapter(list[FitbitNotification])
