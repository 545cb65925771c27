"""Item models and table definitions shared by the test suite.

This module provides:
- ``User``: single-key items with two single-key secondary indexes
- ``Message``: composite-key items (string partition key, number sort key)
  with a composite secondary index
- ``Profile``: nested models and non-native Python types, to check that items
  survive the trip through storage unchanged
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
FIXED_TIMESTAMP = "2024-01-01T12:00:00.000Z"

USER_KEY = [("userId", "string")]
USER_INDEXES = {
    "by-email": [("email", "string")],
    "by-status": [("status", "string")],
}

MESSAGE_KEY = [("chatId", "string"), ("timestamp", "number")]
MESSAGE_INDEXES = {
    "by-user": [("userId", "string"), ("timestamp", "number")],
}

PROFILE_KEY = [("profileId", "string")]


def fixed_clock() -> datetime:
    return FIXED_NOW


class User(BaseModel):
    userId: str
    email: str
    status: str = "active"
    name: str | None = None
    visits: int = 0
    createdAt: str | None = None
    updatedAt: str | None = None


class Message(BaseModel):
    chatId: str
    timestamp: int
    userId: str
    role: str = "user"
    content: str = ""
    createdAt: str | None = None
    updatedAt: str | None = None


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"


class Address(BaseModel):
    street: str
    city: str
    zip_code: str = Field(alias="zipCode")


class Profile(BaseModel):
    """No timestamp attributes: writes leave the item untouched."""

    profileId: str
    tier: Tier = Tier.FREE
    score: float = 0.0
    balance: Decimal = Decimal("0")
    tags: list[str] = Field(default_factory=list)
    address: Address | None = None
    preferences: dict[str, bool] = Field(default_factory=dict)
    lastLogin: datetime | None = None
