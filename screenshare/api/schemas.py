"""
Pydantic schemas for the relay's HTTP surface.
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .. import DEFAULT_USERNAME


class HealthModel(BaseModel):
    status: str = "ok"
    clients: int = 0
    timestamp: str

    @field_validator("clients", mode="before")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(0, int(value))


class UserModel(BaseModel):
    id: str
    username: str = DEFAULT_USERNAME
    is_sharing: bool = Field(default=False, alias="isSharing")
    connected_at: str = Field(alias="connectedAt")
    model_config = ConfigDict(populate_by_name=True)


class UserCollection(BaseModel):
    users: List[UserModel] = Field(default_factory=list)
