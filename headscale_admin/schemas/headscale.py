from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from headscale_admin.utils import as_bool, parse_timestamp, split_tags


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


def _as_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class User(_UpstreamModel):
    id: str
    name: str = ""
    display_name: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return _as_id(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)


class Node(_UpstreamModel):
    id: str
    name: str = ""
    given_name: Optional[str] = None
    online: bool = False
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expiry: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    ip_addresses: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return _as_id(value)

    @model_validator(mode="before")
    @classmethod
    def _flatten_upstream(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        values = dict(data)
        if "tags" not in values:
            values["tags"] = list(values.get("forcedTags") or []) + list(
                values.get("validTags") or []
            )
        owner = values.get("user")
        if isinstance(owner, dict):
            values.setdefault("userId", _as_id(owner.get("id")) or None)
            values.setdefault("userName", owner.get("name"))
        elif owner is not None and "userId" not in values:
            values["userId"] = _as_id(owner)
        return values

    @field_validator("online", mode="before")
    @classmethod
    def _online(cls, value: Any) -> bool:
        return bool(as_bool(value))

    @field_validator("last_seen", "created_at", "expiry", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> List[str]:
        return split_tags(value)

    @property
    def display_name(self) -> str:
        return self.given_name or self.name or self.id


class PreauthKey(_UpstreamModel):
    id: str
    user: Optional[str] = None
    key: str = ""
    reusable: bool = False
    ephemeral: bool = False
    used: bool = False
    expiration: Optional[datetime] = None
    created_at: Optional[datetime] = None
    acl_tags: List[str] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        return _as_id(value)

    @field_validator("user", mode="before")
    @classmethod
    def _owner(cls, value: Any) -> Optional[str]:
        if isinstance(value, dict):
            return value.get("name") or _as_id(value.get("id")) or None
        return _as_id(value) or None

    @field_validator("reusable", "ephemeral", "used", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> bool:
        return bool(as_bool(value))

    @field_validator("expiration", "created_at", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> Optional[datetime]:
        return parse_timestamp(value)

    @field_validator("acl_tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> List[str]:
        return split_tags(value)

    @model_validator(mode="before")
    @classmethod
    def _tag_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "aclTags" not in data and "tags" in data:
            return {**data, "aclTags": data["tags"]}
        return data
