from datetime import datetime, timezone
from enum import Enum
from typing import Any

from bson import ObjectId
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Fresh ObjectId rendered as hex; ids are stored as strings."""
    return str(ObjectId())


def plain_document(value: Any) -> Any:
    """Recursively unwrap enums so documents hold plain BSON values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: plain_document(item) for key, item in value.items()}
    if isinstance(value, list):
        return [plain_document(item) for item in value]
    return value


class MongoModel(BaseModel):
    id: str = Field(default_factory=new_id, alias="_id")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True
    )

    def to_document(self) -> dict:
        """Dump for insertion: ``_id`` key, enums as their values."""
        return plain_document(self.model_dump(by_alias=True, mode="python"))
