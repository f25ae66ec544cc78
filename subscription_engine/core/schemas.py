from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Response payloads are camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


DataT = TypeVar("DataT")


class LifecycleResult(BaseModel, Generic[DataT]):
    success: bool = True
    message: str
    data: DataT


class LifecycleFailure(BaseModel):
    success: bool = False
    message: str
    data: dict[str, object] = Field(default_factory=dict)
    code: str
