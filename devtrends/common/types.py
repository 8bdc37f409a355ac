"""
Shared type definitions for DevTrends.

API payloads and documents stored in ``system_config`` use camelCase keys;
``CamelModel`` lets Python code use snake_case attributes while reading
and writing those camelCase documents.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

JSONDict = dict[str, Any]


class CamelModel(BaseModel):
    """Base model that (de)serializes with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_dict(self) -> JSONDict:
        """Dump with camelCase keys and JSON-compatible values."""
        return self.model_dump(mode="json", by_alias=True)


__all__ = ["CamelModel", "JSONDict"]
