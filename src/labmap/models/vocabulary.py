"""Canonical vocabulary entries and their aliases."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from .base import AliasSource, Vocabulary


class CanonicalEntry(BaseModel):
    """A member of a controlled vocabulary. The code never changes."""

    id: UUID
    vocabulary: Vocabulary
    code: str
    display_name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    source: AliasSource = AliasSource.SEED
    created_at: datetime | None = None


class SeedEntry(BaseModel):
    """One canonical entry with its raw aliases, as stored in seed files."""

    code: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    aliases: list[str] = Field(default_factory=list)


class SeedReport(BaseModel):
    """Outcome of loading a seed file."""

    vocabulary: Vocabulary
    entries_created: int = 0
    aliases_created: int = 0
    aliases_existing: int = 0
    alias_conflicts: list[str] = Field(default_factory=list)
