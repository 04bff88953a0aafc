"""Pydantic models for scraped and stored listings."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ScrapedListing(BaseModel):
    """Structured record extracted from a listing page."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str = Field(min_length=1)
    name: str
    description: Optional[str] = None
    price: float
    size: float
    city: str
    post_code: str
    rooms: int
    dpe: Optional[str] = Field(default=None, description="Energy class letter")

    @field_validator("dpe", mode="before")
    @classmethod
    def _single_letter_dpe(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and len(value.strip()) != 1:
            return None
        return value.strip().upper() if isinstance(value, str) else value


class StoredListing(ScrapedListing):
    """A listing persisted in the repository, unique by ``url``."""

    id: str
    is_favorite: bool = False
    is_archived: bool = False
    is_housia_picked: bool = False
    is_user_picked: bool = True
