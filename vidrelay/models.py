from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class GenerateRequest(BaseModel):
    url: str
    name: Optional[str] = None
    token: Optional[str] = None

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        v = v.strip()
        # Prefix check only; the origin is trusted to reject nonsense
        if not v.startswith("http"):
            raise ValueError("url must start with http")
        return v


class GenerateResponse(BaseModel):
    playback_url: str = Field(serialization_alias="playbackUrl")
    slug: str


class LinkEntry(BaseModel):
    slug: str
    origin_url: str


class DeleteResponse(BaseModel):
    success: bool
    error: Optional[str] = None
