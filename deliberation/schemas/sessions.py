from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class SessionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    quota: int = Field(..., ge=0)
    sort_order: int = 0


class CandidateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slide_order: int = 0
    notes: Optional[str] = None
    photo_url: Optional[str] = Field(None, max_length=500)
    airtable_url: Optional[str] = Field(None, max_length=500)
    admin_bucket: Optional[str] = Field(None, max_length=50)
