"""Pydantic models for identity and insurance verification results."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from .conversation import ClientInfo


class IdentityResult(BaseModel):
    verified: bool
    client_info: Optional[ClientInfo] = None
    error: Optional[str] = None
    attempts_remaining: Optional[int] = None
    locked_out: bool = False


class InsuranceResult(BaseModel):
    verified: bool
    provider: str = ""
    copay: Optional[float] = None
    deductible: Optional[float] = None
    deductible_met: Optional[bool] = None
    error: Optional[str] = None
