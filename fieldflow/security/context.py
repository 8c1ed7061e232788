"""Caller identity carried into gateway operations."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field

TECHNICIAN = "technician"
SUPERVISOR = "supervisor"
ADMIN = "admin"


class Caller(BaseModel):
    """Authenticated caller resolved from a caller token.

    ``user_id`` is written into the audit fields of executions the caller
    touches; ``roles`` are consulted by the policy's ``has_role`` check.
    """

    user_id: str
    roles: List[str] = Field(default_factory=list)
    claims: Dict[str, Any] = Field(default_factory=dict, description="Token claims")
