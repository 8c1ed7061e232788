"""Caller resolution and role checks."""

from __future__ import annotations

from .context import ADMIN, SUPERVISOR, TECHNICIAN, Caller
from .policy import CallerPolicy, StaticCallerPolicy, caller_has_role
from .tokens import JwtCallerPolicy

__all__ = [
    "ADMIN",
    "SUPERVISOR",
    "TECHNICIAN",
    "Caller",
    "CallerPolicy",
    "StaticCallerPolicy",
    "JwtCallerPolicy",
    "caller_has_role",
]
