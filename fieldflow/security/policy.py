"""Authorization collaborator used by the execution gateway."""

from __future__ import annotations

from typing import Dict, Optional, Protocol

from ..errors import ForbiddenError
from .context import ADMIN, Caller


class CallerPolicy(Protocol):
    """Resolves caller tokens and answers role checks."""

    async def resolve(self, token: str) -> Caller:
        """Return the caller for ``token`` or raise :class:`ForbiddenError`."""

    async def has_role(self, caller: Caller, required_role: str) -> bool:
        """Return ``True`` if ``caller`` holds ``required_role``."""


def caller_has_role(caller: Caller, required_role: str) -> bool:
    """Administrators satisfy every role."""
    return required_role in caller.roles or ADMIN in caller.roles


class StaticCallerPolicy(CallerPolicy):
    """Token table policy for tests and single-operator deployments."""

    def __init__(self, callers: Optional[Dict[str, Caller]] = None) -> None:
        self._callers: Dict[str, Caller] = dict(callers or {})

    def add(self, token: str, caller: Caller) -> None:
        self._callers[token] = caller

    async def resolve(self, token: str) -> Caller:
        caller = self._callers.get(token)
        if caller is None:
            raise ForbiddenError("Authentication required")
        return caller

    async def has_role(self, caller: Caller, required_role: str) -> bool:
        return caller_has_role(caller, required_role)
