"""JWT-backed caller policy."""

from __future__ import annotations

import logging
from typing import Optional

import jwt

from ..config import AuthConfig
from ..errors import ForbiddenError
from .context import Caller
from .policy import CallerPolicy, caller_has_role

logger = logging.getLogger(__name__)


class JwtCallerPolicy(CallerPolicy):
    """Validates signed caller tokens and reads roles from their claims.

    Tokens carry the user id in ``sub`` and a list of roles in ``roles``.
    Expiration, audience and signature are checked by PyJWT.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        leeway: int = 30,
    ) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience
        self.leeway = leeway

    @classmethod
    def from_config(cls, config: AuthConfig) -> "JwtCallerPolicy":
        if not config.secret:
            raise ValueError("auth.secret must be configured for token verification")
        return cls(config.secret, algorithm=config.algorithm, audience=config.audience)

    async def resolve(self, token: str) -> Caller:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                leeway=self.leeway,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.PyJWTError as exc:
            logger.warning(f"Rejected caller token: {exc}")
            raise ForbiddenError("Invalid caller token") from exc
        subject = claims.get("sub")
        if not subject:
            raise ForbiddenError("Caller token has no subject")
        roles = claims.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        return Caller(user_id=subject, roles=list(roles), claims=claims)

    async def has_role(self, caller: Caller, required_role: str) -> bool:
        return caller_has_role(caller, required_role)

    def issue(self, user_id: str, roles: list[str], **claims) -> str:
        """Sign a caller token; used by operators and tests."""
        payload = {"sub": user_id, "roles": roles, **claims}
        if self.audience is not None:
            payload.setdefault("aud", self.audience)
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)
