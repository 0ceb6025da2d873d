"""
Session & role guard: the only place that looks at credential tokens.
Sessions are issued by the account service; this module resolves them
(in-memory for dev/tests, Redis hash `session:<token>` in deployments).
"""
import logging
from datetime import datetime, timezone

import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict

from orderflow.errors import Forbidden, Unauthorized
from orderflow.models import Principal, utcnow
from orderflow.roles import Capability, Role, has_capability

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    user_id: str
    role: Role
    valid_until: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.valid_until


class SessionDirectory:
    """Resolves a token to its session, or None when unknown."""

    async def resolve(self, token: str) -> Session | None:
        raise NotImplementedError


class InMemorySessionDirectory(SessionDirectory):
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.token] = session

    def revoke(self, token: str) -> None:
        self._sessions.pop(token, None)

    async def resolve(self, token: str) -> Session | None:
        return self._sessions.get(token)


class RedisSessionDirectory(SessionDirectory):
    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    async def resolve(self, token: str) -> Session | None:
        data = await self._redis.hgetall(f"{SESSION_KEY_PREFIX}{token}")
        if not data:
            return None
        try:
            valid_until = datetime.fromisoformat(data["valid_until"])
            if valid_until.tzinfo is None:
                valid_until = valid_until.replace(tzinfo=timezone.utc)
            return Session(token=token, user_id=data["user_id"], role=Role(data["role"]), valid_until=valid_until)
        except (KeyError, ValueError):
            logger.warning("Malformed session record for token prefix %s", token[:6])
            return None


class SessionGuard:
    def __init__(self, directory: SessionDirectory, clock=utcnow) -> None:
        self._directory = directory
        self._clock = clock

    async def authenticate(self, token: str | None) -> Principal:
        """Resolve a token to (user_id, role). Unauthorized when missing, unknown or expired."""
        if not token:
            raise Unauthorized("missing credentials")
        session = await self._directory.resolve(token)
        if session is None:
            raise Unauthorized("unknown session")
        if not session.is_valid(self._clock()):
            raise Unauthorized("session expired")
        return Principal(user_id=session.user_id, role=session.role)

    async def require(self, token: str | None, capability: Capability) -> Principal:
        principal = await self.authenticate(token)
        self.check(principal, capability)
        return principal

    @staticmethod
    def check(principal: Principal, capability: Capability) -> None:
        if not has_capability(principal.role, capability):
            raise Forbidden(f"role {principal.role.value} lacks {capability.value}")
