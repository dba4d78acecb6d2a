"""
Request identity, capability checks and rate limiting.

A bearer token is either the operator key (AMM_ADMIN_KEY), which acts as
the engine's admin address, or a user API key from /v1/auth/register.
Privileged endpoints ask the engine's authorizer whether the caller's
address holds the endpoint's capability, so a user granted resolve_market
can resolve markets with their own key.

The limiter and settings live on app.state; nothing here is configured at
import time.
"""

import math
import secrets
import time
from dataclasses import dataclass
from typing import Annotated, Callable

from fastapi import Depends, Request, Response

from amm.api_errors import APIError
from amm.auth import Action, User


class RateLimiter:
    """Token bucket per address, refilled continuously at `rate` per minute."""

    def __init__(self, rate: int = 60,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.clock = clock
        self.buckets: dict[str, tuple[float, float]] = {}  # key -> (tokens, at)

    def _seconds_for(self, tokens: float) -> int:
        return max(0, math.ceil(tokens * 60.0 / self.rate))

    def check(self, key: str) -> tuple[bool, dict[str, str]]:
        """Consume one token for key. Returns (allowed, response headers)."""
        now = self.clock()
        tokens, at = self.buckets.get(key, (float(self.rate), now))
        tokens = min(float(self.rate), tokens + (now - at) * self.rate / 60.0)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.buckets[key] = (tokens, now)

        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(int(tokens)),
            "X-RateLimit-Reset": str(self._seconds_for(self.rate - tokens)),
        }
        if not allowed:
            headers["Retry-After"] = str(self._seconds_for(1.0 - tokens))
        return allowed, headers


@dataclass(frozen=True)
class Caller:
    address: str
    user: User | None  # None when the operator key was presented


def _identify(request: Request) -> Caller:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise APIError(401, "auth_required", "Authorization header required")

    settings = request.app.state.settings
    if settings.admin_key and secrets.compare_digest(token, settings.admin_key):
        engine = request.app.state.engine
        return Caller(engine.config.admin_address, None)

    user = request.app.state.auth_store.authenticate(token)
    if user is None:
        raise APIError(401, "invalid_api_key", "Invalid or rotated API key")
    return Caller(user.address, user)


def _throttle(request: Request, response: Response, address: str) -> None:
    allowed, headers = request.app.state.rate_limiter.check(address)
    response.headers.update(headers)
    if not allowed:
        raise APIError(429, "rate_limited", "Rate limit exceeded",
                       {"retry_after": int(headers["Retry-After"])})


async def require_user(request: Request, response: Response) -> User:
    """A registered user's key. The operator key is not a trading identity."""
    caller = _identify(request)
    if caller.user is None:
        raise APIError(401, "invalid_api_key",
                       "The admin key cannot trade; "
                       "use a user API key from /v1/auth/register")
    _throttle(request, response, caller.address)
    return caller.user


def require_capability(action: Action):
    """Dependency resolving to the caller's address if it may perform action."""

    async def dependency(request: Request, response: Response) -> str:
        caller = _identify(request)
        authorizer = request.app.state.engine.authorizer
        if not authorizer.is_allowed(caller.address, action):
            raise APIError(403, "unauthorized",
                           f"{caller.address} may not {action.value}")
        if caller.user is not None:
            _throttle(request, response, caller.address)
        return caller.address

    return dependency


AuthUser = Annotated[User, Depends(require_user)]
CanMint = Annotated[str, Depends(require_capability(Action.MINT))]
CanCreate = Annotated[str, Depends(require_capability(Action.CREATE_MARKET))]
CanValidate = Annotated[str, Depends(require_capability(Action.VALIDATE_MARKET))]
CanInvalidate = Annotated[str, Depends(
    require_capability(Action.INVALIDATE_MARKET))]
CanResolve = Annotated[str, Depends(require_capability(Action.RESOLVE_MARKET))]
CanWithdrawFees = Annotated[str, Depends(
    require_capability(Action.WITHDRAW_FEES))]
