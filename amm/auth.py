"""
Identity and authorization.

Two separate concerns:
1. AuthStore: API-key identity for the HTTP layer. A user registers a
   username, gets a raw API key once; only its sha256 hash is stored.
   The username is the user's ledger address.
2. RoleAuthorizer: the capability check the market engine consults on
   privileged operations (create / validate / invalidate / resolve /
   withdraw fees), and the HTTP layer consults for minting.
   Any object with is_allowed(caller, action) works.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class Action(str, Enum):
    MINT = "mint"
    CREATE_MARKET = "create_market"
    VALIDATE_MARKET = "validate_market"
    INVALIDATE_MARKET = "invalidate_market"
    RESOLVE_MARKET = "resolve_market"
    WITHDRAW_FEES = "withdraw_fees"


class Authorizer(Protocol):
    def is_allowed(self, caller: str, action: Action) -> bool: ...


class RoleAuthorizer:
    """Admins may do everything; other callers need explicit grants."""

    def __init__(self, admins: set[str] | None = None):
        self.admins: set[str] = set(admins or ())
        self.grants: dict[str, set[Action]] = {}

    def grant(self, caller: str, *actions: Action) -> None:
        self.grants.setdefault(caller, set()).update(actions)

    def revoke(self, caller: str, *actions: Action) -> None:
        self.grants.get(caller, set()).difference_update(actions)

    def is_allowed(self, caller: str, action: Action) -> bool:
        return caller in self.admins or action in self.grants.get(caller, set())


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------

@dataclass
class User:
    username: str
    api_key_hash: str
    created_at: str = field(default_factory=_now)
    last_seen_at: str = field(default_factory=_now)

    @property
    def address(self) -> str:
        return self.username


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class AuthStore:
    """In-memory auth store. Serialized via persistence module."""

    def __init__(self):
        self.users: dict[str, User] = {}          # username -> User
        self.key_to_user: dict[str, User] = {}    # api_key_hash -> User

    def register_user(self, username: str) -> tuple[User, str]:
        """Register a user. Returns (user, raw_api_key)."""
        if username in self.users:
            raise ValueError("username_taken")
        raw_key = secrets.token_urlsafe(32)
        user = User(username=username, api_key_hash=_hash_key(raw_key))
        self.users[username] = user
        self.key_to_user[user.api_key_hash] = user
        return user, raw_key

    def rotate_key(self, username: str) -> str:
        """Issue a new API key; the old one stops working."""
        user = self.users[username]
        self.key_to_user.pop(user.api_key_hash, None)
        raw_key = secrets.token_urlsafe(32)
        user.api_key_hash = _hash_key(raw_key)
        user.last_seen_at = _now()
        self.key_to_user[user.api_key_hash] = user
        return raw_key

    def authenticate(self, raw_key: str) -> User | None:
        """Validate an API key. Returns User or None."""
        user = self.key_to_user.get(_hash_key(raw_key))
        if user:
            user.last_seen_at = _now()
        return user
