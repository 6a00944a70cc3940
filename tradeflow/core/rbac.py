"""
Caller identity and ownership checks.

Authentication is handled upstream; requests arrive with a resolved user id.
The lifecycle services only ask one question: does any of the caller's
identity aliases own this entity?
"""
import time
from enum import Enum
from threading import Lock
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session

from tradeflow.core.config import settings


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


def belongs_to(candidate_ids: Iterable[Optional[str]], owner_id: Optional[str]) -> bool:
    """True when ``owner_id`` is one of the caller's identity aliases."""
    if not owner_id:
        return False
    return owner_id in {c for c in candidate_ids if c}


def identity_set(primary_id: Optional[str], aliases: Optional[Iterable[str]] = None) -> FrozenSet[str]:
    """Collapse a primary id plus optional aliases into one candidate set."""
    ids = set(aliases or ())
    if primary_id:
        ids.add(primary_id)
    return frozenset(i for i in ids if i)


def resolve_seller_ids(db: Session, user_id: str) -> FrozenSet[str]:
    """
    All identifiers the given seller may be stored under.

    Orders and quotes reference sellers either by their user id or by their
    seller profile id, depending on the flow that created them.
    """
    from tradeflow.db.models import SellerProfile

    ids = {user_id}
    profile = db.query(SellerProfile).filter(
        (SellerProfile.user_id == user_id) | (SellerProfile.id == user_id)
    ).first()
    if profile:
        ids.add(profile.id)
        ids.add(profile.user_id)
    return frozenset(ids)


class PermissionCache:
    """
    Time-boxed cache of resolved identity aliases keyed by user id.

    The clock is injected so expiry can be tested without sleeping. Callers
    that change a user's roles or profiles must call ``invalidate``.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = settings.PERMISSION_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, FrozenSet[str]]] = {}
        self._lock = Lock()

    def get(self, user_id: str, loader: Callable[[], FrozenSet[str]]) -> FrozenSet[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry and entry[0] > now:
                return entry[1]

        value = loader()
        with self._lock:
            self._entries[user_id] = (now + self.ttl_seconds, value)
        return value

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def get_current_user_context(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> dict:
    """Caller context from the identity headers set by the auth gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity (X-User-Id)",
        )

    try:
        role = Role(x_user_role) if x_user_role else None
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown role: {x_user_role}",
        )

    return {
        "user_id": x_user_id,
        "role": role.value if role else None,
    }
