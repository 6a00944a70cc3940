"""
Shared FastAPI dependencies for the lifecycle routers.

Service results carry an ``error_kind``; routes turn failures into HTTP
errors with ``raise_for_result``.
"""
from typing import Any, Dict, FrozenSet

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tradeflow.core.errors import ErrorKind
from tradeflow.core.rbac import PermissionCache, get_current_user_context, resolve_seller_ids
from tradeflow.db.session import get_db

ERROR_STATUS = {
    ErrorKind.NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorKind.UNAUTHORIZED.value: status.HTTP_403_FORBIDDEN,
    ErrorKind.CONFLICT.value: status.HTTP_409_CONFLICT,
    ErrorKind.VALIDATION.value: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Return a successful result unchanged; raise HTTPException otherwise."""
    if result.get("success"):
        return result
    code = ERROR_STATUS.get(result.get("error_kind"), status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=code, detail=result.get("error") or "Request failed")


def get_permission_cache(request: Request) -> PermissionCache:
    cache = getattr(request.app.state, "permission_cache", None)
    if cache is None:
        cache = PermissionCache()
        request.app.state.permission_cache = cache
    return cache


async def get_caller(
    user_context: dict = Depends(get_current_user_context),
    cache: PermissionCache = Depends(get_permission_cache),
    db: Session = Depends(get_db),
) -> dict:
    """User context plus every identity alias the caller owns entities under."""
    user_id = user_context["user_id"]
    aliases: FrozenSet[str] = cache.get(user_id, lambda: resolve_seller_ids(db, user_id))
    return {**user_context, "aliases": aliases}


def require_role(caller: dict, role: str) -> None:
    if caller.get("role") != role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"This action requires the {role} role",
        )
