"""
Lifecycle error taxonomy and result helpers.

Expected business outcomes (not found, unauthorized, conflict, validation)
are raised internally as LifecycleError subclasses and converted into
failure result dicts at the service boundary. Storage failures surface as
InfrastructureError with an opaque message.
"""
import enum
from functools import wraps
from typing import Any, Callable, Dict, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from tradeflow.core.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    INFRASTRUCTURE = "infrastructure"


class LifecycleError(Exception):
    """Base class for expected business-rule failures."""
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LifecycleError):
    kind = ErrorKind.NOT_FOUND


class UnauthorizedError(LifecycleError):
    kind = ErrorKind.UNAUTHORIZED


class ConflictError(LifecycleError):
    kind = ErrorKind.CONFLICT


class ValidationError(LifecycleError):
    kind = ErrorKind.VALIDATION


class InfrastructureError(Exception):
    """Storage or transaction failure. The message never carries driver details."""
    kind = ErrorKind.INFRASTRUCTURE


def ok(**payload: Any) -> Dict[str, Any]:
    """Build a success result."""
    return {"success": True, **payload}


def fail(kind: ErrorKind, message: str) -> Dict[str, Any]:
    """Build a failure result."""
    return {"success": False, "error": message, "error_kind": ErrorKind(kind).value}


def service_operation(failure_message: str) -> Callable:
    """
    Wrap a service function taking ``db`` as its first argument.

    LifecycleError -> rollback, failure result.
    SQLAlchemyError -> rollback, logged, re-raised as InfrastructureError.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(db, *args, **kwargs):
            try:
                return func(db, *args, **kwargs)
            except LifecycleError as e:
                db.rollback()
                logger.info(f"{func.__name__} rejected ({e.kind.value}): {e.message}")
                return fail(e.kind, e.message)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"{failure_message}: {e}", exc_info=True)
                raise InfrastructureError(failure_message) from e
        return wrapper
    return decorator


def parse_input(model_cls: Type[BaseModel], data: Any) -> BaseModel:
    """Validate service input against a pydantic model, raising ValidationError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid input")
        raise ValidationError(f"{field}: {message}" if field else message)
