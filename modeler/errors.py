"""
Modeler - Structured Error Handling

Every failure the engine can report is a ModelerError carrying a unique code,
so the same object can be raised inside the engine, recorded as a session
notice, or rendered by the API.

ERROR CATEGORIES:
-----------------
1xxx  Addressing        - a path no longer resolves (stale reference).
                          Recoverable: clear the selection and carry on.
2xxx  Validation        - missing mappings, unset table or dimension.
                          Blocks save, never touches the tree.
3xxx  Service           - schema / dimension / persistence call failed.
                          Transient notice, tree left exactly as it was.
4xxx  Structural guard  - operation rejected before any mutation.
9xxx  Internal

ERROR RESPONSE FORMAT:
----------------------
{
    "error": {
        "code": "ERR_1001",
        "message": "Node path /0/3 does not resolve",
        "details": {"path": "/0/3"},
        "suggestion": "Re-select the node; paths shift after deletions",
        "request_id": "abc-123"
    }
}
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCategory(str, Enum):
    """Failure families; each one has its own recovery rule."""
    ADDRESSING = "addressing"
    VALIDATION = "validation"
    SERVICE = "service"
    STRUCTURAL = "structural"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Unique error codes for every error type."""

    # Addressing (1xxx)
    ERR_PATH_NOT_FOUND = "ERR_1001"
    ERR_STALE_SELECTION = "ERR_1002"
    ERR_ITEM_NOT_FOUND = "ERR_1003"

    # Validation (2xxx)
    ERR_VALIDATION_FAILED = "ERR_2001"
    ERR_INVALID_PATCH = "ERR_2002"
    ERR_INVALID_DOCUMENT = "ERR_2003"

    # Service (3xxx)
    ERR_SERVICE_UNAVAILABLE = "ERR_3001"
    ERR_SERVICE_REJECTED = "ERR_3002"
    ERR_MODEL_NOT_FOUND = "ERR_3003"
    ERR_SESSION_NOT_FOUND = "ERR_3004"

    # Structural guard (4xxx)
    ERR_NO_ROOT = "ERR_4001"
    ERR_ROOT_EXISTS = "ERR_4002"
    ERR_NO_SELECTION = "ERR_4003"
    ERR_CONFIRMATION_REQUIRED = "ERR_4004"
    ERR_ROOT_RELATIONSHIP = "ERR_4005"

    # Internal (9xxx)
    ERR_INTERNAL = "ERR_9001"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY_BY_PREFIX.get(self.value[4], ErrorCategory.INTERNAL)


_CATEGORY_BY_PREFIX = {
    "1": ErrorCategory.ADDRESSING,
    "2": ErrorCategory.VALIDATION,
    "3": ErrorCategory.SERVICE,
    "4": ErrorCategory.STRUCTURAL,
}


# =============================================================================
# ERROR RESPONSE
# =============================================================================

@dataclass
class ModelerError(Exception):
    """
    Structured error with all context needed for debugging.

    Attributes:
        code: Unique error code for searching logs
        message: Human-readable error message
        status_code: HTTP status code
        details: Additional context (dict)
        suggestion: How to fix the issue
        request_id: Request tracing ID
    """
    code: ErrorCode
    message: str
    status_code: int = 400
    details: Dict[str, Any] = field(default_factory=dict)
    suggestion: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    @property
    def recoverable(self) -> bool:
        """Addressing and service failures leave the session usable as-is."""
        return self.category in (ErrorCategory.ADDRESSING, ErrorCategory.SERVICE)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        error_dict = {
            "code": self.code.value,
            "message": self.message,
            "category": self.category.value,
        }

        if self.details:
            error_dict["details"] = self.details

        if self.suggestion:
            error_dict["suggestion"] = self.suggestion

        if self.request_id:
            error_dict["request_id"] = self.request_id

        error_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

        return {"error": error_dict}

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse."""
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_dict()
        )

    def log(self, level: str = "error"):
        """Log the error with context."""
        log_msg = f"[{self.code.value}] {self.message}"
        if self.details:
            log_msg += f" | details={self.details}"
        if self.request_id:
            log_msg += f" | request_id={self.request_id}"

        getattr(logger, level)(log_msg)


# =============================================================================
# ERROR FACTORY FUNCTIONS
# =============================================================================

def path_not_found(path: str, depth: Optional[int] = None) -> ModelerError:
    """Create path not found error (stale or mistyped node path)."""
    details: Dict[str, Any] = {"path": path}
    if depth is not None:
        details["failed_at_depth"] = depth

    return ModelerError(
        code=ErrorCode.ERR_PATH_NOT_FOUND,
        message=f"Node path {path} does not resolve",
        status_code=404,
        details=details,
        suggestion="Re-select the node; paths shift after deletions",
    )


def stale_selection(path: str) -> ModelerError:
    """Create stale selection error."""
    return ModelerError(
        code=ErrorCode.ERR_STALE_SELECTION,
        message=f"Selected node {path} no longer exists",
        status_code=409,
        details={"path": path},
        suggestion="Select a node again",
    )


def item_not_found(kind: str, index: int, size: int) -> ModelerError:
    """Create list item not found error (field mapping, dimension link)."""
    return ModelerError(
        code=ErrorCode.ERR_ITEM_NOT_FOUND,
        message=f"No {kind} at index {index}",
        status_code=404,
        details={"kind": kind, "index": index, "size": size},
    )


def validation_failed(issues: List[Dict[str, Any]]) -> ModelerError:
    """Create validation error listing every issue found."""
    return ModelerError(
        code=ErrorCode.ERR_VALIDATION_FAILED,
        message=f"Model definition has {len(issues)} validation issue(s)",
        status_code=422,
        details={"issues": issues},
        suggestion="Fix the listed fields before saving",
    )


def invalid_patch(keys: List[str], allowed: List[str]) -> ModelerError:
    """Create invalid node patch error."""
    return ModelerError(
        code=ErrorCode.ERR_INVALID_PATCH,
        message=f"Cannot patch node field(s): {', '.join(sorted(keys))}",
        status_code=400,
        details={"fields": sorted(keys), "allowed": allowed},
        suggestion=f"Patch only {', '.join(allowed)}",
    )


def invalid_patch_value(field: str, reason: str) -> ModelerError:
    """Create invalid node patch value error."""
    return ModelerError(
        code=ErrorCode.ERR_INVALID_PATCH,
        message=f"Invalid value for node field '{field}': {reason}",
        status_code=400,
        details={"fields": [field], "reason": reason},
        suggestion="Relationship type is 1:1 or 1:n; link type is children, descendants or leaves",
    )


def invalid_document(reason: str) -> ModelerError:
    """Create invalid model document error."""
    return ModelerError(
        code=ErrorCode.ERR_INVALID_DOCUMENT,
        message=f"Model document is malformed: {reason}",
        status_code=400,
        details={"reason": reason},
    )


def service_unavailable(service: str, reason: str) -> ModelerError:
    """Create service unavailable error (connection, timeout, HTTP failure)."""
    return ModelerError(
        code=ErrorCode.ERR_SERVICE_UNAVAILABLE,
        message=f"The {service} service is unavailable",
        status_code=503,
        details={"service": service, "reason": reason},
        suggestion="Retry the operation; nothing was changed",
    )


def service_rejected(
    service: str,
    message: str,
    code: Optional[int] = None
) -> ModelerError:
    """Create service rejected error (non-success response envelope)."""
    details: Dict[str, Any] = {"service": service}
    if code is not None:
        details["service_code"] = code

    return ModelerError(
        code=ErrorCode.ERR_SERVICE_REJECTED,
        message=f"The {service} service rejected the request: {message}",
        status_code=502,
        details=details,
        suggestion="Retry the operation; nothing was changed",
    )


def model_not_found(model_id: int) -> ModelerError:
    """Create model not found error."""
    return ModelerError(
        code=ErrorCode.ERR_MODEL_NOT_FOUND,
        message=f"Model {model_id} not found",
        status_code=404,
        details={"model_id": model_id},
    )


def session_not_found(session_id: str) -> ModelerError:
    """Create editor session not found error."""
    return ModelerError(
        code=ErrorCode.ERR_SESSION_NOT_FOUND,
        message=f"Editor session '{session_id}' not found",
        status_code=404,
        details={"session_id": session_id},
        suggestion="Open a new session with POST /v1/editor/sessions",
    )


def no_root() -> ModelerError:
    """Create no root error."""
    return ModelerError(
        code=ErrorCode.ERR_NO_ROOT,
        message="The model has no root node",
        status_code=409,
        suggestion="Add a root node first",
    )


def root_exists() -> ModelerError:
    """Create root already exists error."""
    return ModelerError(
        code=ErrorCode.ERR_ROOT_EXISTS,
        message="The model already has a root node",
        status_code=409,
    )


def no_selection(action: str) -> ModelerError:
    """Create no selection error."""
    return ModelerError(
        code=ErrorCode.ERR_NO_SELECTION,
        message=f"Select a node before trying to {action}",
        status_code=409,
        details={"action": action},
    )


def confirmation_required(path: str) -> ModelerError:
    """Create confirmation required error for destructive operations."""
    return ModelerError(
        code=ErrorCode.ERR_CONFIRMATION_REQUIRED,
        message=f"Deleting {path} removes the node and all its descendants",
        status_code=409,
        details={"path": path},
        suggestion="Repeat the request with confirm=true",
    )


def root_relationship() -> ModelerError:
    """Create root relationship error."""
    return ModelerError(
        code=ErrorCode.ERR_ROOT_RELATIONSHIP,
        message="The root node has no parent to join against",
        status_code=400,
        suggestion="Configure relationships on child nodes only",
    )


def internal_error(
    message: str = "An unexpected error occurred",
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> ModelerError:
    """Create internal error - use sparingly, prefer specific errors."""
    return ModelerError(
        code=ErrorCode.ERR_INTERNAL,
        message=message,
        status_code=500,
        details=details or {},
        request_id=request_id
    )


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

async def modeler_error_handler(request: Request, exc: ModelerError) -> JSONResponse:
    """Handle ModelerError and return structured response."""
    if not exc.request_id:
        exc.request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())[:8]

    exc.log("warning" if exc.recoverable or exc.status_code < 500 else "error")

    return exc.to_response()


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException and convert to structured format."""
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())[:8]

    error_response = {
        "error": {
            "code": f"ERR_HTTP_{exc.status_code}",
            "message": str(exc.detail) if isinstance(exc.detail, str) else exc.detail.get("message", str(exc.detail)),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id
        }
    }

    if isinstance(exc.detail, dict):
        error_response["error"]["details"] = {
            k: v for k, v in exc.detail.items()
            if k not in ("message", "error")
        }

    logger.error(f"[ERR_HTTP_{exc.status_code}] {exc.detail} | request_id={request_id}")

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())[:8]

    logger.exception(f"Unhandled exception | request_id={request_id}")

    error = internal_error(
        message="An unexpected error occurred",
        details={"exception_type": type(exc).__name__},
        request_id=request_id
    )

    return error.to_response()


def install_error_handlers(app):
    """Install error handlers on FastAPI app."""
    from fastapi import HTTPException as FastAPIHTTPException

    app.add_exception_handler(ModelerError, modeler_error_handler)
    app.add_exception_handler(FastAPIHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Structured error handlers installed")
