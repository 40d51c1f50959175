from typing import Any, Dict, Literal, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.errors import AppError
from services.access_gate import AccessDecision, AccessReason

# Status a route answers with when a policy denies. Maintenance denials
# are 200 so clients render the maintenance page instead of an error.
DENIAL_STATUS: Dict[AccessReason, int] = {
    AccessReason.ADMIN_REQUIRED: 403,
    AccessReason.CHAT_COMING_SOON: 403,
    AccessReason.NOT_OWNER: 404,
    AccessReason.DAILY_LIMIT_REACHED: 429,
    AccessReason.MAINTENANCE_USER_BLOCKED: 200,
    AccessReason.MAINTENANCE_NOT_AUTHENTICATED: 200,
}

DENIAL_MESSAGE: Dict[AccessReason, str] = {
    AccessReason.ADMIN_REQUIRED: "Admin access required",
    AccessReason.CHAT_COMING_SOON: "Chat is coming soon",
    AccessReason.DAILY_LIMIT_REACHED: "Daily message limit reached",
    AccessReason.MAINTENANCE_USER_BLOCKED: "Site is under maintenance",
    AccessReason.MAINTENANCE_NOT_AUTHENTICATED: "Site is under maintenance",
}


class Ok(BaseModel):
    kind: Literal["ok"] = "ok"
    data: Dict[str, Any] = Field(default_factory=dict)
    status_code: int = 200


class Denied(BaseModel):
    kind: Literal["denied"] = "denied"
    reason: AccessReason
    # used when the denied resource is reported as missing (ownership)
    not_found_message: str = "Not found"

    @classmethod
    def from_decision(
        cls, decision: AccessDecision, not_found_message: str = "Not found"
    ) -> "Denied":
        return cls(reason=decision.reason, not_found_message=not_found_message)

    @property
    def status_code(self) -> int:
        return DENIAL_STATUS.get(self.reason, 403)


class Rejected(BaseModel):
    """Refused without a policy reason, e.g. no session (401)"""

    kind: Literal["rejected"] = "rejected"
    message: str = "Unauthorized"
    status_code: int = 401


class NotFound(BaseModel):
    kind: Literal["not_found"] = "not_found"
    message: str = "Not found"
    status_code: int = 404


class Invalid(BaseModel):
    kind: Literal["invalid"] = "invalid"
    message: str
    status_code: int = 400


class ServerError(BaseModel):
    kind: Literal["server_error"] = "server_error"
    message: str = "Internal server error"
    status_code: int = 500


Result = Ok | Denied | Rejected | NotFound | Invalid | ServerError


def error_body(message: str) -> Dict[str, Any]:
    return {"error": message}


def to_response(result: Result) -> JSONResponse:
    """Render a result variant as the JSON envelope clients expect"""
    if isinstance(result, Ok):
        return JSONResponse(
            {"success": True, **result.data, "error": None}, status_code=result.status_code
        )

    if isinstance(result, Denied):
        if result.reason == AccessReason.NOT_OWNER:
            # indistinguishable from a resource that does not exist
            return to_response(NotFound(message=result.not_found_message))
        if result.status_code == 200:
            return JSONResponse(
                {
                    "success": True,
                    "canAccess": False,
                    "maintenanceMode": True,
                    "reason": str(result.reason),
                    "message": DENIAL_MESSAGE[result.reason],
                    "error": None,
                }
            )
        return JSONResponse(
            {
                **error_body(DENIAL_MESSAGE.get(result.reason, "Forbidden")),
                "reason": str(result.reason),
            },
            status_code=result.status_code,
        )

    return JSONResponse(error_body(result.message), status_code=result.status_code)


def from_error(exc: AppError) -> Result:
    if exc.status_code == 404:
        return NotFound(message=exc.message)
    if exc.status_code == 400:
        return Invalid(message=exc.message)
    if exc.status_code >= 500:
        return ServerError(message=exc.message)
    return Rejected(message=exc.message, status_code=exc.status_code)


def error_response(exc: AppError) -> JSONResponse:
    return to_response(from_error(exc))


def maybe_reason(decision: AccessDecision) -> Optional[str]:
    return None if decision.reason == AccessReason.OK else str(decision.reason)
