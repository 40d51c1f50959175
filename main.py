"""
Knowledge Gains - AI fitness coaching API
Main FastAPI application: session-gated conversations, admin tooling and auth callback
"""

import calendar
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import aiofiles
import uvicorn
from fastapi import Body, Depends, FastAPI, File, Form
from fastapi import Path as PathParam
from fastapi import Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from supabase import AuthError, Client

from app import supabase_client as db
from app.audit import log_audit_event
from app.config import Settings, get_settings
from app.errors import AppError
from app.errors import NotFound as NotFoundError
from app.errors import Unauthenticated, ValidationError, guard_unexpected
from app.gemini_client import send_to_gemini
from app.logger import configure_logging, get_logger
from app.schema import (
    ApplicationUser,
    ChatRequest,
    GrantProRequest,
    Identity,
    Plan,
    TrainingSplitCreate,
)
from models.responses import Denied, Ok, error_body, error_response, maybe_reason, to_response
from services import (
    AccessDecision,
    AccessGate,
    FileProcessorService,
    IdentityProjector,
    PaymentWebhookService,
    Policy,
    SessionResolver,
)

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_NEXT_PATH = "/chat"
CHAT_TITLE_LENGTH = 50
GRANT_DURATION_TYPES = ("days", "months", "years")

configure_logging(get_settings())
logger = get_logger("api")

# Initialize FastAPI app
app = FastAPI(
    title="Knowledge Gains",
    description="Science-based AI fitness coaching with gated conversations and admin tooling",
    version="1.0.0",
)

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


# Error handlers


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.cause or exc)
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.info("Invalid request body for %s: %s", request.url.path, exc.errors())
    return JSONResponse(error_body("Invalid request body"), status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(error_body("Internal server error"), status_code=500)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s",
        request.method,
        request.url.path,
        response.status_code,
        extra={"duration_ms": round((time.perf_counter() - started) * 1000, 1)},
    )
    return response


# Dependencies


def get_supabase() -> Client:
    return db.get_client()


def get_auth_supabase() -> Client:
    return db.get_auth_client()


def get_session_resolver(
    sb: Client = Depends(get_supabase), settings: Settings = Depends(get_settings)
) -> SessionResolver:
    return SessionResolver(sb, cookie_name=settings.SESSION_COOKIE_NAME)


def get_identity_projector(sb: Client = Depends(get_supabase)) -> IdentityProjector:
    return IdentityProjector(sb)


def get_access_gate(settings: Settings = Depends(get_settings)) -> AccessGate:
    return AccessGate(
        maintenance_mode=settings.MAINTENANCE_MODE,
        chat_coming_soon=settings.CHAT_COMING_SOON,
        free_daily_messages=settings.FREE_DAILY_MESSAGES,
    )


def get_file_processor() -> FileProcessorService:
    return FileProcessorService()


def get_webhook_service(sb: Client = Depends(get_supabase)) -> PaymentWebhookService:
    return PaymentWebhookService(sb)


def get_llm() -> Callable[..., str]:
    return send_to_gemini


def optional_identity(
    request: Request, resolver: SessionResolver = Depends(get_session_resolver)
) -> Optional[Identity]:
    return resolver.resolve(request)


def require_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise Unauthenticated()
    return identity


def current_user(
    identity: Identity = Depends(require_identity),
    projector: IdentityProjector = Depends(get_identity_projector),
) -> ApplicationUser:
    return projector.project(identity)


# Helpers


def safe_next_path(next_path: Optional[str]) -> str:
    """Only site-relative paths are honoured; anything else lands on the chat."""
    if next_path and next_path.startswith("/") and not next_path.startswith("//"):
        return next_path
    return DEFAULT_NEXT_PATH


def redirect_to(settings: Settings, path: str) -> RedirectResponse:
    return RedirectResponse(settings.site_url(path), status_code=303)


def login_redirect(settings: Settings, message: str) -> RedirectResponse:
    return redirect_to(settings, f"/login?message={quote(message)}")


def maintenance_decision(
    identity: Optional[Identity], projector: IdentityProjector, gate: AccessGate
) -> AccessDecision:
    # status checks never create a user row
    user = None
    if identity is not None:
        user = projector.lookup(identity.id) or ApplicationUser(
            id=identity.id, email=identity.email
        )
    return gate.evaluate(user, [Policy.MAINTENANCE])


def policy_denial(
    gate: AccessGate, user: Optional[ApplicationUser], policies: List[Policy]
) -> Optional[JSONResponse]:
    """Response for the first policy that denies *user*, or None when all allow"""
    decision = gate.evaluate(user, policies)
    if decision.allowed:
        return None
    return to_response(Denied.from_decision(decision))


def owned_chat_or_denial(
    sb: Client, gate: AccessGate, user: ApplicationUser, chat_id: str
):
    chat = db.get_owned_chat(sb, chat_id, user.id)
    decision = gate.evaluate(
        user, [Policy.OWNERSHIP], resource_owner_id=chat.user_id if chat else None
    )
    if not decision.allowed:
        return None, to_response(Denied.from_decision(decision, "Conversation not found"))
    return chat, None


def grant_end_date(start: datetime, duration: int, duration_type: str) -> datetime:
    if duration_type == "days":
        return start + timedelta(days=duration)
    months = duration if duration_type == "months" else duration * 12
    month_index = start.month - 1 + months
    year, month = start.year + month_index // 12, month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# Routes


@app.get("/api/user/role")
@guard_unexpected
def user_role(
    user: ApplicationUser = Depends(current_user), gate: AccessGate = Depends(get_access_gate)
):
    """Role of the signed-in user; the user row is created on first call"""
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial
    return to_response(Ok(data={"role": str(user.role)}))


@app.get("/api/conversations")
@guard_unexpected
def list_conversations(
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    conversations = [
        chat.model_dump(mode="json", by_alias=True, include={"id", "title", "created_at"})
        for chat in db.list_chats(sb, user.id)
    ]
    return to_response(Ok(data={"conversations": conversations}))


@app.get("/api/conversations/{conversation_id}")
@guard_unexpected
def get_conversation(
    conversation_id: str,
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    chat, denial = owned_chat_or_denial(sb, gate, user, conversation_id)
    if denial is not None:
        return denial

    chat = chat.model_copy(update={"messages": db.list_messages(sb, chat.id)})
    conversation = chat.model_dump(mode="json", by_alias=True, exclude={"user_id"})
    return to_response(Ok(data={"conversation": conversation}))


@app.delete("/api/conversations/{conversation_id}")
@guard_unexpected
def delete_conversation(
    conversation_id: str,
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    """Delete a conversation and its messages. Someone else's conversation reads as missing"""
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    chat, denial = owned_chat_or_denial(sb, gate, user, conversation_id)
    if denial is not None:
        return denial

    if not db.delete_owned_chat(sb, chat.id, user.id):
        raise NotFoundError("Conversation not found")

    log_audit_event(
        logger=logger,
        action="CHAT_DELETED",
        entity_type="Chat",
        entity_id=chat.id,
        user_id=user.id,
    )
    return to_response(Ok(data={"message": "Conversation deleted successfully"}))


@app.post("/api/chat")
@guard_unexpected
def chat(
    body: ChatRequest = Body(...),
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
    llm: Callable[..., str] = Depends(get_llm),
):
    """Send a message to the AI coach, starting a new conversation when none is given"""
    denial = policy_denial(
        gate, user, [Policy.MAINTENANCE, Policy.CHAT_AVAILABLE, Policy.MESSAGE_QUOTA]
    )
    if denial is not None:
        return denial

    message = body.message.strip()
    if not message:
        raise ValidationError("Message is required")

    conversation = None
    history: List[Dict[str, str]] = []
    if body.conversation_id:
        conversation, denial = owned_chat_or_denial(sb, gate, user, body.conversation_id)
        if denial is not None:
            return denial
        history = [
            {"role": turn.role, "content": turn.content}
            for turn in db.list_messages(sb, conversation.id)
        ]

    # Ask the model before writing anything so a failed call leaves no orphan chat
    reply = llm(history + [{"role": "user", "content": message}], user.id)

    if conversation is None:
        conversation = db.create_chat(sb, user.id, title=message[:CHAT_TITLE_LENGTH])
    db.add_message(sb, conversation.id, "user", message)
    db.add_message(sb, conversation.id, "assistant", reply)
    if user.plan == Plan.FREE:
        db.increment_message_count(sb, user)

    return to_response(Ok(data={"conversationId": conversation.id, "reply": reply}))


@app.get("/api/admin/check-status")
@guard_unexpected
def admin_check_status(
    identity: Identity = Depends(require_identity),
    projector: IdentityProjector = Depends(get_identity_projector),
    gate: AccessGate = Depends(get_access_gate),
):
    user = projector.lookup(identity.id)
    if user is None:
        raise NotFoundError("User not found")

    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    return to_response(
        Ok(
            data={
                "isAdmin": user.is_admin,
                "user": {"id": user.id, "email": user.email, "role": str(user.role)},
            }
        )
    )


@app.post("/api/admin/users/{userId}/grant-pro")
@guard_unexpected
def grant_pro(
    body: GrantProRequest = Body(...),
    target_id: str = PathParam(..., alias="userId"),
    admin: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    """Admin grant of the PRO plan for a number of days, months or years"""
    denial = policy_denial(gate, admin, [Policy.MAINTENANCE, Policy.ADMIN_ONLY])
    if denial is not None:
        return denial

    if body.duration_type not in GRANT_DURATION_TYPES:
        raise ValidationError(
            "Invalid duration. Must specify duration and durationType (days, months, or years)"
        )
    if body.duration <= 0:
        raise ValidationError("Duration must be a positive number")

    if not db.is_uuid(target_id) or db.get_user(sb, target_id) is None:
        raise NotFoundError("User not found")

    granted_at = datetime.now(timezone.utc)
    end_date = grant_end_date(granted_at, body.duration, body.duration_type)
    # the grant starts with a fresh message quota
    updated = db.update_user(
        sb,
        target_id,
        {
            "plan": str(Plan.PRO),
            "messages_used_today": 0,
            "last_message_reset": granted_at.isoformat(),
        },
    )
    if updated is None:
        raise NotFoundError("User not found")
    subscription = db.upsert_subscription(
        sb,
        target_id,
        {
            "status": "active",
            "current_period_start": granted_at.isoformat(),
            "current_period_end": end_date.isoformat(),
            "plan_id": f"admin-granted-{body.duration_type}",
            "variant_id": f"admin-granted-{body.duration}-{body.duration_type}",
            "lemon_squeezy_id": None,
        },
    )

    log_audit_event(
        logger=logger,
        action="PLAN_GRANTED",
        entity_type="User",
        entity_id=target_id,
        user_id=admin.id,
        details={
            "plan": str(Plan.PRO),
            "duration": body.duration,
            "duration_type": body.duration_type,
            "ends_at": end_date.isoformat(),
            "reason": body.reason,
        },
    )
    return to_response(
        Ok(
            data={
                "message": (
                    f"Successfully granted PRO plan for {body.duration} {body.duration_type}"
                ),
                "user": updated.to_json(),
                "subscription": subscription.model_dump(
                    mode="json",
                    by_alias=True,
                    include={"id", "status", "current_period_end", "plan_id", "variant_id"},
                ),
                "grantDetails": {
                    "duration": body.duration,
                    "durationType": body.duration_type,
                    "endDate": end_date.isoformat(),
                    "grantedBy": admin.id,
                    "grantedAt": granted_at.isoformat(),
                    "reason": body.reason,
                },
            }
        )
    )


@app.get("/api/training-splits")
@guard_unexpected
def list_training_splits(
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    splits = [split.to_json() for split in db.list_training_splits(sb, active_only=True)]
    return to_response(Ok(data={"splits": splits}))


@app.post("/api/admin/training-splits")
@guard_unexpected
def create_training_split(
    body: TrainingSplitCreate = Body(...),
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    denial = policy_denial(gate, user, [Policy.MAINTENANCE, Policy.ADMIN_ONLY])
    if denial is not None:
        return denial

    name = body.name.strip()
    if not name:
        raise ValidationError("Name is required")
    if body.days_per_week is not None and not 1 <= body.days_per_week <= 7:
        raise ValidationError("daysPerWeek must be between 1 and 7")

    split = db.create_training_split(
        sb,
        {
            "name": name,
            "description": body.description,
            "difficulty": body.difficulty,
            "days_per_week": body.days_per_week,
            "is_active": True,
        },
    )
    return to_response(Ok(data={"split": split.to_json()}, status_code=201))


@app.get("/api/user/purchases")
@guard_unexpected
def list_purchases(
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    purchases = [purchase.to_json() for purchase in db.list_purchases(sb, user.id)]
    return to_response(Ok(data={"purchases": purchases, "count": len(purchases)}))


@app.post("/api/onboarding/complete")
@guard_unexpected
def complete_onboarding(
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
):
    denial = policy_denial(gate, user, [Policy.MAINTENANCE])
    if denial is not None:
        return denial

    updated = db.update_user(sb, user.id, {"onboarding_completed": True})
    if updated is None:
        raise NotFoundError("User not found")
    return to_response(Ok(data={"user": updated.to_json()}))


@app.post("/api/knowledge/upload")
@guard_unexpected
async def upload_knowledge(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    user: ApplicationUser = Depends(current_user),
    sb: Client = Depends(get_supabase),
    gate: AccessGate = Depends(get_access_gate),
    processor: FileProcessorService = Depends(get_file_processor),
    settings: Settings = Depends(get_settings),
):
    """Upload a fitness document to the coaching knowledge base (admins only)"""
    denial = policy_denial(gate, user, [Policy.MAINTENANCE, Policy.ADMIN_ONLY])
    if denial is not None:
        return denial

    filename = Path(file.filename or "").name
    if not filename or not processor.is_supported(filename):
        raise ValidationError("Unsupported file type. Upload a PDF, Word, Markdown or text file")

    content = await file.read()
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError("File is too large")

    # nothing touches disk or the database until the document parses
    parsed = await run_in_threadpool(processor.parse, content, filename)

    storage_path = f"{user.id}/{uuid.uuid4().hex}-{filename}"
    stored_file = Path(settings.UPLOAD_DIR) / storage_path
    stored_file.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(stored_file, "wb") as f:
        await f.write(content)

    try:
        item = await run_in_threadpool(
            db.insert_knowledge_item,
            sb,
            {
                "title": (title or "").strip() or Path(filename).stem,
                "content": parsed["text"],
                "file_name": filename,
                "storage_path": storage_path,
                "status": "COMPLETED",
                "uploaded_by": user.id,
            },
        )
    except Exception:
        stored_file.unlink(missing_ok=True)
        raise

    log_audit_event(
        logger=logger,
        action="KNOWLEDGE_UPLOADED",
        entity_type="KnowledgeItem",
        entity_id=item.id,
        user_id=user.id,
        details={"file_name": filename, "format": parsed["format"], "chars": len(parsed["text"])},
    )
    return to_response(Ok(data={"item": item.to_json()}, status_code=201))


@app.get("/api/maintenance/status")
@guard_unexpected
def maintenance_status(
    identity: Optional[Identity] = Depends(optional_identity),
    projector: IdentityProjector = Depends(get_identity_projector),
    gate: AccessGate = Depends(get_access_gate),
):
    """Whether the caller may use the site right now. Never answers 401"""
    decision = maintenance_decision(identity, projector, gate)
    if not decision.allowed:
        return to_response(Denied.from_decision(decision))

    data = {"maintenanceMode": gate.maintenance_mode, "canAccess": True}
    reason = maybe_reason(decision)
    if reason:
        data["reason"] = reason
    return to_response(Ok(data=data))


@app.get("/maintenance", response_class=HTMLResponse)
@guard_unexpected
def maintenance_page(
    request: Request,
    identity: Optional[Identity] = Depends(optional_identity),
    projector: IdentityProjector = Depends(get_identity_projector),
    gate: AccessGate = Depends(get_access_gate),
):
    decision = maintenance_decision(identity, projector, gate)
    return templates.TemplateResponse(
        request,
        "maintenance.html",
        {"title": "Maintenance - Knowledge Gains", "reason": str(decision.reason)},
    )


@app.get("/auth/callback")
@guard_unexpected
def auth_callback(
    code: Optional[str] = None,
    next_path: Optional[str] = Query(None, alias="next"),
    auth_sb: Client = Depends(get_auth_supabase),
    projector: IdentityProjector = Depends(get_identity_projector),
    settings: Settings = Depends(get_settings),
):
    """OAuth code exchange: set the session cookies, then route to onboarding or *next*"""
    if not code:
        return login_redirect(settings, "Missing authorization code")

    try:
        auth_response = auth_sb.auth.exchange_code_for_session({"auth_code": code})
    except AuthError as exc:
        logger.warning("Code exchange failed: %s", exc)
        return login_redirect(settings, "Could not authenticate user")

    session, auth_user = auth_response.session, auth_response.user
    if session is None or auth_user is None:
        logger.warning("Code exchange returned no session")
        return login_redirect(settings, "Could not authenticate user")

    user = projector.project(Identity(id=str(auth_user.id), email=auth_user.email))
    destination = "/onboarding" if not user.onboarding_completed else safe_next_path(next_path)

    response = redirect_to(settings, destination)
    cookie_options = {
        "httponly": True,
        "secure": settings.COOKIE_SECURE,
        "samesite": "lax",
        "path": "/",
    }
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        session.access_token,
        max_age=session.expires_in,
        **cookie_options,
    )
    response.set_cookie(settings.REFRESH_COOKIE_NAME, session.refresh_token, **cookie_options)
    return response


@app.post("/auth/signout")
@guard_unexpected
def sign_out(settings: Settings = Depends(get_settings)):
    response = redirect_to(settings, "/")
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    response.delete_cookie(settings.REFRESH_COOKIE_NAME, path="/")
    return response


@app.post("/api/webhooks/lemonsqueezy")
@guard_unexpected
def lemonsqueezy_webhook(
    payload: Dict = Body(...),
    service: PaymentWebhookService = Depends(get_webhook_service),
):
    result = service.handle(payload)
    return to_response(Ok(data={"handled": result["handled"]}))


# Development server
if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
