# Gate decorators wrap these handlers, so annotations must stay evaluated
# objects for FastAPI to resolve them.
from typing import Optional

from fastapi import APIRouter, Path, Query, Request, Response
from pydantic import ValidationError as PydanticValidationError

from cronostudio.api.cookies import apply_auth_cookies, clear_auth_cookies, read_refresh_token
from cronostudio.api.middleware import (
    API_RATE_LIMIT,
    LOGIN_RATE_LIMIT,
    current_user,
    rate_limit,
    require_roles,
    with_auth,
    with_user_or_service,
)
from cronostudio.api.schemas import (
    AuthResponse,
    CalendarItemResponse,
    CalendarRange,
    EmailVerificationRequest,
    Envelope,
    IdeaCreateRequest,
    IdeaResponse,
    IdeaUpdateRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProductionCreateRequest,
    ProductionResponse,
    ProductionUpdateRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    UserResponse,
)
from cronostudio.logging import get_logger
from cronostudio.service.auth import GENERIC_RESET_MESSAGE, LoginResult
from cronostudio.service.errors import NotFoundError, ValidationError
from cronostudio.service.runtime import Runtime
from cronostudio.storage.models import (
    Idea,
    IdeaStatus,
    Production,
    ProductionStatus,
    UserRole,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

OWNER_ONLY = {UserRole.OWNER.value}


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data)


def _session_payload(result: LoginResult, runtime: Runtime) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=runtime.settings.access_token_ttl_seconds,
        session_expires_at=result.session.expires_at,
    )


def _start_session_response(
    response: Response, result: LoginResult, runtime: Runtime
) -> Envelope:
    apply_auth_cookies(
        response, result.access_token, result.refresh_token, runtime.settings
    )
    return _ok(_session_payload(result, runtime))


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
@rate_limit(LOGIN_RATE_LIMIT)
async def register(request: Request, response: Response, body: RegisterRequest):
    """Create an owner account, start a session and mail a verification link.

    Raises:
        400: invalid email, weak password or bad name
        409: email already registered
    """
    runtime = _runtime(request)
    result = await runtime.auth.register(body.email, body.password, body.name)
    return _start_session_response(response, result, runtime)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
@rate_limit(LOGIN_RATE_LIMIT)
async def login(request: Request, response: Response, body: LoginRequest):
    """Authenticate with email and password.

    Unknown emails and wrong passwords both answer 401 with the same message.
    """
    runtime = _runtime(request)
    result = await runtime.auth.login(body.email, body.password)
    return _start_session_response(response, result, runtime)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
@rate_limit(LOGIN_RATE_LIMIT)
async def refresh(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    runtime = _runtime(request)
    token = read_refresh_token(request, body.refresh_token if body else None)
    result = await runtime.auth.refresh(token)
    return _start_session_response(response, result, runtime)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    runtime = _runtime(request)
    token = read_refresh_token(request, body.refresh_token if body else None)
    await runtime.auth.logout(token)
    clear_auth_cookies(response, runtime.settings)
    return _ok(MessageResponse(message="Logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
@with_auth
async def me(request: Request):
    user = _runtime(request).auth.get_profile(current_user(request).user_id)
    return _ok(UserResponse.from_user(user))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
@with_auth
async def get_profile(request: Request):
    user = _runtime(request).auth.get_profile(current_user(request).user_id)
    return _ok(UserResponse.from_user(user))


@router.patch("/auth/profile", response_model=Envelope, tags=["auth"])
@with_auth
async def update_profile(request: Request, body: ProfileUpdateRequest):
    user = _runtime(request).auth.update_profile(
        current_user(request).user_id, name=body.name, email=body.email
    )
    return _ok(UserResponse.from_user(user))


@router.delete("/auth/profile", response_model=Envelope, tags=["auth"])
@with_auth
async def delete_profile(request: Request, response: Response):
    runtime = _runtime(request)
    runtime.auth.delete_account(current_user(request).user_id)
    clear_auth_cookies(response, runtime.settings)
    return _ok(MessageResponse(message="Account deleted"))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
@rate_limit(API_RATE_LIMIT)
@with_auth
async def change_password(request: Request, response: Response, body: PasswordChangeRequest):
    """Change the password and sign out every other session."""
    runtime = _runtime(request)
    revoked = await runtime.auth.change_password(
        current_user(request).user_id,
        body.current_password,
        body.new_password,
        keep_refresh_token=read_refresh_token(request),
    )
    return _ok({"message": "Password updated", "sessions_revoked": revoked})


@router.post("/auth/request-password-reset", response_model=Envelope, tags=["auth"])
@rate_limit(LOGIN_RATE_LIMIT)
async def request_password_reset(
    request: Request, response: Response, body: PasswordResetRequest
):
    await _runtime(request).auth.request_password_reset(body.email)
    return _ok(MessageResponse(message=GENERIC_RESET_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(request: Request, body: PasswordResetConfirm):
    await _runtime(request).auth.complete_password_reset(body.token, body.new_password)
    return _ok(MessageResponse(message="Password has been reset"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(request: Request, body: EmailVerificationRequest):
    user = await _runtime(request).auth.complete_email_verification(body.token)
    return _ok(UserResponse.from_user(user))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
@rate_limit(LOGIN_RATE_LIMIT)
@with_auth
async def resend_verification(request: Request, response: Response):
    runtime = _runtime(request)
    user = runtime.auth.get_profile(current_user(request).user_id)
    token = await runtime.auth.request_email_verification(user)
    if token is None:
        return _ok(MessageResponse(message="Email already verified"))
    return _ok(MessageResponse(message="Verification email sent"))


# productions


def _get_owned_production(runtime: Runtime, production_id: str, user_id: str) -> Production:
    production = runtime.store.get_production(production_id)
    if not production or production.user_id != user_id:
        raise NotFoundError("Production not found")
    return production


def _get_owned_idea(runtime: Runtime, idea_id: str, user_id: str) -> Idea:
    idea = runtime.store.get_idea(idea_id)
    if not idea or idea.user_id != user_id:
        raise NotFoundError("Idea not found")
    return idea


@router.get("/productions", response_model=Envelope, tags=["productions"])
@with_user_or_service()
async def list_productions(
    request: Request,
    status: Optional[ProductionStatus] = Query(default=None),
    stats: bool = Query(default=False),
):
    runtime = _runtime(request)
    user_id = current_user(request).user_id
    productions = runtime.store.list_productions(
        user_id, status=status.value if status else None
    )
    data = {"productions": [ProductionResponse.from_production(p) for p in productions]}
    if stats:
        data["pipeline"] = runtime.store.pipeline_stats(user_id)
    return _ok(data)


@router.post("/productions", response_model=Envelope, status_code=201, tags=["productions"])
@rate_limit(API_RATE_LIMIT)
@with_auth
async def create_production(
    request: Request, response: Response, body: ProductionCreateRequest
):
    runtime = _runtime(request)
    user_id = current_user(request).user_id
    if body.idea_id:
        _get_owned_idea(runtime, body.idea_id, user_id)
    production = runtime.store.create_production(
        user_id,
        body.title,
        description=body.description,
        idea_id=body.idea_id,
        priority=body.priority,
        target_date=body.target_date,
    )
    logger.info("production_created", production_id=production.id, user_id=user_id)
    return _ok(ProductionResponse.from_production(production))


@router.get("/productions/{production_id}", response_model=Envelope, tags=["productions"])
@with_user_or_service()
async def get_production(request: Request, production_id: str = Path(..., max_length=64)):
    production = _get_owned_production(
        _runtime(request), production_id, current_user(request).user_id
    )
    return _ok(ProductionResponse.from_production(production))


@router.patch("/productions/{production_id}", response_model=Envelope, tags=["productions"])
@rate_limit(API_RATE_LIMIT)
@with_auth
async def update_production(
    request: Request,
    response: Response,
    body: ProductionUpdateRequest,
    production_id: str = Path(..., max_length=64),
):
    runtime = _runtime(request)
    user_id = current_user(request).user_id
    _get_owned_production(runtime, production_id, user_id)
    changes = body.changes()
    updated = runtime.store.update_production(production_id, user_id, **changes)
    if not updated:
        raise NotFoundError("Production not found")
    logger.info(
        "production_updated",
        production_id=production_id,
        fields=sorted(changes),
        status=updated.status,
    )
    return _ok(ProductionResponse.from_production(updated))


@router.delete("/productions/{production_id}", response_model=Envelope, tags=["productions"])
@rate_limit(API_RATE_LIMIT)
@with_auth
async def delete_production(
    request: Request, response: Response, production_id: str = Path(..., max_length=64)
):
    runtime = _runtime(request)
    user_id = current_user(request).user_id
    _get_owned_production(runtime, production_id, user_id)
    if not runtime.store.delete_production(production_id, user_id):
        raise NotFoundError("Production not found")
    logger.info("production_deleted", production_id=production_id, user_id=user_id)
    return _ok({"deleted": True, "id": production_id})


# calendar


@router.get("/calendar", response_model=Envelope, tags=["calendar"])
@rate_limit(API_RATE_LIMIT)
@with_user_or_service()
async def calendar(
    request: Request,
    response: Response,
    start: str = Query(..., alias="from", min_length=1, max_length=64),
    end: str = Query(..., alias="to", min_length=1, max_length=64),
):
    """Productions with a target date inside ``[from, to]``, earliest first.

    Raises:
        400: unparseable bound, or ``from`` after ``to``
    """
    try:
        window = CalendarRange(start=start, end=end)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid date range",
            detail={"fields": [".".join(str(p) for p in e["loc"]) or "range" for e in exc.errors()]},
        )
    productions = _runtime(request).store.list_productions_in_range(
        current_user(request).user_id, window.start, window.end
    )
    return _ok({"items": [CalendarItemResponse.from_production(p) for p in productions]})


# ideas


@router.get("/ideas", response_model=Envelope, tags=["ideas"])
@with_auth
async def list_ideas(request: Request, status: Optional[IdeaStatus] = Query(default=None)):
    ideas = _runtime(request).store.list_ideas(
        current_user(request).user_id, status=status.value if status else None
    )
    return _ok({"ideas": [IdeaResponse.from_idea(i) for i in ideas]})


@router.post("/ideas", response_model=Envelope, status_code=201, tags=["ideas"])
@rate_limit(API_RATE_LIMIT)
@require_roles(OWNER_ONLY)
async def create_idea(request: Request, response: Response, body: IdeaCreateRequest):
    idea = _runtime(request).store.create_idea(
        current_user(request).user_id,
        body.title,
        description=body.description,
        priority=body.priority,
        tags=body.tags,
    )
    return _ok(IdeaResponse.from_idea(idea))


@router.put("/ideas/{idea_id}", response_model=Envelope, tags=["ideas"])
@rate_limit(API_RATE_LIMIT)
@require_roles(OWNER_ONLY)
async def update_idea(
    request: Request,
    response: Response,
    body: IdeaUpdateRequest,
    idea_id: str = Path(..., max_length=64),
):
    runtime = _runtime(request)
    user_id = current_user(request).user_id
    _get_owned_idea(runtime, idea_id, user_id)
    updated = runtime.store.update_idea(idea_id, user_id, **body.changes())
    if not updated:
        raise NotFoundError("Idea not found")
    return _ok(IdeaResponse.from_idea(updated))


@router.delete("/ideas/{idea_id}", response_model=Envelope, tags=["ideas"])
@rate_limit(API_RATE_LIMIT)
@require_roles(OWNER_ONLY)
async def delete_idea(
    request: Request, response: Response, idea_id: str = Path(..., max_length=64)
):
    runtime = _runtime(request)
    user_id = current_user(request).user_id
    _get_owned_idea(runtime, idea_id, user_id)
    if not runtime.store.delete_idea(idea_id, user_id):
        raise NotFoundError("Idea not found")
    return _ok({"deleted": True, "id": idea_id})
