"""Request gates that run in front of route handlers.

Each gate is a plain function returning ``Respond(response)`` to short-circuit
or ``Continue()`` to let the request through. The decorators below compose
them around FastAPI handlers; wrapped handlers must declare ``request: Request``.
Rate-limited handlers that return models also declare ``response: Response``
so the X-RateLimit headers have somewhere to go.

Order on a protected route is rate limit, then authentication, then role check:

    @router.post("/ideas")
    @rate_limit(API_RATE_LIMIT)
    @require_roles({"owner"})
    async def create_idea(request: Request, body: IdeaCreateRequest): ...

Routes that automation jobs read use ``with_user_or_service`` instead of
``with_auth``; it also admits callers presenting the webhook secret header.
"""

from __future__ import annotations

import functools
import hmac
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from fastapi import Request, Response

from cronostudio.api.cookies import ACCESS_COOKIE
from cronostudio.api.error_handling import error_response, service_error_response
from cronostudio.logging import get_logger
from cronostudio.service.auth import AuthContext
from cronostudio.service.errors import ForbiddenError, RateLimitedError, ServerError
from cronostudio.service.runtime import Runtime, check_rate_limit
from cronostudio.service.tokens import TokenError, TokenService
from cronostudio.storage.models import UserRole
from cronostudio.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Handler = Callable[..., Awaitable[Any]]

CORS_ALLOWED_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
CORS_ALLOWED_HEADERS = "Content-Type, Authorization"
CORS_MAX_AGE_SECONDS = 86400


@dataclass(frozen=True)
class Respond:
    response: Response


@dataclass(frozen=True)
class Continue:
    pass


StageResult = Union[Respond, Continue]


# CORS


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def cors_headers(origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": CORS_ALLOWED_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOWED_HEADERS,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Max-Age": str(CORS_MAX_AGE_SECONDS),
        "Vary": "Origin",
    }


def _allowed_origin(request: Request, allowed_origins: Sequence[str]) -> Optional[str]:
    origin = request.headers.get("origin")
    if origin and origin in allowed_origins:
        return origin
    return None


def cors_gate(request: Request, allowed_origins: Sequence[str]) -> StageResult:
    """Answer preflight requests under ``/api/``; everything else continues."""
    if not _is_api_path(request.url.path) or request.method != "OPTIONS":
        return Continue()
    origin = _allowed_origin(request, allowed_origins)
    if origin is None:
        logger.info(
            "cors_preflight_rejected",
            path=request.url.path,
            origin=request.headers.get("origin"),
        )
        return Respond(Response(status_code=403))
    return Respond(Response(status_code=204, headers=cors_headers(origin)))


def apply_cors_headers(
    request: Request, response: Response, allowed_origins: Sequence[str]
) -> None:
    if not _is_api_path(request.url.path):
        return
    origin = _allowed_origin(request, allowed_origins)
    if origin is None:
        return
    for name, value in cors_headers(origin).items():
        response.headers[name] = value


# authentication


def extract_access_token(request: Request) -> Optional[str]:
    """Access token from the cookie, or from ``Authorization: Bearer``."""
    cookie_token = request.cookies.get(ACCESS_COOKIE)
    if cookie_token:
        return cookie_token
    header = request.headers.get("authorization")
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


def _unauthorized() -> Respond:
    return Respond(error_response(401, "Authentication required", code="unauthorized"))


def authenticate(request: Request, tokens: TokenService) -> StageResult:
    token = extract_access_token(request)
    if not token:
        return _unauthorized()
    try:
        claims = tokens.verify_access_token(token)
    except TokenError as exc:
        logger.info(
            "access_token_rejected", path=request.url.path, reason=type(exc).__name__
        )
        return _unauthorized()
    request.state.user = AuthContext(user_id=claims.sub, email=claims.email, role=claims.role)
    return Continue()


def authorize(request: Request, allowed_roles: frozenset[str]) -> StageResult:
    user: Optional[AuthContext] = getattr(request.state, "user", None)
    if user is None:
        return _unauthorized()
    if user.role not in allowed_roles:
        logger.warning(
            "role_forbidden",
            path=request.url.path,
            user_id=user.user_id,
            role=user.role,
            allowed=sorted(allowed_roles),
        )
        return Respond(
            service_error_response(
                ForbiddenError(
                    "Insufficient permissions",
                    detail={"required_roles": sorted(allowed_roles)},
                )
            )
        )
    return Continue()


def _find_request(handler: Handler, args: tuple, kwargs: dict) -> Request:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for arg in args:
        if isinstance(arg, Request):
            return arg
    raise TypeError(f"{handler.__name__} must declare a 'request: Request' parameter")


def current_user(request: Request) -> AuthContext:
    """Identity set by ``with_auth``; only valid inside a wrapped handler."""
    return request.state.user


def with_auth(handler: Handler) -> Handler:
    @functools.wraps(handler)
    async def authenticated(*args: Any, **kwargs: Any) -> Any:
        request = _find_request(handler, args, kwargs)
        outcome = authenticate(request, request.app.state.runtime.tokens)
        if isinstance(outcome, Respond):
            return outcome.response
        return await handler(*args, **kwargs)

    return authenticated


def require_roles(allowed: Iterable[str]) -> Callable[[Handler], Handler]:
    """Authenticate, then admit only callers whose role is in ``allowed``.

    Matching is exact; there is no role hierarchy.
    """
    allowed_roles = frozenset(str(getattr(role, "value", role)) for role in allowed)

    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def guarded(*args: Any, **kwargs: Any) -> Any:
            request = _find_request(handler, args, kwargs)
            outcome = authorize(request, allowed_roles)
            if isinstance(outcome, Respond):
                return outcome.response
            return await handler(*args, **kwargs)

        return with_auth(guarded)

    return decorator


# service authentication

SERVICE_SECRET_HEADER = "x-cronostudio-webhook-secret"


def has_valid_service_secret(request: Request, secret: Optional[str]) -> bool:
    """True when a secret is configured and the request presents it."""
    if not secret:
        return False
    provided = request.headers.get(SERVICE_SECRET_HEADER)
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), secret.encode())


def authenticate_user_or_service(
    request: Request, runtime: Runtime, *, owner_only: bool = False
) -> StageResult:
    """Accept a user access token, or the shared secret of an automation caller.

    Users are held to ``owner_only``. Service callers act as the configured
    service user with the ``automation`` role.
    """
    if isinstance(authenticate(request, runtime.tokens), Continue):
        request.state.auth_via = "user"
        if owner_only:
            return authorize(request, frozenset({UserRole.OWNER.value}))
        return Continue()

    if not has_valid_service_secret(request, runtime.settings.webhook_secret):
        logger.warning(
            "service_auth_rejected",
            path=request.url.path,
            secret_present=SERVICE_SECRET_HEADER in request.headers,
        )
        return _unauthorized()

    service_user = runtime.auth.resolve_service_user()
    if service_user is None:
        logger.error("service_auth_misconfigured", path=request.url.path)
        return Respond(service_error_response(ServerError("Service user misconfigured")))

    request.state.user = AuthContext(
        user_id=service_user.id, email=service_user.email, role=UserRole.AUTOMATION.value
    )
    request.state.auth_via = "service"
    logger.info("service_auth_accepted", path=request.url.path, user_id=service_user.id)
    return Continue()


def with_user_or_service(*, owner_only: bool = False) -> Callable[[Handler], Handler]:
    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def authenticated(*args: Any, **kwargs: Any) -> Any:
            request = _find_request(handler, args, kwargs)
            outcome = authenticate_user_or_service(
                request, request.app.state.runtime, owner_only=owner_only
            )
            if isinstance(outcome, Respond):
                return outcome.response
            return await handler(*args, **kwargs)

        return authenticated

    return decorator


# rate limiting


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int


API_RATE_LIMIT = RateLimitPolicy("api", 100, 15 * 60)
LOGIN_RATE_LIMIT = RateLimitPolicy("login", 5, 15 * 60)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return "unknown"


def rate_limit(policy: RateLimitPolicy) -> Callable[[Handler], Handler]:
    def decorator(handler: Handler) -> Handler:
        @functools.wraps(handler)
        async def limited(*args: Any, **kwargs: Any) -> Any:
            request = _find_request(handler, args, kwargs)
            runtime = request.app.state.runtime
            if not runtime.settings.rate_limit_enforce:
                return await handler(*args, **kwargs)

            key = RedisCache.rate_limit_key(policy.name, client_ip(request))
            decision = await check_rate_limit(
                runtime, key, policy.max_requests, policy.window_seconds
            )
            info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)
            if not decision.allowed:
                logger.warning(
                    "rate_limit_exceeded",
                    policy=policy.name,
                    path=request.url.path,
                    retry_after=decision.reset_seconds,
                )
                response = service_error_response(
                    RateLimitedError(
                        "Too many requests", detail={"retry_after": decision.reset_seconds}
                    ),
                    headers={"Retry-After": str(decision.reset_seconds)},
                )
                info.apply_headers(response)
                return response

            result = await handler(*args, **kwargs)
            target = result if isinstance(result, Response) else kwargs.get("response")
            if isinstance(target, Response):
                info.apply_headers(target)
            return result

        return limited

    return decorator
