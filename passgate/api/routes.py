from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Cookie,
    Depends,
    Header,
    Query,
    Request,
    Response,
)

from passgate.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    SignupRequest,
    TokenRefreshRequest,
    UserResponse,
)
from passgate.logging import get_logger
from passgate.service.auth import AuthContext, AuthResult, AuthTokens
from passgate.service.errors import AuthenticationError
from passgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


def _apply_refresh_cookie(response: Response, tokens: AuthTokens) -> None:
    runtime = get_runtime()
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        max_age=runtime.auth.session_ttl_seconds,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=get_runtime().settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _auth_payload(tokens: AuthTokens, user: Optional[dict] = None) -> AuthResponse:
    return AuthResponse(
        access_token=tokens.access_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        user=UserResponse(**user) if user else None,
    )


def _presented_refresh_token(
    body: Optional[TokenRefreshRequest], cookie_value: Optional[str]
) -> Optional[str]:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return cookie_value


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/signup", response_model=Envelope, status_code=201)
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create a new account.

    Returns an access token and the user projection, and sets the refresh
    token cookie. A verification email is sent to the new address.

    Raises:
        400: If any field fails validation
        409: If the email is already registered
    """
    runtime = get_runtime()
    result: AuthResult = await runtime.auth.signup(
        body.full_name,
        body.email,
        body.password,
        body.currency_code,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _apply_refresh_cookie(response, result.tokens)
    return Envelope(status="ok", data=_auth_payload(result.tokens, result.user))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _apply_refresh_cookie(response, result.tokens)
    return Envelope(status="ok", data=_auth_payload(result.tokens, result.user))


@router.post("/refresh", response_model=Envelope)
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = _presented_refresh_token(body, refresh_cookie)
    if not token:
        raise AuthenticationError("Refresh token not provided")
    tokens = await runtime.auth.refresh(token)
    _apply_refresh_cookie(response, tokens)
    return Envelope(status="ok", data=_auth_payload(tokens))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id,
        _presented_refresh_token(body, refresh_cookie),
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(
    body: ForgotPasswordRequest, request: Request, background_tasks: BackgroundTasks
):
    # Same response whether or not the address is registered; the reset email
    # goes out after the response is sent
    runtime = get_runtime()
    await runtime.auth.forgot_password(
        body.email,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        defer=background_tasks.add_task,
    )
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok", data=MessageResponse(message="Password has been reset successfully")
    )


async def _verify(token: str, request: Request) -> Envelope:
    runtime = get_runtime()
    await runtime.auth.verify_email(
        token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=MessageResponse(message="Email verified successfully"))


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: EmailVerificationRequest, request: Request):
    return await _verify(body.token, request)


@router.get("/verify-email", response_model=Envelope)
async def verify_email_link(
    request: Request, token: str = Query(..., min_length=1, max_length=256)
):
    """Target of the link in the verification email."""
    return await _verify(token, request)


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.resend_verification(principal.user_id, ip_address=_client_ip(request))
    return Envelope(status="ok", data=MessageResponse(message="Verification email sent"))


@router.get("/me", response_model=Envelope)
async def get_current_user(principal: AuthContext = Depends(get_user)):
    """Get the current user's profile."""
    runtime = get_runtime()
    user = await runtime.auth.whoami(principal.user_id)
    return Envelope(status="ok", data=UserResponse(**user))
