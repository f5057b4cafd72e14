from __future__ import annotations

from fastapi import APIRouter, Path, Request, Response
from fastapi.responses import RedirectResponse

from userservice.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    ProfileResponse,
    SessionResponse,
    SignupRequest,
)
from userservice.config import Settings
from userservice.logging import get_logger
from userservice.service.errors import ValidationError
from userservice.service.runtime import get_runtime
from userservice.service.sessions import SessionGrant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _remote_addr(request: Request) -> str:
    return request.client.host if request.client else ""


def _session_response(grant: SessionGrant) -> SessionResponse:
    return SessionResponse(
        token=grant.token,
        expires_at=grant.expires_at,
        ttl_seconds=grant.ttl_seconds,
    )


def _apply_session_cookie(response: Response, settings: Settings, grant: SessionGrant) -> None:
    response.set_cookie(
        settings.cookie_name,
        grant.token,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=grant.expires_at,
        path="/",
    )


def _clear_cookie(response: Response, name: str) -> None:
    response.delete_cookie(name, path="/", secure=True, samesite="lax")


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Create a credential for a new login name.

    Raises:
        409: If the name is already taken
    """
    runtime = get_runtime()
    profile = await runtime.auth.create_account(body.name, body.password)
    return Envelope(status="ok", data=ProfileResponse.from_profile(profile))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate by password and open a session.

    Unknown names and wrong passwords get the same answer; a locked-out
    account gets the same body with a 403.

    Raises:
        401: If credentials are invalid
        403: If the account is locked out
        429: If the user already holds the maximum number of sessions
    """
    runtime = get_runtime()
    profile = await runtime.auth.login(body.name, body.password)
    grant = await runtime.auth.issue_session(profile.user_id, _remote_addr(request))
    _apply_session_cookie(response, runtime.settings, grant)
    return Envelope(
        status="ok",
        data=LoginResponse(
            profile=ProfileResponse.from_profile(profile),
            session=_session_response(grant),
        ),
    )


@router.patch("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, request: Request, response: Response):
    """Change a password with the current one, or with a redeemed pad cookie.

    The pad path revokes every existing session of the user. Both paths
    open a fresh session.
    """
    runtime = get_runtime()
    settings = runtime.settings
    pad = request.cookies.get(settings.pad_cookie_name)
    if pad:
        profile = await runtime.auth.reset_password_with_pad(body.name, pad, body.new_password)
        _clear_cookie(response, settings.pad_cookie_name)
    else:
        if body.current_password is None:
            raise ValidationError("current password is required")
        await runtime.auth.change_password(body.name, body.current_password, body.new_password)
        profile = await runtime.auth.get_profile(body.name)
    grant = await runtime.auth.issue_session(profile.user_id, _remote_addr(request))
    _apply_session_cookie(response, settings, grant)
    return Envelope(
        status="ok",
        data=LoginResponse(
            profile=ProfileResponse.from_profile(profile),
            session=_session_response(grant),
        ),
    )


@router.get("/auth/sessions/{token}", response_model=Envelope, tags=["auth"])
async def validate_session(token: str = Path(..., max_length=256)):
    """Check a session token and slide its expiry forward."""
    runtime = get_runtime()
    grant = await runtime.auth.validate_session(token)
    return Envelope(status="ok", data=_session_response(grant))


@router.delete("/auth/sessions/{token}", response_model=Envelope, tags=["auth"])
async def revoke_session(response: Response, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    await runtime.auth.revoke_session(token)
    _clear_cookie(response, runtime.settings.cookie_name)
    return Envelope(status="ok", data={"revoked": True})


@router.post("/auth/reset", response_model=Envelope, status_code=202, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Send a one-time pad to the owner of ``name``.

    Always 202 so the endpoint cannot be used to probe for accounts.
    """
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.name, _remote_addr(request), body.redirect)
    return Envelope(status="ok", data={"accepted": True})


@router.get("/auth/otp/{pad}", tags=["auth"])
async def redeem_pad(pad: str = Path(..., max_length=256)):
    """Follow a one-time pad link: set the pad cookie and redirect."""
    runtime = get_runtime()
    settings = runtime.settings
    location = await runtime.auth.redeem_pad(pad)
    response = RedirectResponse(location, status_code=302)
    response.set_cookie(
        settings.pad_cookie_name,
        pad,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.session_ttl_seconds,
        path="/",
    )
    logger.info("pad_redeemed", redirect=location)
    return response
