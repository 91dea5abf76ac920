"""
Sign-in, login completion and sign-out flows.
"""
import logging
from typing import TYPE_CHECKING, Optional

from .errors import ClientError
from .models import SignInInput, SignInResponse, TokenPair, UserDto, unwrap
from .token_manager import USER_KEY
from .validation import validate_email, validate_password

if TYPE_CHECKING:
    from .context import ClientContext

logger = logging.getLogger("auth")

AUTH_ENDPOINTS = {
    "SIGNIN": "/auth/signin",
    "VERIFY": "/auth/verify",
    "SIGNOUT": "/auth/signout",
}


def sign_in(ctx: "ClientContext", email: str, password: str) -> UserDto:
    """Authenticate with email and password and load the user profile."""
    validate_email(email)
    validate_password(password)

    response = unwrap(
        SignInResponse,
        ctx.api.post(
            AUTH_ENDPOINTS["SIGNIN"],
            SignInInput(email=email.strip(), password=password),
            authenticated=False,
        ),
    )

    if response.access_token and response.refresh_token:
        return complete_login(
            ctx,
            TokenPair(access_token=response.access_token, refresh_token=response.refresh_token),
        )

    # Cookie deployments deliver the tokens as cookies only
    return _load_user(ctx)


def complete_login(ctx: "ClientContext", tokens: TokenPair) -> UserDto:
    """Store the token pair, then verify it by fetching the current user."""
    ctx.token_manager.set_tokens(tokens.access_token, tokens.refresh_token)
    return _load_user(ctx)


def _load_user(ctx: "ClientContext") -> UserDto:
    user = unwrap(UserDto, ctx.api.get(AUTH_ENDPOINTS["VERIFY"], use_cache=False))
    ctx.kv.set(USER_KEY, user.to_wire())
    logger.info(f"Signed in as user {user.id}")
    return user


def current_user(ctx: "ClientContext") -> Optional[UserDto]:
    data = ctx.kv.get(USER_KEY)
    return UserDto.model_validate(data) if data else None


def sign_out(ctx: "ClientContext") -> None:
    """
    End the session locally, telling the backend on a best-effort basis.

    Local credentials and cached responses are always cleared, even when the
    backend cannot be reached.
    """
    try:
        ctx.api.post(AUTH_ENDPOINTS["SIGNOUT"], {})
    except ClientError as e:
        logger.warning(f"Sign-out request failed: {e!r}")
    finally:
        ctx.token_manager.clear_tokens()
        ctx.api.clear_cache()
    logger.info("Signed out")
