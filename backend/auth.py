from __future__ import annotations

import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.engine import Connection, Engine

from backend.credentials import verify_token
from backend.errors import AuthError, AuthFailure
from backend.repositories import UserRepository
from backend.schemas import ExternalIdentityPayload

logger = structlog.get_logger()

BEARER_PREFIX = "bearer "


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def extract_bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        raise AuthError(AuthFailure.MISSING, "Access denied. No token provided")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthError(AuthFailure.MISSING, "Access denied. No token provided")
    return token


def get_current_user(
    authorization: str | None = Header(None),
    engine: Engine = Depends(get_engine),
) -> dict:
    """Resolve the bearer token to a user row without the password hash."""
    token = extract_bearer_token(authorization)
    try:
        user_id = verify_token(token)
    except AuthError as exc:
        logger.info("Token rejected", reason=exc.reason.value)
        raise AuthError(exc.reason, "Invalid or expired token") from exc

    with engine.begin() as conn:
        user = UserRepository(conn).get(user_id)
    if not user:
        logger.info("Token rejected", reason=AuthFailure.USER_NOT_FOUND.value, user_id=user_id)
        raise AuthError(AuthFailure.USER_NOT_FOUND, "Invalid or expired token")
    return user


def resolve_external_identity(conn: Connection, payload: ExternalIdentityPayload) -> dict:
    """Find, link or create the local user for a provider sign-in.

    A known ``(provider, providerAccountId)`` pair wins over the email so that an
    address changed at the provider still maps to the same account.
    """
    repository = UserRepository(conn)
    email = payload.email.strip().lower()

    user = repository.find_by_provider(payload.provider, payload.provider_account_id)
    if user:
        return user

    user = repository.find_by_email(email)
    if user:
        logger.info("Linking external identity", user_id=user["id"], provider=payload.provider)
        return repository.link_provider(
            user["id"],
            payload.provider,
            payload.provider_account_id,
            image=payload.image,
        )

    logger.info("Creating user from external identity", provider=payload.provider)
    return repository.create(
        email,
        name=payload.name or email.split("@")[0],
        provider=payload.provider,
        provider_account_id=payload.provider_account_id,
        email_verified=True,
        image=payload.image,
    )
