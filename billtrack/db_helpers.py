"""
Request identity for user-scoped queries.

The hosting frontend signs every /api request with HMAC-SHA256 over
method, path (with query), user id and timestamp. The middleware verifies the
signature and stores the user id in a context variable; services resolve it
through `get_user_id`.
"""
import contextvars
import hashlib
import hmac
import time
from typing import Mapping, Optional

from fastapi import HTTPException, status
from pydantic_settings import BaseSettings

INTERNAL_AUTH_USER_HEADER = "x-billtrack-user-id"
INTERNAL_AUTH_TIMESTAMP_HEADER = "x-billtrack-timestamp"
INTERNAL_AUTH_SIGNATURE_HEADER = "x-billtrack-signature"
DEFAULT_INTERNAL_AUTH_MAX_AGE_SECONDS = 60

_request_user_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_user_id",
    default=None,
)


class InternalAuthSettings(BaseSettings):
    internal_auth_secret: str = ""
    internal_auth_max_age_seconds: int = DEFAULT_INTERNAL_AUTH_MAX_AGE_SECONDS

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def max_age_seconds(self) -> int:
        if self.internal_auth_max_age_seconds <= 0:
            return DEFAULT_INTERNAL_AUTH_MAX_AGE_SECONDS
        return self.internal_auth_max_age_seconds


def set_request_user_id(user_id: str) -> contextvars.Token:
    return _request_user_id.set(user_id)


def clear_request_user_id(token: contextvars.Token) -> None:
    _request_user_id.reset(token)


def get_request_user_id() -> Optional[str]:
    return _request_user_id.get()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def build_signature_payload(method: str, path_with_query: str, user_id: str, timestamp: str) -> str:
    return f"{method.upper()}\n{path_with_query}\n{user_id}\n{timestamp}"


def sign_payload(secret: str, payload: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def authenticate_internal_request_from_headers(
    method: str,
    path_with_query: str,
    headers: Mapping[str, str],
) -> str:
    """
    Verify the signed identity headers and return the user id.

    Raises 401 for missing, stale or forged headers and 500 when no secret is
    configured.
    """
    user_id, timestamp, signature = (
        (headers.get(name) or "").strip()
        for name in (
            INTERNAL_AUTH_USER_HEADER,
            INTERNAL_AUTH_TIMESTAMP_HEADER,
            INTERNAL_AUTH_SIGNATURE_HEADER,
        )
    )
    if not (user_id and timestamp and signature):
        raise _unauthorized("Missing internal authentication headers.")

    if not timestamp.isdigit():
        raise _unauthorized("Invalid internal authentication timestamp.")

    auth_settings = InternalAuthSettings()
    if abs(int(time.time()) - int(timestamp)) > auth_settings.max_age_seconds:
        raise _unauthorized("Expired internal authentication signature.")

    secret = auth_settings.internal_auth_secret.strip()
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal authentication secret is not configured.",
        )

    expected = sign_payload(secret, build_signature_payload(method, path_with_query, user_id, timestamp))
    if not hmac.compare_digest(expected, signature):
        raise _unauthorized("Invalid internal authentication signature.")

    return user_id


def get_user_id(user_id: Optional[str] = None) -> str:
    """
    Resolve the user for the current operation.

    Inside an HTTP request the signed identity wins and an explicit user_id
    must agree with it (403 otherwise). Outside a request (scripts, tests) an
    explicit user_id is used as given. With neither, 401.
    """
    request_user_id = get_request_user_id()
    if request_user_id is None:
        if user_id:
            return user_id
        raise _unauthorized("Authentication required.")

    if user_id and user_id != request_user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Provided user_id does not match authenticated user.",
        )
    return request_user_id
