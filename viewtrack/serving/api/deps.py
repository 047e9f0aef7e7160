"""
Route dependencies: pipeline services, caller identity and internal auth.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request
from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from viewtrack.errors import Unauthorized
from viewtrack.ingestion.ingress import ClientContext
from viewtrack.pipeline import ViewPipeline


def get_pipeline(conn: HTTPConnection) -> ViewPipeline:
    """The process-wide pipeline created in the application lifespan."""
    pipeline = getattr(conn.app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("View pipeline not initialized")
    return pipeline


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> Optional[str]:
    """
    User id from an optional bearer token.

    Returns None for anonymous callers; a present but invalid token is
    rejected rather than treated as anonymous.
    """
    if not authorization:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Malformed Authorization header")

    security = pipeline.settings.security
    try:
        claims = jwt.decode(
            token.strip(),
            security.jwt_secret_key.get_secret_value(),
            algorithms=[security.jwt_algorithm],
        )
    except JWTError:
        raise Unauthorized("Invalid or expired token") from None

    subject = claims.get("sub")
    if subject in (None, ""):
        raise Unauthorized("Token has no subject")
    return str(subject)


def require_user_id(user_id: Optional[str] = Depends(get_current_user_id)) -> str:
    if user_id is None:
        raise Unauthorized("Authentication required")
    return user_id


def require_internal_token(
    x_internal_token: Optional[str] = Header(None),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> None:
    """Shared-secret guard for collaborator services."""
    expected = pipeline.settings.security.internal_api_token.get_secret_value()
    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise Unauthorized("Invalid internal token")


def get_client_context(
    request: Request,
    user_id: Optional[str] = Depends(get_current_user_id),
) -> ClientContext:
    return ClientContext(
        user_id=user_id,
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        headers=dict(request.headers),
    )
