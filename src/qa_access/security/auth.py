"""Principal resolution from a signed credential.

The credential is a JWT read from the ``access_token`` HttpOnly cookie, with
``Authorization: Bearer <token>`` as the fallback for API clients. Signature
and expiry are verified by ``decode_token``; no database lookup happens on
this path.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from jose import JWTError

from ..errors import UnknownRole
from .permissions import Role, parse_role
from .tokens import decode_token

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "access_token"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller for the duration of one request.

    ``role`` is ``None`` when the credential carries no role claim; such a
    principal is authenticated but every guarded operation denies it.
    """
    user_id: str
    username: str
    role: Optional[Role]
    email: Optional[str] = None
    organization_id: Optional[str] = None
    instance_id: Optional[str] = None
    project_id: Optional[str] = None


def principal_from_claims(payload: Dict[str, Any]) -> Principal:
    """Build a ``Principal`` from verified token claims.

    Raises:
        ValueError: When required claims are missing, the token is not an
            access token, or the role claim is outside the role enumeration.
    """
    if payload.get("type") != "access":
        raise ValueError("Not an access token")

    user_id = payload.get("sub")
    username = payload.get("username")
    if not user_id or not username:
        raise ValueError("Invalid token payload")

    role_claim = payload.get("role")
    role: Optional[Role] = None
    if role_claim:
        try:
            role = parse_role(role_claim)
        except UnknownRole:
            raise ValueError(f"Unknown role claim {role_claim!r}") from None

    return Principal(
        user_id=str(user_id),
        username=str(username),
        role=role,
        email=payload.get("email") or None,
        organization_id=payload.get("organizationId") or None,
        instance_id=payload.get("instanceId") or None,
        project_id=payload.get("projectId") or None,
    )


def extract_token(request: Request) -> Optional[str]:
    """Return the raw credential from the cookie or Authorization header."""
    token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if token:
        return token

    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:] or None
    return None


def authenticate_token(raw_token: str) -> Optional[Principal]:
    """Verify *raw_token* and return its principal, or ``None`` if invalid."""
    try:
        payload = decode_token(raw_token)
        return principal_from_claims(payload)
    except (JWTError, ValueError) as e:
        logger.info("Rejected credential: %s", e)
        return None


async def get_optional_principal(request: Request) -> Optional[Principal]:
    """FastAPI dependency: principal for the request, ``None`` when absent.

    Raises 401 when a credential is present but does not verify.
    """
    raw_token = extract_token(request)
    if raw_token is None:
        return None

    principal = authenticate_token(raw_token)
    if principal is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return principal


async def get_principal(request: Request) -> Principal:
    """FastAPI dependency: require an authenticated principal (401 otherwise)."""
    principal = await get_optional_principal(request)
    if principal is None:
        raise HTTPException(status_code=401, detail="Missing credentials")
    return principal
