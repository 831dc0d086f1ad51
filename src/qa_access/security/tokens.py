"""JWT token creation and validation.

Uses python-jose for JWT encoding/decoding. Tokens are signed with the
application SECRET_KEY using HS256.

Access tokens carry the principal's identity, role and tenant affiliation
(``organizationId`` / ``instanceId`` / ``projectId``). Tenant scoping trusts
these signed claims, so a tenant reassignment takes effect on the next
token refresh.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from ..config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def create_access_token(
    user_id: str,
    username: str,
    role: Optional[str],
    email: Optional[str] = None,
    organization_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    project_id: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token.

    Args:
        user_id: Value for the ``sub`` claim.
        username: Login name, required by the credential verifier.
        role: Role value (e.g. ``"manager"``); ``None`` omits the claim.
        email: Optional email claim.
        organization_id: Tenant organization claim.
        instance_id: Tenant instance claim.
        project_id: Tenant project claim.
        expires_delta: Custom expiry. Falls back to config ``access_token_expire_minutes``.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    payload: Dict[str, Any] = {
        "sub": user_id,
        "username": username,
        "type": "access",
        "iat": now,
        "exp": now + expires_delta,
    }
    if role is not None:
        payload["role"] = role
    if email:
        payload["email"] = email
    if organization_id:
        payload["organizationId"] = organization_id
    if instance_id:
        payload["instanceId"] = instance_id
    if project_id:
        payload["projectId"] = project_id
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT token.

    Validates signature and expiry. Returns the full payload dict on success.

    Raises:
        JWTError: On invalid signature, expired token, or malformed JWT.
    """
    settings = get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
