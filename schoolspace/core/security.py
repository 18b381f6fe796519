"""
Security Module

JWT credential issuance and decoding (python-jose).

Credentials carry the tenant-identifying claims the resolver consumes.
The issuer only ever writes namespace identifiers that pass the
validator, so a namespace claim on a credential we signed is safe to use
once it has been validated again on the way in.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Union
from jose import JWTError, jwt
from pydantic import ValidationError

from schoolspace.config import get_settings
from schoolspace.schemas.claims import LegacyClaims, SchoolClaims, parse_claims
from schoolspace.tenancy.context import ResolvedTenantContext
from schoolspace.tenancy.validator import require_valid_namespace

settings = get_settings()

CLAIMS_VERSION = 2


def create_access_token(
    user_id: int,
    role: str,
    context: Optional[ResolvedTenantContext] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a v2 JWT access token.

    Payload:
    - sub: user id (string, per JWT convention)
    - role
    - school_id, school_code, schema_name: when a school context is given
    - exp, iat
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode: Dict[str, Any] = {
        "ver": CLAIMS_VERSION,
        "sub": str(user_id),
        "role": role,
        "exp": expire,
        "iat": now,
    }
    if context is not None:
        to_encode.update({
            "school_id": context.school_id,
            "school_code": context.code,
            "schema_name": require_valid_namespace(context.namespace, source="token_issuer"),
        })

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT token.

    Returns the payload if valid, None if invalid/expired.
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def decode_claims(token: str) -> Optional[Union[LegacyClaims, SchoolClaims]]:
    """Decode a token into its claim set, or None if it is not a usable credential."""
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        return parse_claims(payload)
    except ValidationError:
        return None
