"""Supabase access-token decoding.

Supabase signs session tokens with the project's JWT secret (HS256).

Token claims used here:
  - sub:            user ID (UUID)
  - aud:            "authenticated" for signed-in users
  - email / phone:  contact fields, either may be empty
  - user_metadata:  free-form signup data (full_name, name, phone_number)
  - exp:            expiry timestamp
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from akshayapatra.config import settings

ALGORITHM = settings.jwt_algorithm


def create_access_token(
    user_id: str,
    email: str | None = None,
    phone: str | None = None,
    user_metadata: dict | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint a Supabase-compatible access token (used by tests and scripts)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    payload = {
        "sub": user_id,
        "aud": settings.jwt_audience,
        "role": "authenticated",
        "email": email or "",
        "phone": phone or "",
        "user_metadata": user_metadata or {},
        "exp": expire,
    }
    return jwt.encode(payload, settings.supabase_jwt_secret, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Returns empty dict on failure."""
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
        )
    except JWTError:
        return {}
