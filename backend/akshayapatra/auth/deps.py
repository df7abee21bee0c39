"""FastAPI dependencies for authentication.

Dependencies:
  get_access_token   → bearer header, falling back to the Supabase cookie
  get_current_user   → decode the token and return a SessionUser
"""

from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from akshayapatra.auth.jwt import decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

ACCESS_TOKEN_COOKIE = "sb-access-token"


@dataclass
class SessionUser:
    """The signed-in user as described by their Supabase token."""
    id: str
    access_token: str
    email: str | None = None
    phone: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        """Best display name available before the profile row exists."""
        name = (
            self.metadata.get("full_name")
            or self.metadata.get("name")
            or (self.email.split("@")[0] if self.email else None)
            or "User"
        )
        return str(name).strip()

    @property
    def phone_number(self) -> str | None:
        return self.metadata.get("phone_number") or self.phone or None


async def get_access_token(
    request: Request,
    bearer: str | None = Depends(oauth2_scheme),
) -> str:
    token = bearer or request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


async def get_current_user(token: str = Depends(get_access_token)) -> SessionUser:
    """Decode the Supabase JWT and return the session user."""
    payload = decode_token(token)
    user_id: str | None = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return SessionUser(
        id=user_id,
        access_token=token,
        email=payload.get("email") or None,
        phone=payload.get("phone") or None,
        metadata=payload.get("user_metadata") or {},
    )
