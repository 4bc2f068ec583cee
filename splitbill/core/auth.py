from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from splitbill.core.config import settings

security = HTTPBearer()

def create_access_token(identifier: str, expires_delta: timedelta | None = None) -> str:
    """Create JWT access token carrying the caller's contact handle."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    expire = now + expires_delta

    payload = {
        "sub": identifier,
        "email": identifier,
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp())
    }

    return jwt.encode(
        payload,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )

async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> str:
    """
    Resolve the caller's contact handle from the bearer token.

    Identity is owned by an external provider; we only verify the signature
    and read the ``email`` claim (falling back to ``sub``).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        raise credentials_exception

    identifier = payload.get("email") or payload.get("sub")
    if not identifier:
        raise credentials_exception
    return str(identifier).strip()
