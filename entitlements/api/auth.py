import logging

from jose import jwt
from jose.exceptions import JWTError, ExpiredSignatureError
from fastapi import Request, HTTPException, status

from entitlements import config

logger = logging.getLogger(__name__)

settings = config.get_settings()


async def get_current_user_id(request: Request) -> str:
    """
    Extract and validate the JWT from the Authorization header.
    Returns the user ID from the token's 'sub' claim.

    This is used as a dependency in protected routes.
    """
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        logger.info("[Auth] Missing bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header"
        )

    token = auth.split(" ", 1)[1].strip()

    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            options={"verify_iat": False}  # Disable iat validation to avoid clock skew issues
        )
    except ExpiredSignatureError:
        logger.info("[Auth] Token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired"
        )
    except JWTError as e:
        logger.info(f"[Auth] Invalid token - error: {type(e).__name__}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    # Verify it's an access token
    if payload.get("typ") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token (no sub)"
        )

    return str(sub)
