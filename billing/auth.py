from fastapi import Header, HTTPException
from jose import JWTError, jwt

from billing.config import get_settings


def verify_token(authorization: str = Header(...)) -> str:
    """Validate the Bearer token and return the caller's user id (``sub``)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported scheme")
        secret = get_settings().jwt_secret
        if not secret:
            raise ValueError("JWT secret not configured")
        claims = jwt.decode(token, secret, algorithms=["HS256"])
        user_id = claims.get("sub")
        if not user_id:
            raise ValueError("Token has no subject")
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)
