from fastapi import Header, HTTPException
from jose import JWTError, jwt

from billing.config import get_settings


def verify_token(authorization: str = Header(...)) -> str:
    """Validate the bearer token and return the caller's user id (``sub``)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user_id
