import os

import structlog
from fastapi import Header, HTTPException
from jose import JWTError, jwt

# Imported for its side effect of loading .env before JWT_SECRET is read
import qrpromo.config  # noqa: F401
from qrpromo.errors import ConfigurationError

logger = structlog.get_logger(__name__)

ALGORITHM = "HS256"
INVALID_TOKEN = "Invalid or missing service token"


def _bearer(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail=INVALID_TOKEN)
    return token.strip()


def verify_token(authorization: str = Header(...)):
    """Service-to-service check. Returns the token claims."""
    secret = os.getenv("JWT_SECRET")
    if not secret:
        logger.error("jwt_secret_missing")
        raise HTTPException(status_code=500, detail=ConfigurationError.public_message)

    token = _bearer(authorization)
    try:
        return jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning("service_token_rejected", error=str(e))
        raise HTTPException(status_code=401, detail=INVALID_TOKEN)
