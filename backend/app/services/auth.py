from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.config import settings
from app.models.shopify import Operator
from app.utils.logger import logger

security = HTTPBearer(auto_error=False)

# Cookie tokens carry a ``purpose`` claim so a cookie can never be replayed
# as a bearer token (and vice versa).
STATE_COOKIE_PURPOSE = "shopify_state"
OPERATOR_COOKIE_PURPOSE = "shopify_operator"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Issue an operator bearer token.

    Production tokens come from the platform's login flow; this mirrors its
    format for local tooling and tests.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.ALGORITHM)


def decode_operator_token(
    token: Optional[str],
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> Optional[Operator]:
    """Return the operator for a valid bearer token, else ``None``."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret_key or settings.secret_key,
            algorithms=[algorithm or settings.ALGORITHM],
        )
    except JWTError as e:
        logger.warning(f"JWT validation error: {type(e).__name__}")
        return None

    if payload.get("purpose"):
        logger.warning("Rejected cookie token presented as bearer token")
        return None
    operator_id = payload.get("sub")
    if not operator_id:
        return None
    return Operator(id=str(operator_id), email=payload.get("email"))


async def get_current_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Operator:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    operator = decode_operator_token(credentials.credentials)
    if operator is None:
        raise credentials_exception
    return operator


def sign_cookie_token(
    purpose: str,
    claims: Dict[str, Any],
    ttl_seconds: int,
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> str:
    to_encode = dict(claims)
    to_encode["purpose"] = purpose
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    return jwt.encode(to_encode, secret_key or settings.secret_key, algorithm=algorithm or settings.ALGORITHM)


def read_cookie_token(
    purpose: str,
    token: Optional[str],
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Claims of a signed cookie, or ``None`` if missing, expired, forged or mis-scoped."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret_key or settings.secret_key,
            algorithms=[algorithm or settings.ALGORITHM],
        )
    except JWTError as e:
        logger.warning(f"Cookie token rejected ({purpose}): {type(e).__name__}")
        return None
    if payload.get("purpose") != purpose:
        return None
    return payload
