"""
Registry tokens.

The first registration of an identity returns a JWT whose subject is that
identity. Replacing the key later requires presenting the token, so only
whoever registered an identity can rotate its key.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt

from . import config


def create_access_token(identity: str, expires_delta: Optional[timedelta] = None,
                        secret_key: str = config.SECRET_KEY) -> str:
    """
    Create a JWT access token for an identity.

    Args:
        identity: Subject of the token
        expires_delta: Token lifetime
        secret_key: Signing key

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": identity, "exp": expire}
    return jwt.encode(to_encode, secret_key, algorithm=config.ALGORITHM)


def verify_token(token: str, secret_key: str = config.SECRET_KEY) -> Optional[str]:
    """
    Verify a JWT token and extract the identity.

    Returns:
        Identity if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    identity = payload.get("sub")
    if identity is None:
        return None
    return identity


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer ...`` header"""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
