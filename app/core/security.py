"""
Security utilities: JWT sessions, password hashing, link tokens
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple
from jose import JWTError, jwt
from passlib.context import CryptContext

from app.config import settings

# Password hashing context
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        Hashed password
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password to compare against

    Returns:
        True if password matches, False otherwise
    """
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(identity_id: str, email: str, session_id: str,
                        expires_delta: Optional[timedelta] = None) -> Tuple[str, datetime]:
    """
    Create a JWT access token for a provider session

    Args:
        identity_id: Identity the session belongs to
        email: Identity email, copied into the claims
        session_id: Server-side session id, used for revocation on sign-out
        expires_delta: Optional custom expiration time

    Returns:
        Tuple of (encoded token, expiry as naive UTC)
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {
        "sub": identity_id,
        "email": email,
        "sid": session_id,
        "exp": expire,
        "iat": now,
        "type": "access",
    }

    encoded_jwt = jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )
    return encoded_jwt, expire.replace(tzinfo=None)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        return None

    # Verify token type
    if payload.get("type") != "access" or not payload.get("sub") or not payload.get("sid"):
        return None

    return payload


def read_token_expiry(token: str) -> Optional[datetime]:
    """Read the exp claim of a token issued elsewhere, without verifying it"""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    return datetime.fromtimestamp(int(exp), tz=timezone.utc).replace(tzinfo=None)


def generate_link_token() -> str:
    """Random single-use token embedded in invite and recovery links"""
    return secrets.token_urlsafe(32)


def new_session_id() -> str:
    return secrets.token_hex(16)


def mask_token(token: Optional[str]) -> str:
    """Shorten a secret for log output"""
    if not token:
        return "<none>"
    return f"{token[:4]}...{token[-4:]}" if len(token) > 12 else "***"


def validate_password_strength(password: str) -> Tuple[bool, Optional[str]]:
    """
    Validate password strength

    The only rule is the configured minimum length.

    Args:
        password: Password to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if password is None or len(password) < settings.PASSWORD_MIN_LENGTH:
        return False, f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters long"

    return True, None
