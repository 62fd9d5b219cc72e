from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from jose import JWTError, jwt

from facesearch.core.config import settings

# JWT configuration constants
# HS256 requires a single secret key for both signing and verification.
ALGORITHM = "HS256"
OPERATOR_ROLE = "operator"


def create_access_token(
    subject: Union[str, Any],
    expires_delta: Optional[timedelta] = None,
    role: str = OPERATOR_ROLE,
) -> str:
    """
    Creates a JSON Web Token (JWT) for operator tooling using HS256.

    Operator tokens unlock the audit endpoints and raw embeddings in
    responses. They are minted out of band (there is no login route).

    Args:
        subject (Union[str, Any]): The subject of the token, typically the operator name.
        expires_delta (timedelta, optional): Custom expiration time. If not provided,
                                             defaults to ACCESS_TOKEN_EXPIRE_MINUTES.
        role (str): Role claim checked by the API dependencies.

    Returns:
        str: The encoded JWT string.
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"exp": expire, "sub": str(subject), "role": role}

    return jwt.encode(to_encode, settings.SESSION_SECRET, algorithm=ALGORITHM)


def decode_operator_token(token: str) -> Optional[str]:
    """
    Validates an operator token.

    Returns:
        Optional[str]: The subject when the signature, expiry and role are valid, None otherwise.
    """
    try:
        payload = jwt.decode(token, settings.SESSION_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        # Expired signatures or cryptographically invalid tokens
        return None

    if payload.get("role") != OPERATOR_ROLE:
        return None

    return payload.get("sub")
