"""JWT token creation and decoding.

Token claims:
  - sub:          actor ID (admin user)
  - role:         actor role string
  - permissions:  list of effective permission strings
  - type:         "access"
  - exp:          expiry timestamp

Billing only decodes tokens; ``create_access_token`` exists for the
platform auth service contract and for tests.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from cafetal.config import settings

ALGORITHM = settings.jwt_algorithm


def create_access_token(
    actor_id: str,
    role: str,
    permissions: list[str],
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload = {
        "sub": actor_id,
        "role": role,
        "permissions": permissions,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Returns empty dict on failure."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return {}
