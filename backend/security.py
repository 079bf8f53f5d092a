from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from db import settings

ALGO = "HS256"

# Tokens are issued by the identity service; this module only needs to read
# them. create_access_token exists for local tooling and tests.

def create_access_token(data: dict, minutes: int | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes or settings.JWT_EXPIRE_MINUTES)
    payload = {**data, "exp": expire}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGO)

def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGO])
    except JWTError:
        raise ValueError("Invalid token")
