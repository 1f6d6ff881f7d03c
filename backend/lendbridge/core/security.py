import hmac
from datetime import datetime, timedelta, timezone

import jwt

# Tokens are issued by the external auth service; this side only verifies them.

def create_access_token(sub: str, wallet: str, secret: str, alg: str = "HS256", role: str = "user", expires_min: int = 120) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "wallet": wallet,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_min)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=alg)

def decode_token(token: str, secret: str, alg: str = "HS256") -> dict:
    return jwt.decode(token, secret, algorithms=[alg])

def partner_key_matches(given: str | None, expected: str) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))
