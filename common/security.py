import base64, hashlib, hmac, time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"
SIGNATURE_PREFIX = "sha256="

def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def mint_internal_jwt(aud: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud,
        "iat": now,
        "exp": now + settings.internal_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def sign_payload(body: bytes, secret: str, timestamp: Optional[str] = None) -> str:
    """HMAC-SHA256 over ``timestamp + "." + body`` (or the bare body), base64 encoded."""
    message = f"{timestamp}.".encode("utf-8") + body if timestamp else body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")

def verify_signature(
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    secret: Optional[str],
) -> Optional[bool]:
    """
    Check a gateway callback signature.

    Returns True/False, or None when no secret is configured; whether an
    unverifiable callback may proceed is the caller's decision.
    """
    if not secret:
        return None
    if not signature:
        return False

    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    expected = sign_payload(body, secret, timestamp)
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))
