"""Bearer JWTs identifying marketplace users; `sub` is the opaque user id."""
import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"
REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub"]

def mint_user_jwt(user_id: str, extra_claims: Optional[Dict] = None) -> str:
    issued = int(time.time())
    claims = dict(extra_claims or {})
    claims.update(iss=settings.jwt_issuer, sub=user_id, iat=issued, exp=issued + settings.jwt_ttl_seconds)
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str) -> Dict:
    return jwt.decode(token, settings.jwt_secret, algorithms=[ALGO], issuer=settings.jwt_issuer,
                      options={"require": REQUIRED_CLAIMS})

def user_id_from_bearer(authorization: Optional[str]) -> str:
    """Raises jwt.InvalidTokenError, or ValueError for a malformed header."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise ValueError("missing bearer token")
    return str(verify_token(token)["sub"])
