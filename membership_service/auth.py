from fastapi import Header, HTTPException
from jose import JWTError, jwt

from membership_service import config
from membership_service.errors import IdentityError
from membership_service.identity import IdentityStore
from membership_service.models import Identity


def bearer_token(authorization: str | None = Header(None)) -> str:
    try:
        scheme, token = (authorization or "").split()
    except ValueError:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return token


def verify_token(token: str, identities: IdentityStore) -> Identity:
    """Decode an HS256 access token and return the identity it was issued to."""
    secret = config.jwt_secret()
    if not secret:
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    identity_id = claims.get("sub")
    if not identity_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        identity = identities.get_identity(identity_id)
    except IdentityError:
        raise HTTPException(status_code=503, detail="Identity store unavailable")
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return identity