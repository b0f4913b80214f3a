import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from .config import Settings, get_settings, require_session_secret
from .db import get_db
from .errors import AuthenticationError, ValidationError
from .identity import parse_identity
from .ledger import UsageSnapshot, as_utc
from .models import Tenant
from .tokens import SessionPayload, sign_token, verify_token

@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_in_seconds: int
    usage: UsageSnapshot
    subscription_active: bool

def authenticate(db: Session, raw_identity: str, settings: Settings, now: Optional[int] = None) -> LoginResult:
    secret = require_session_secret(settings)
    identity = parse_identity(raw_identity or "")
    if identity is None:
        raise ValidationError("Invalid identity format")

    tenant = db.get(Tenant, identity)
    if tenant is None:
        raise AuthenticationError(context={"reason": "unknown identity"})

    issued_at = int(time.time()) if now is None else now
    ttl = settings.token_ttl_seconds
    token = sign_token(SessionPayload(identity=identity, iat=issued_at, exp=issued_at + ttl), secret)
    # login stays available after the subscription lapses
    active = issued_at < as_utc(tenant.subscription_expires_at).timestamp()
    return LoginResult(
        token=token,
        expires_in_seconds=ttl,
        usage=UsageSnapshot.from_tenant(tenant),
        subscription_active=active,
    )

def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()

def current_tenant(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Tenant:
    secret = require_session_secret(settings)
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationError(context={"reason": "missing token"})

    payload = verify_token(token, secret)
    if payload is None:
        raise AuthenticationError(context={"reason": "invalid token"})

    tenant = db.get(Tenant, payload.identity)
    if tenant is None:
        raise AuthenticationError(context={"reason": "unknown identity"})
    return tenant
