import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

TOKEN_VERSION = "v1"

@dataclass(frozen=True)
class SessionPayload:
    identity: str
    iat: int
    exp: int

def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)

def _signature(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("utf-8"), hashlib.sha256).digest()
    return _b64encode(digest)

def sign_token(payload: SessionPayload, secret: str) -> str:
    body = json.dumps(
        {"identity": payload.identity, "iat": payload.iat, "exp": payload.exp},
        separators=(",", ":"),
    )
    signing_input = f"{TOKEN_VERSION}.{_b64encode(body.encode('utf-8'))}"
    return f"{signing_input}.{_signature(signing_input, secret)}"

def verify_token(token: str, secret: str, *, now: Optional[int] = None) -> Optional[SessionPayload]:
    # no revocation list, a token is good until exp or until the secret rotates
    parts = token.split(".")
    if len(parts) != 3:
        return None
    version, payload_part, signature_part = parts
    if version != TOKEN_VERSION or not payload_part or not signature_part:
        return None

    expected = _signature(f"{version}.{payload_part}", secret)
    # compare the encoded forms so every character of the signature counts
    if not hmac.compare_digest(expected.encode("ascii"), signature_part.encode("utf-8")):
        return None

    try:
        data = json.loads(_b64decode(payload_part).decode("utf-8"))
        payload = SessionPayload(identity=data["identity"], iat=int(data["iat"]), exp=int(data["exp"]))
    except (ValueError, TypeError, KeyError):
        return None
    if not isinstance(payload.identity, str):
        return None

    current = int(time.time()) if now is None else now
    if payload.exp <= current:
        return None
    return payload
