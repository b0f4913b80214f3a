import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlsplit

from .errors import ConfigurationError
from .schemas import BucketConfig

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SERVICE = "s3"
METHODS = frozenset({"PUT", "GET", "HEAD", "DELETE"})

_DEFAULT_PORTS = {"http": 80, "https": 443}

def uri_encode(value: str) -> str:
    # quote() keeps only A-Z a-z 0-9 - _ . ~ when safe is empty, which is the
    # RFC 3986 unreserved set SigV4 expects, so !'()* are escaped too
    return quote(value, safe="")

def encode_object_key(object_key: str) -> str:
    return "/".join(uri_encode(segment) for segment in object_key.split("/"))

def parse_endpoint(endpoint: str) -> Tuple[str, str]:
    # default ports are dropped, https://s3.example:443 signs as s3.example
    try:
        parts = urlsplit(endpoint)
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError("bucket endpoint is not a valid URL", context={"endpoint": endpoint}) from exc
    if parts.scheme not in _DEFAULT_PORTS or not parts.hostname:
        raise ConfigurationError("bucket endpoint is not a valid URL", context={"endpoint": endpoint})

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != _DEFAULT_PORTS[parts.scheme]:
        host = f"{host}:{port}"
    return parts.scheme, host

def format_amz_date(now: datetime) -> Tuple[str, str]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%SZ"), now.strftime("%Y%m%d")

def canonicalize_headers(headers: Mapping[str, str]) -> Tuple[str, str]:
    normalized = sorted(
        (key.strip().lower(), " ".join(str(value).split()))
        for key, value in headers.items()
    )
    canonical = "".join(f"{key}:{value}\n" for key, value in normalized)
    signed_headers = ";".join(key for key, _ in normalized)
    return canonical, signed_headers

def canonical_query_string(params: Mapping[str, str]) -> str:
    return "&".join(
        f"{uri_encode(key)}={uri_encode(value)}" for key, value in sorted(params.items())
    )

def build_canonical_request(
    method: str,
    canonical_uri: str,
    canonical_query: str,
    canonical_headers: str,
    signed_headers: str,
) -> str:
    return "\n".join(
        [method, canonical_uri, canonical_query, canonical_headers, signed_headers, UNSIGNED_PAYLOAD]
    )

def build_string_to_sign(amz_date: str, credential_scope: str, canonical_request: str) -> str:
    hashed = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return "\n".join([ALGORITHM, amz_date, credential_scope, hashed])

def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()

def derive_signing_key(secret_key: str, date_stamp: str, region: str, service: str = SERVICE) -> bytes:
    k_date = _hmac(f"AWS4{secret_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")

def sign(signing_key: bytes, string_to_sign: str) -> str:
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

def presign_url(
    method: str,
    bucket: BucketConfig,
    object_key: str,
    expires_in: int,
    headers: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None,
) -> str:
    # every header passed in is signed, host always comes from the endpoint
    method = method.upper()
    if method not in METHODS:
        raise ValueError(f"unsupported method for presigning: {method}")

    scheme, host = parse_endpoint(bucket.endpoint)
    now = now or datetime.now(timezone.utc)
    amz_date, date_stamp = format_amz_date(now)
    credential_scope = f"{date_stamp}/{bucket.region}/{SERVICE}/aws4_request"
    canonical_uri = f"/{uri_encode(bucket.bucket_name)}/{encode_object_key(object_key)}"

    all_headers: Dict[str, str] = {
        key: value for key, value in (headers or {}).items() if key.strip().lower() != "host"
    }
    all_headers["host"] = host
    canonical_headers, signed_headers = canonicalize_headers(all_headers)

    params = {
        "X-Amz-Algorithm": ALGORITHM,
        "X-Amz-Credential": f"{bucket.access_key}/{credential_scope}",
        "X-Amz-Date": amz_date,
        "X-Amz-Expires": str(int(expires_in)),
        "X-Amz-SignedHeaders": signed_headers,
    }
    canonical_query = canonical_query_string(params)

    canonical_request = build_canonical_request(
        method, canonical_uri, canonical_query, canonical_headers, signed_headers
    )
    string_to_sign = build_string_to_sign(amz_date, credential_scope, canonical_request)
    signature = sign(derive_signing_key(bucket.secret_key, date_stamp, bucket.region), string_to_sign)

    return f"{scheme}://{host}{canonical_uri}?{canonical_query}&X-Amz-Signature={signature}"
