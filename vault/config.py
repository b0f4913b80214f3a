import json
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .schemas import BucketConfig
from .signing import parse_endpoint

GIB = 1024 * 1024 * 1024

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite:///./vault.db"
    session_secret: str = Field(default="", repr=False)
    bucket_configs_json: str = Field(default="", repr=False)
    token_ttl_seconds: int = 86_400
    url_ttl_seconds: int = 300
    head_url_ttl_seconds: int = 120
    delete_url_ttl_seconds: int = 60
    max_upload_bytes: int = 5 * GIB
    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 60
    object_store_timeout_seconds: float = 10.0
    # header set by a trusted reverse proxy, e.g. cf-connecting-ip; empty means use the peer address
    trusted_proxy_header: str = ""

@lru_cache
def get_settings() -> Settings:
    return Settings()

def require_session_secret(settings: Settings) -> str:
    if not settings.session_secret:
        raise ConfigurationError("SESSION_SECRET is not set")
    return settings.session_secret

def parse_bucket_configs(raw: str) -> Dict[str, BucketConfig]:
    # shape only, per-shard problems surface in resolve_bucket
    if not raw:
        raise ConfigurationError("BUCKET_CONFIGS_JSON is not set")
    try:
        entries = json.loads(raw)
    except ValueError as exc:
        raise ConfigurationError("BUCKET_CONFIGS_JSON is not valid JSON") from exc
    if not isinstance(entries, list):
        raise ConfigurationError("BUCKET_CONFIGS_JSON must be a JSON list")

    buckets: Dict[str, BucketConfig] = {}
    for index, entry in enumerate(entries):
        try:
            bucket = BucketConfig.model_validate(entry)
        except PydanticValidationError as exc:
            raise ConfigurationError(
                "BUCKET_CONFIGS_JSON has a malformed entry", context={"index": index}
            ) from exc
        buckets[bucket.id] = bucket
    return buckets

def validate_bucket_config(bucket: BucketConfig) -> Optional[str]:
    if not bucket.endpoint:
        return "bucket endpoint is missing"
    if not bucket.bucket_name:
        return "bucket name is missing"
    if not bucket.region:
        return "bucket region is missing"
    if not bucket.access_key:
        return "bucket access key is missing"
    if not bucket.secret_key:
        return "bucket secret key is missing"
    try:
        parse_endpoint(bucket.endpoint)
    except ConfigurationError:
        return "bucket endpoint is not a valid URL"
    return None

def resolve_bucket(buckets: Dict[str, BucketConfig], shard_id: str) -> BucketConfig:
    bucket = buckets.get(shard_id)
    if bucket is None:
        raise ConfigurationError("tenant shard has no bucket configuration", context={"shard_id": shard_id})
    issue = validate_bucket_config(bucket)
    if issue:
        raise ConfigurationError(
            f"invalid bucket configuration: {issue}",
            context={"shard_id": shard_id, "issue": issue},
        )
    return bucket
