import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import GIB, resolve_bucket
from .errors import NotFoundError, PolicyError, UpstreamVerificationError, ValidationError
from .identity import tenant_prefix
from .models import File, FileStatus, Tenant
from .observability import ErrorRecord, EventSink, LoggingSink
from .schemas import BucketConfig
from .signing import presign_url
from .storage import ObjectProbe, ObjectState

logger = logging.getLogger(__name__)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def quota_bytes(quota_gb: int) -> int:
    return quota_gb * GIB

def run_inline(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)

@dataclass(frozen=True)
class LedgerLimits:
    max_upload_bytes: int = 5 * GIB
    url_ttl_seconds: int = 300
    head_url_ttl_seconds: int = 120
    delete_url_ttl_seconds: int = 60

@dataclass(frozen=True)
class UsageSnapshot:
    quota_gb: int
    used_bytes: int
    uploads_count: int
    downloads_count: int
    expires_at: datetime

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "UsageSnapshot":
        return cls(
            quota_gb=tenant.quota_gb,
            used_bytes=tenant.used_bytes,
            uploads_count=tenant.uploads_count,
            downloads_count=tenant.downloads_count,
            expires_at=as_utc(tenant.subscription_expires_at),
        )

@dataclass(frozen=True)
class UploadTicket:
    file_id: str
    object_key: str
    upload_url: str
    expires_at: datetime
    required_headers: Dict[str, str]

@dataclass(frozen=True)
class Completion:
    file_id: str
    status: str
    size_bytes: Optional[int]
    usage: UsageSnapshot

@dataclass(frozen=True)
class DownloadTicket:
    download_url: str
    expires_at: datetime

def validate_size(size_bytes: Any) -> int:
    if isinstance(size_bytes, bool) or not isinstance(size_bytes, (int, float)):
        raise ValidationError("size_bytes must be a number")
    if not math.isfinite(size_bytes) or size_bytes <= 0:
        raise ValidationError("size_bytes must be positive")
    if size_bytes != int(size_bytes):
        raise ValidationError("size_bytes must be a whole number of bytes")
    return int(size_bytes)

def check_admission(
    tenant: Tenant,
    size_bytes: Any,
    *,
    max_upload_bytes: int,
    now: datetime,
    released_bytes: int = 0,
) -> int:
    # released_bytes is the current size of a file being replaced
    size = validate_size(size_bytes)
    if size > max_upload_bytes:
        raise PolicyError("File too large for plan", reason="upload_too_large")
    if not now < as_utc(tenant.subscription_expires_at):
        raise PolicyError("Subscription expired", reason="subscription_expired")
    if tenant.used_bytes - released_bytes + size > quota_bytes(tenant.quota_gb):
        raise PolicyError("Quota exceeded", reason="quota_exceeded")
    return size

def object_key_for(identity: str, file_id: str, now: datetime) -> str:
    now = as_utc(now)
    return f"{tenant_prefix(identity)}/{now.year:04d}/{now.month:02d}/{file_id}"

def replacement_landed(file: File, state: ObjectState) -> bool:
    # the old object stays at the key until the new PUT lands
    if state.etag and file.etag and state.etag != file.etag:
        return True
    if state.last_modified is None or file.replace_requested_at is None:
        return False
    # Last-Modified has one-second resolution
    requested = as_utc(file.replace_requested_at).replace(microsecond=0)
    return as_utc(state.last_modified) >= requested

# tenant.used_bytes is kept equal to the sum of size_bytes over active files
class Ledger:
    def __init__(
        self,
        db: Session,
        buckets: Dict[str, BucketConfig],
        probe: ObjectProbe,
        *,
        limits: Optional[LedgerLimits] = None,
        sink: Optional[EventSink] = None,
        dispatch: Callable[..., None] = run_inline,
        clock: Callable[[], datetime] = utcnow,
        new_id: Callable[[], str] = lambda: str(uuid.uuid4()),
        request_id: Optional[str] = None,
    ):
        self.db = db
        self.buckets = buckets
        self.probe = probe
        self.limits = limits or LedgerLimits()
        self.sink = sink or LoggingSink()
        self.dispatch = dispatch
        self.clock = clock
        self.new_id = new_id
        self.request_id = request_id

    # lookups

    def usage(self, tenant: Tenant) -> UsageSnapshot:
        return UsageSnapshot.from_tenant(tenant)

    def _bucket(self, tenant: Tenant) -> BucketConfig:
        return resolve_bucket(self.buckets, tenant.shard_id)

    def _find_file(self, tenant: Tenant, file_id: str, status: Optional[FileStatus] = None) -> File:
        query = self.db.query(File).filter(
            File.file_id == file_id,
            File.tenant_identity == tenant.identity,
            File.deleted_at.is_(None),
        )
        if status is not None:
            query = query.filter(File.status == status.value)
        file = query.one_or_none()
        if file is None:
            raise NotFoundError(context={"file_id": file_id, "identity": tenant.identity})
        return file

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _report_drift(self, tenant: Tenant, file: File, delta: int) -> None:
        projected = tenant.used_bytes + delta
        if projected >= 0:
            return
        self.sink.record(
            ErrorRecord(
                kind="usage_drift",
                message="used_bytes would go negative, clamping at zero",
                request_id=self.request_id,
                context={
                    "identity": tenant.identity,
                    "file_id": file.file_id,
                    "used_bytes": tenant.used_bytes,
                    "delta": delta,
                    "shortfall": -projected,
                },
            )
        )

    # uploads

    def request_upload(self, tenant: Tenant, mime_type: str, size_bytes: Any) -> UploadTicket:
        if not mime_type:
            raise ValidationError("mime_type is required")
        now = self.clock()
        size = check_admission(tenant, size_bytes, max_upload_bytes=self.limits.max_upload_bytes, now=now)
        bucket = self._bucket(tenant)

        file_id = self.new_id()
        object_key = object_key_for(tenant.identity, file_id, now)
        headers = {"content-type": mime_type, "content-length": str(size)}
        ttl = self.limits.url_ttl_seconds
        upload_url = presign_url("PUT", bucket, object_key, ttl, headers=headers, now=now)

        # provisional size, not counted against the quota until completion
        self.db.add(
            File(
                file_id=file_id,
                tenant_identity=tenant.identity,
                object_key=object_key,
                size_bytes=size,
                mime_type=mime_type,
                status=FileStatus.PENDING.value,
                created_at=now,
            )
        )
        self._commit()
        logger.info("upload requested", extra={"identity": tenant.identity, "file_id": file_id, "size_bytes": size})

        return UploadTicket(
            file_id=file_id,
            object_key=object_key,
            upload_url=upload_url,
            expires_at=now + timedelta(seconds=ttl),
            required_headers=headers,
        )

    def _probe(self, bucket: BucketConfig, object_key: str, now: datetime):
        head_url = presign_url("HEAD", bucket, object_key, self.limits.head_url_ttl_seconds, now=now)
        return self.probe.head(head_url)

    def complete_upload(self, tenant: Tenant, file_id: str) -> Completion:
        file = self._find_file(tenant, file_id)
        if file.status == FileStatus.ACTIVE.value:
            self.db.refresh(tenant)
            return Completion(file.file_id, file.status, file.size_bytes, self.usage(tenant))

        bucket = self._bucket(tenant)
        now = self.clock()
        state = self._probe(bucket, file.object_key, now)

        values = {"status": FileStatus.ACTIVE.value, "size_bytes": state.size_bytes, "etag": state.etag}
        if state.content_type:
            values["mime_type"] = state.content_type
        result = self.db.execute(
            update(File)
            .where(File.file_id == file.file_id, File.status == FileStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # completed by a concurrent call
            self.db.rollback()
            return Completion(file.file_id, FileStatus.ACTIVE.value, file.size_bytes, self.usage(tenant))

        tenant.used_bytes = Tenant.used_bytes + state.size_bytes
        tenant.uploads_count = Tenant.uploads_count + 1
        tenant.last_activity_at = now
        self._commit()
        self.db.refresh(file)
        logger.info(
            "upload completed",
            extra={"identity": tenant.identity, "file_id": file.file_id, "size_bytes": state.size_bytes},
        )
        return Completion(file.file_id, file.status, file.size_bytes, self.usage(tenant))

    # replace

    def request_replace(self, tenant: Tenant, file_id: str, mime_type: str, size_bytes: Any) -> UploadTicket:
        if not mime_type:
            raise ValidationError("mime_type is required")
        validate_size(size_bytes)
        file = self._find_file(tenant, file_id, FileStatus.ACTIVE)
        now = self.clock()
        size = check_admission(
            tenant,
            size_bytes,
            max_upload_bytes=self.limits.max_upload_bytes,
            now=now,
            released_bytes=file.size_bytes or 0,
        )
        bucket = self._bucket(tenant)

        headers = {"content-type": mime_type, "content-length": str(size)}
        ttl = self.limits.url_ttl_seconds
        upload_url = presign_url("PUT", bucket, file.object_key, ttl, headers=headers, now=now)

        file.replace_requested_at = now
        self._commit()
        logger.info("replace requested", extra={"identity": tenant.identity, "file_id": file_id, "size_bytes": size})

        return UploadTicket(
            file_id=file.file_id,
            object_key=file.object_key,
            upload_url=upload_url,
            expires_at=now + timedelta(seconds=ttl),
            required_headers=headers,
        )

    def complete_replace(self, tenant: Tenant, file_id: str) -> Completion:
        file = self._find_file(tenant, file_id, FileStatus.ACTIVE)
        if file.replace_requested_at is None:
            self.db.refresh(tenant)
            return Completion(file.file_id, file.status, file.size_bytes, self.usage(tenant))

        bucket = self._bucket(tenant)
        now = self.clock()
        state = self._probe(bucket, file.object_key, now)

        if not replacement_landed(file, state):
            raise UpstreamVerificationError(
                "Replacement object not found",
                context={"file_id": file.file_id, "etag": state.etag},
            )

        delta = state.size_bytes - (file.size_bytes or 0)
        self._report_drift(tenant, file, delta)

        values = {"size_bytes": state.size_bytes, "etag": state.etag, "replace_requested_at": None}
        if state.content_type:
            values["mime_type"] = state.content_type
        result = self.db.execute(
            update(File)
            .where(File.file_id == file.file_id, File.replace_requested_at.is_not(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            return Completion(file.file_id, file.status, file.size_bytes, self.usage(tenant))

        tenant.used_bytes = case(
            (Tenant.used_bytes + delta > 0, Tenant.used_bytes + delta),
            else_=0,
        )
        tenant.uploads_count = Tenant.uploads_count + 1
        tenant.last_activity_at = now
        self._commit()
        self.db.refresh(file)
        logger.info(
            "replace completed",
            extra={"identity": tenant.identity, "file_id": file.file_id, "delta_bytes": delta},
        )
        return Completion(file.file_id, file.status, file.size_bytes, self.usage(tenant))

    # reads

    def list_files(self, tenant: Tenant) -> List[File]:
        return (
            self.db.query(File)
            .filter(
                File.tenant_identity == tenant.identity,
                File.deleted_at.is_(None),
                File.status == FileStatus.ACTIVE.value,
            )
            .order_by(File.created_at.desc())
            .all()
        )

    def request_download(self, tenant: Tenant, file_id: str) -> DownloadTicket:
        # downloads skip quota and subscription checks
        file = self._find_file(tenant, file_id, FileStatus.ACTIVE)
        bucket = self._bucket(tenant)
        now = self.clock()
        ttl = self.limits.url_ttl_seconds
        download_url = presign_url("GET", bucket, file.object_key, ttl, now=now)

        tenant.downloads_count = Tenant.downloads_count + 1
        tenant.last_activity_at = now
        self._commit()
        return DownloadTicket(download_url=download_url, expires_at=now + timedelta(seconds=ttl))

    # deletion

    def delete_file(self, tenant: Tenant, file_id: str) -> UsageSnapshot:
        file = self._find_file(tenant, file_id, FileStatus.ACTIVE)
        bucket = self._bucket(tenant)
        now = self.clock()
        size = file.size_bytes or 0
        self._report_drift(tenant, file, -size)

        result = self.db.execute(
            update(File)
            .where(File.file_id == file.file_id, File.deleted_at.is_(None))
            .values(status=FileStatus.DELETED.value, deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise NotFoundError(context={"file_id": file_id, "identity": tenant.identity})

        tenant.used_bytes = case(
            (Tenant.used_bytes > size, Tenant.used_bytes - size),
            else_=0,
        )
        tenant.last_activity_at = now
        self._commit()
        logger.info("file deleted", extra={"identity": tenant.identity, "file_id": file.file_id, "size_bytes": size})

        delete_url = presign_url("DELETE", bucket, file.object_key, self.limits.delete_url_ttl_seconds, now=now)
        self.dispatch(self._purge, delete_url, file.object_key)
        return self.usage(tenant)

    def _purge(self, delete_url: str, object_key: str) -> None:
        try:
            self.probe.delete(delete_url)
        except Exception as exc:
            # never surfaced, the tenant already stopped being billed
            self.sink.record(
                ErrorRecord(
                    kind="purge_failed",
                    message=f"background delete failed: {type(exc).__name__}",
                    request_id=self.request_id,
                    context={"object_key": object_key},
                )
            )
