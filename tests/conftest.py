from datetime import datetime, timedelta, timezone
from urllib.parse import unquote, urlsplit

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vault.errors import UpstreamVerificationError
from vault.ledger import Ledger
from vault.models import Base, File, FileStatus, Tenant
from vault.schemas import BucketConfig
from vault.storage import ObjectState

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)
IDENTITY = "3912607696116679"

BUCKET = BucketConfig(
    id="eu-1",
    bucket_name="vault-eu",
    endpoint="https://s3.example.com",
    region="eu-central-1",
    access_key="AKIDEXAMPLE",
    secret_key="wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY",
)


class FakeProbe:
    """In-memory object store addressed through presigned URLs."""

    def __init__(self):
        self.objects = {}
        self.head_calls = []
        self.deleted = []
        self.fail_delete = False
        self.puts = 0

    @staticmethod
    def key_of(url: str) -> str:
        path = unquote(urlsplit(url).path)
        _, _bucket, key = path.split("/", 2)
        return key

    def put(
        self,
        object_key: str,
        size: int,
        content_type: str = "application/octet-stream",
        *,
        etag=None,
        last_modified=None,
    ) -> None:
        self.puts += 1
        self.objects[object_key] = ObjectState(
            size_bytes=size,
            content_type=content_type,
            etag=etag or f"\"etag-{self.puts}\"",
            last_modified=last_modified,
        )

    def head(self, url: str) -> ObjectState:
        self.head_calls.append(url)
        key = self.key_of(url)
        if key not in self.objects:
            raise UpstreamVerificationError("Unable to verify upload: 404")
        return self.objects[key]

    def delete(self, url: str) -> None:
        if self.fail_delete:
            raise ConnectionError("object store unreachable")
        key = self.key_of(url)
        self.deleted.append(key)
        self.objects.pop(key, None)


class RecordingSink:
    def __init__(self):
        self.records = []

    def record(self, record) -> None:
        self.records.append(record)

    def kinds(self):
        return [r.kind for r in self.records]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_tenant(db):
    def _make(
        identity: str = IDENTITY,
        *,
        quota_gb: int = 1,
        used_bytes: int = 0,
        expires_at: datetime = NOW + timedelta(days=30),
        shard_id: str = "eu-1",
    ) -> Tenant:
        tenant = Tenant(
            identity=identity,
            shard_id=shard_id,
            quota_gb=quota_gb,
            used_bytes=used_bytes,
            uploads_count=0,
            downloads_count=0,
            subscription_expires_at=expires_at,
            created_at=NOW,
        )
        db.add(tenant)
        db.commit()
        return tenant

    return _make


@pytest.fixture
def make_active_file(db):
    def _make(tenant: Tenant, file_id: str, size_bytes: int, created_at: datetime = NOW) -> File:
        file = File(
            file_id=file_id,
            tenant_identity=tenant.identity,
            object_key=f"_{tenant.identity}/2026/03/{file_id}",
            size_bytes=size_bytes,
            mime_type="text/plain",
            status=FileStatus.ACTIVE.value,
            etag=f"\"{file_id}-original\"",
            created_at=created_at,
        )
        db.add(file)
        db.commit()
        return file

    return _make


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def ledger(db, probe, sink):
    return Ledger(db, {"eu-1": BUCKET}, probe, sink=sink, clock=lambda: NOW)
