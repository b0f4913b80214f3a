import argparse
import json
import logging
import mimetypes
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
from sqlalchemy.orm import Session

from .db import get_session_factory, init_db
from .identity import parse_identity
from .models import Tenant

logger = logging.getLogger(__name__)

DEMO_MAX_BYTES = 100 * 1024 * 1024
DEMO_MIME_TYPES = ("text/plain", "image/jpeg", "image/png", "application/pdf")

class DemoError(Exception):
    pass

def create_tenant(db: Session, raw_identity: str, shard_id: str, quota_gb: int, days: int) -> Tenant:
    identity = parse_identity(raw_identity)
    if identity is None:
        raise DemoError(f"not a 16-digit identity: {raw_identity!r}")
    if db.get(Tenant, identity) is not None:
        raise DemoError(f"tenant {identity} already exists")

    now = datetime.now(timezone.utc)
    tenant = Tenant(
        identity=identity,
        shard_id=shard_id,
        quota_gb=quota_gb,
        used_bytes=0,
        uploads_count=0,
        downloads_count=0,
        subscription_expires_at=now + timedelta(days=days),
        created_at=now,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant

def check_demo_file(path: Path):
    if not path.is_file():
        raise DemoError(f"file not found: {path}")
    size = path.stat().st_size
    if size <= 0:
        raise DemoError("empty file is not allowed")
    if size > DEMO_MAX_BYTES:
        raise DemoError(f"file too large for demo ({size} bytes > {DEMO_MAX_BYTES} bytes)")
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    if mime_type not in DEMO_MIME_TYPES:
        raise DemoError(f"unsupported MIME type for demo: {mime_type} (allowed: {', '.join(DEMO_MIME_TYPES)})")
    return size, mime_type

def _json(resp: httpx.Response) -> dict:
    if resp.is_error:
        raise DemoError(f"{resp.request.method} {resp.request.url.path} failed: {resp.status_code} {resp.text}")
    return resp.json()

def demo_upload(api: httpx.Client, storage: httpx.Client, raw_identity: str, path: Path) -> dict:
    size, mime_type = check_demo_file(path)

    logger.info("1) login")
    login = _json(api.post("/auth/login", json={"identity": raw_identity}))
    headers = {"authorization": f"Bearer {login['token']}"}

    logger.info("2) request upload url")
    ticket = _json(api.post("/uploads/request", json={"mime_type": mime_type, "size_bytes": size}, headers=headers))

    logger.info("3) PUT %s bytes to object store", size)
    put = storage.put(ticket["upload_url"], content=path.read_bytes(), headers=ticket["required_headers"])
    if put.is_error:
        raise DemoError(f"upload failed: {put.status_code} {put.text}")

    logger.info("4) complete upload")
    completion = _json(api.post("/uploads/complete", json={"file_id": ticket["file_id"]}, headers=headers))

    logger.info("5) list files")
    listing = _json(api.get("/files", headers=headers))
    return {"file_id": ticket["file_id"], "completion": completion, "files": listing["files"]}

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="vault", description="vault operator and demo commands")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables in DATABASE_URL")

    tenant = sub.add_parser("create-tenant", help="register a tenant")
    tenant.add_argument("identity")
    tenant.add_argument("--shard", required=True)
    tenant.add_argument("--quota-gb", type=int, required=True)
    tenant.add_argument("--days", type=int, default=365)

    demo = sub.add_parser("demo-upload", help="login, upload one file, list files")
    demo.add_argument("identity")
    demo.add_argument("file", type=Path)
    demo.add_argument("--api", default="http://127.0.0.1:8000")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "init-db":
            init_db()
            print("tables created")
        elif args.command == "create-tenant":
            init_db()
            db = get_session_factory()()
            try:
                created = create_tenant(db, args.identity, args.shard, args.quota_gb, args.days)
                print(f"identity={created.identity}")
                print(f"subscription_expires_at={created.subscription_expires_at.isoformat()}")
            finally:
                db.close()
        elif args.command == "demo-upload":
            with httpx.Client(base_url=args.api, timeout=30.0) as api, httpx.Client(timeout=300.0) as storage:
                result = demo_upload(api, storage, args.identity, args.file)
            print(json.dumps(result, indent=2))
    except DemoError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
