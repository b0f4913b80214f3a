import uuid
from functools import lru_cache

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.orm import Session

from .auth import authenticate, current_tenant
from .config import Settings, get_settings, parse_bucket_configs
from .db import get_db, init_db
from .errors import RateLimitError, VaultError
from .handlers import internal_error_response, validation_exception_handler, vault_exception_handler
from .ledger import Completion, Ledger, LedgerLimits, UsageSnapshot
from .models import Tenant
from .ratelimit import FixedWindowRateLimiter, RateLimiter
from .schemas import (
    CompleteUploadRequest,
    CompletionOut,
    DeleteOut,
    DownloadOut,
    FileListOut,
    FileOut,
    LoginOut,
    LoginRequest,
    UploadRequest,
    UploadTicketOut,
)
from .storage import HttpObjectStore, ObjectProbe

app = FastAPI(title="vault")
app.add_exception_handler(VaultError, vault_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception as exc:
        response = internal_error_response(request, exc)
    response.headers["x-request-id"] = request_id
    return response

@app.on_event("startup")
def startup():
    init_db()

@app.get("/health")
def health():
    return {"status": "ok"}

@lru_cache
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return FixedWindowRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_ms / 1000,
    )

def client_address(request: Request, settings: Settings) -> str:
    # forwarding headers are client supplied unless a proxy in front sets them
    if settings.trusted_proxy_header:
        forwarded = request.headers.get(settings.trusted_proxy_header)
        if forwarded:
            return forwarded.strip()
    return request.client.host if request.client else "unknown"

def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
) -> None:
    if not limiter.check(client_address(request, settings)):
        raise RateLimitError()

def get_probe(settings: Settings = Depends(get_settings)) -> ObjectProbe:
    return HttpObjectStore(timeout=settings.object_store_timeout_seconds)

def get_ledger(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    probe: ObjectProbe = Depends(get_probe),
) -> Ledger:
    return Ledger(
        db,
        parse_bucket_configs(settings.bucket_configs_json),
        probe,
        limits=LedgerLimits(
            max_upload_bytes=settings.max_upload_bytes,
            url_ttl_seconds=settings.url_ttl_seconds,
            head_url_ttl_seconds=settings.head_url_ttl_seconds,
            delete_url_ttl_seconds=settings.delete_url_ttl_seconds,
        ),
        dispatch=background_tasks.add_task,
        request_id=getattr(request.state, "request_id", None),
    )

def _usage(usage: UsageSnapshot) -> dict:
    return {
        "quota_gb": usage.quota_gb,
        "used_bytes": usage.used_bytes,
        "uploads_count": usage.uploads_count,
        "downloads_count": usage.downloads_count,
        "expires_at": usage.expires_at,
    }

def _completion(result: Completion) -> CompletionOut:
    return CompletionOut(
        file_id=result.file_id,
        status=result.status,
        size_bytes=result.size_bytes,
        **_usage(result.usage),
    )

router = APIRouter(dependencies=[Depends(enforce_rate_limit)])

@router.post("/auth/login", response_model=LoginOut)
def login(payload: LoginRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    result = authenticate(db, payload.identity, settings)
    return LoginOut(
        token=result.token,
        expires_in_seconds=result.expires_in_seconds,
        subscription_active=result.subscription_active,
        **_usage(result.usage),
    )

@router.post("/uploads/request", response_model=UploadTicketOut)
def request_upload(
    payload: UploadRequest,
    tenant: Tenant = Depends(current_tenant),
    ledger: Ledger = Depends(get_ledger),
):
    ticket = ledger.request_upload(tenant, payload.mime_type, payload.size_bytes)
    return UploadTicketOut(**ticket.__dict__)

@router.post("/uploads/complete", response_model=CompletionOut)
def complete_upload(
    payload: CompleteUploadRequest,
    tenant: Tenant = Depends(current_tenant),
    ledger: Ledger = Depends(get_ledger),
):
    return _completion(ledger.complete_upload(tenant, payload.file_id))

@router.get("/files", response_model=FileListOut)
def list_files(tenant: Tenant = Depends(current_tenant), ledger: Ledger = Depends(get_ledger)):
    return FileListOut(files=[FileOut.model_validate(f) for f in ledger.list_files(tenant)])

@router.get("/files/{file_id}/download", response_model=DownloadOut)
def request_download(file_id: str, tenant: Tenant = Depends(current_tenant), ledger: Ledger = Depends(get_ledger)):
    ticket = ledger.request_download(tenant, file_id)
    return DownloadOut(download_url=ticket.download_url, expires_at=ticket.expires_at)

@router.post("/files/{file_id}/replace", response_model=UploadTicketOut)
def request_replace(
    file_id: str,
    payload: UploadRequest,
    tenant: Tenant = Depends(current_tenant),
    ledger: Ledger = Depends(get_ledger),
):
    ticket = ledger.request_replace(tenant, file_id, payload.mime_type, payload.size_bytes)
    return UploadTicketOut(**ticket.__dict__)

@router.post("/files/{file_id}/replace/complete", response_model=CompletionOut)
def complete_replace(file_id: str, tenant: Tenant = Depends(current_tenant), ledger: Ledger = Depends(get_ledger)):
    return _completion(ledger.complete_replace(tenant, file_id))

@router.delete("/files/{file_id}", response_model=DeleteOut)
def delete_file(file_id: str, tenant: Tenant = Depends(current_tenant), ledger: Ledger = Depends(get_ledger)):
    usage = ledger.delete_file(tenant, file_id)
    return DeleteOut(deleted=True, **_usage(usage))

app.include_router(router)
