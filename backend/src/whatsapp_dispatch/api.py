from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .cron_auth import CronAuthorization, SOURCE_VERCEL_CRON, detect_source, verify_cron_request
from .dispatcher import DispatchService, JobClaimError
from .models import (
    DispatchResponse,
    JobEnqueueRequest,
    JobEnqueueResponse,
    MonitorResponse,
    StatusResponse,
)
from .monitor import build_monitor_snapshot
from .sender import StubWhatsAppSender, TwilioWhatsAppSender, WhatsAppSender, mask_phone
from .store import DispatchStore, NewJob, _now_utc
from .store_backends import create_dispatch_store

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/whatsapp", tags=["whatsapp"])


def _create_sender(settings: Settings) -> WhatsAppSender:
    if settings.whatsapp_sender_type == "twilio":
        return TwilioWhatsAppSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from,
        )
    return StubWhatsAppSender(enabled=settings.whatsapp_stub_enabled, from_number=settings.twilio_from or None)


def _create_service(settings: Settings, store: DispatchStore, sender: WhatsAppSender) -> DispatchService:
    return DispatchService(
        store=store,
        sender=sender,
        batch_size=settings.dispatch_batch_size,
        locker_prefix=settings.locker_prefix,
        max_attempts=settings.default_max_attempts,
    )


dispatch_store: DispatchStore = create_dispatch_store(
    backend=_settings.dispatch_store_backend,
    database_url=_settings.database_url,
)
whatsapp_sender: WhatsAppSender = _create_sender(_settings)
dispatch_service: DispatchService = _create_service(_settings, dispatch_store, whatsapp_sender)


def configure_runtime(
    settings: Settings | None = None,
    *,
    store: DispatchStore | None = None,
    sender: WhatsAppSender | None = None,
) -> None:
    global _settings, dispatch_store, whatsapp_sender, dispatch_service
    _settings = settings or get_settings()
    dispatch_store = store or create_dispatch_store(
        backend=_settings.dispatch_store_backend,
        database_url=_settings.database_url,
    )
    whatsapp_sender = sender or _create_sender(_settings)
    dispatch_service = _create_service(_settings, dispatch_store, whatsapp_sender)


def reset_runtime_state_for_tests() -> None:
    dispatch_store.reset()


def _unauthorized_response(auth: CronAuthorization) -> JSONResponse:
    if auth.misconfigured:
        logger.error("cron request rejected: CRON_SECRET is not configured")
        return JSONResponse(status_code=500, content={"error": "CRON_SECRET not configured"})
    logger.warning("cron request rejected: %s", auth.reason)
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


@router.api_route("/cron/dispatch", methods=["GET", "POST"], response_model=DispatchResponse)
def run_dispatch(request: Request):
    auth = verify_cron_request(settings=_settings, headers=request.headers)
    if not auth.authorized:
        return _unauthorized_response(auth)

    source = detect_source(request.headers)
    try:
        summary = dispatch_service.run_once(source=source)
    except JobClaimError as exc:
        return JSONResponse(status_code=500, content={"error": "Failed to pick jobs", "detail": exc.message})
    except Exception as exc:
        return JSONResponse(
            status_code=500,
            content={"error": "Dispatch failed", "detail": str(exc) or exc.__class__.__name__},
        )
    return DispatchResponse(**summary.as_response())


@router.post("/jobs", response_model=JobEnqueueResponse, status_code=status.HTTP_201_CREATED)
def enqueue_job(payload: JobEnqueueRequest, request: Request, response: Response):
    auth = verify_cron_request(settings=_settings, headers=request.headers)
    if not auth.authorized:
        return _unauthorized_response(auth)

    job = NewJob(
        tenant_id=payload.tenant_id,
        to=payload.to,
        template_key=payload.template_key,
        run_at=payload.run_at or _now_utc(),
        payload=payload.payload,
        max_attempts=payload.max_attempts or _settings.default_max_attempts,
        dedupe_key=payload.dedupe_key,
    )
    result = dispatch_store.insert_job(job)
    if not result.inserted:
        response.status_code = status.HTTP_200_OK
        return JobEnqueueResponse(accepted=False, deduped=True, job_id=result.job_id)

    logger.info("enqueued job tenant=%s to=%s template=%s", job.tenant_id, mask_phone(job.to), job.template_key)
    return JobEnqueueResponse(accepted=True, deduped=False, job_id=result.job_id)


@router.get("/status", response_model=StatusResponse)
def get_status():
    try:
        latest = dispatch_store.latest_dispatch_run(source=SOURCE_VERCEL_CRON)
    except Exception:
        logger.exception("failed to load latest cron run")
        return JSONResponse(status_code=500, content={"ok": False, "reason": "db_error", "env": _settings.app_env})

    if latest is None:
        return StatusResponse(ok=False, reason="no_cron_runs", env=_settings.app_env, now=_now_utc())
    return StatusResponse(
        ok=True,
        env=_settings.app_env,
        now=_now_utc(),
        last_cron_run_at=latest.ran_at,
        last_cron_error=latest.error,
        last_cron_duration_ms=latest.duration_ms,
    )


@router.get("/admin/monitor", response_model=MonitorResponse)
def get_monitor(token: str = "") -> MonitorResponse:
    expected = _settings.admin_monitor_token.strip()
    provided = token.strip()
    if not expected or not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=404, detail="not found")
    return build_monitor_snapshot(dispatch_store)
