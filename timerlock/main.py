"""
Timer commitment backend.

Endpoints:
    POST /timers/{device_id}                      Create a timer commitment
    GET  /timers/limits                           Policy limits for the user's tier
    GET  /timers/history                          Paginated commitment history
    GET  /timers/{device_id}                      Active commitment for a device
    POST /timers/{device_id}/emergency-cancel     Request an emergency cancellation (manual review)
    POST /admin/timers/{commitment_id}/terminate  Manual / emergency termination
    GET  /admin/timers/{commitment_id}/audit      Audit trail for a commitment
    GET  /admin/timer-stats                       Sweeper statistics

Run with:
    uvicorn timerlock.main:app
"""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .collaborators import (
    DeviceRegistry,
    InMemoryDevices,
    InMemorySubscriptions,
    InMemoryUsers,
    SubscriptionDirectory,
    UserDirectory,
)
from .config import AppConfig, load_config
from .database import init_db, make_engine, make_session_factory
from .errors import (
    CommitmentError,
    CommitmentNotFound,
    ConfirmationRequired,
    DeviceNotEnrolled,
    DeviceNotFound,
    DuplicateActiveCommitment,
    PolicyViolation,
    ProviderFailure,
    SubscriptionRequired,
    Unauthorized,
    ValidationFailed,
)
from .models import AdminAuthorization, CreateCommitmentRequest, EmergencyCancelRequest, TerminateRequest
from .notifier import Notifier, SmtpNotifier
from .orchestrator import CommitmentOrchestrator
from .provider import JamfNowGateway, ProviderGateway
from .store import CommitmentStore
from .sweeper import ExpirySweeper, IntervalTrigger, PeriodicTrigger

# ── Structured logging ─────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("timerlock-backend")

# ── Error envelope ─────────────────────────────────────────────────────

ERROR_STATUS: dict[type[CommitmentError], int] = {
    ValidationFailed: 400,
    ConfirmationRequired: 400,
    PolicyViolation: 400,
    DeviceNotEnrolled: 400,
    SubscriptionRequired: 403,
    Unauthorized: 403,
    DeviceNotFound: 404,
    CommitmentNotFound: 404,
    DuplicateActiveCommitment: 409,
}


def _status_for(exc: CommitmentError) -> int:
    if isinstance(exc, ProviderFailure):
        return 503 if exc.retryable else 409 if exc.action == "re_enroll_device" else 502
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def create_app(
    config: Optional[AppConfig] = None,
    *,
    provider: Optional[ProviderGateway] = None,
    notifier: Optional[Notifier] = None,
    subscriptions: Optional[SubscriptionDirectory] = None,
    devices: Optional[DeviceRegistry] = None,
    users: Optional[UserDirectory] = None,
    trigger: Optional[PeriodicTrigger] = None,
) -> FastAPI:
    config = config or load_config()
    logging.getLogger().setLevel(config.log_level.upper())

    engine = make_engine(config.database.url, echo=config.database.echo)
    store = CommitmentStore(make_session_factory(engine))
    provider = provider or JamfNowGateway(config.provider)
    notifier = notifier or SmtpNotifier(config.notifier)
    devices = devices if devices is not None else InMemoryDevices()
    users = users if users is not None else InMemoryUsers()
    subscriptions = subscriptions if subscriptions is not None else InMemorySubscriptions()

    orchestrator = CommitmentOrchestrator(
        store, provider, notifier, subscriptions, devices, users,
        provider_timeout=config.provider.timeout_seconds,
        notifier_timeout=config.notifier.timeout_seconds,
        deploy_timeout=config.provider.deploy_deadline_seconds,
    )
    sweeper = ExpirySweeper(
        store, provider, notifier, devices, users,
        warning_window=timedelta(hours=config.sweep.warning_window_hours),
        pending_grace=timedelta(seconds=config.sweep.pending_grace_seconds),
        provider_timeout=config.provider.timeout_seconds,
        notifier_timeout=config.notifier.timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        logger.info(f"STARTUP | database={engine.url.render_as_string(hide_password=True)}")
        if config.run_sweeper:
            sweeper.start(trigger or IntervalTrigger(
                interval=config.sweep.interval_seconds,
                initial_delay=config.sweep.startup_delay_seconds,
            ))
        try:
            yield
        finally:
            sweeper.stop()
            engine.dispose()

    app = FastAPI(title="Timer Commitment Backend", version="0.3.0", lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.sweeper = sweeper
    _register(app)
    return app


# ── Dependencies ───────────────────────────────────────────────────────

def get_orchestrator(request: Request) -> CommitmentOrchestrator:
    return request.app.state.orchestrator


def get_sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper


def verify_admin_key(request: Request, x_admin_key: Optional[str] = Header(None)) -> bool:
    """Admin endpoints are disabled unless TIMERLOCK_ADMIN_API_KEY is set."""
    expected = request.app.state.config.admin.api_key
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"ADMIN | rejected key path={request.url.path} ip={client_ip}")
        raise Unauthorized("Invalid admin key")
    return True


# ── Endpoints ──────────────────────────────────────────────────────────

def _register(app: FastAPI) -> None:

    @app.exception_handler(CommitmentError)
    async def commitment_error_handler(request: Request, exc: CommitmentError):
        status = _status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log(f"ERROR | path={request.url.path} kind={exc.kind} status={status} msg={exc.message}")
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": exc.message, "kind": exc.kind, **exc.details},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation failed",
                "kind": ValidationFailed.kind,
                "details": jsonable_errors(exc),
            },
        )

    @app.post("/timers/{device_id}")
    def create_commitment(
        device_id: str,
        payload: CreateCommitmentRequest,
        request: Request,
        orchestrator: CommitmentOrchestrator = Depends(get_orchestrator),
    ):
        """Lock a device for ``commitment_days`` days."""
        client_ip = request.client.host if request.client else "unknown"
        logger.info(
            f"CREATE | request user={payload.user_id} device={device_id} "
            f"days={payload.commitment_days} ip={client_ip}"
        )
        commitment = orchestrator.create(
            device_id, payload.user_id, payload.commitment_days, payload.confirm_understanding
        )
        return {
            "success": True,
            "timer": commitment.model_dump(mode="json"),
            "message": (
                f"Timer commitment activated for {commitment.commitment_days} days. Your device is "
                f"now locked until {commitment.commitment_end:%Y-%m-%d}."
            ),
        }

    @app.get("/timers/limits")
    def get_limits(user_id: str, orchestrator: CommitmentOrchestrator = Depends(get_orchestrator)):
        return {"success": True, "limits": orchestrator.get_limits(user_id)}

    @app.get("/timers/history")
    def get_history(
        user_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        orchestrator: CommitmentOrchestrator = Depends(get_orchestrator),
    ):
        return {"success": True, **orchestrator.history(user_id, page=page, limit=limit)}

    @app.get("/timers/{device_id}")
    def get_active_commitment(
        device_id: str, user_id: str, orchestrator: CommitmentOrchestrator = Depends(get_orchestrator)
    ):
        view = orchestrator.get_active(device_id, user_id)
        if view is None:
            return {"success": True, "timer": None}
        return {
            "success": True,
            "timer": {
                **view.commitment.model_dump(mode="json"),
                "seconds_remaining": view.seconds_remaining,
                "is_active": view.is_active,
                "provider_status": view.provider_status.model_dump(mode="json") if view.provider_status else None,
            },
        }

    @app.post("/timers/{device_id}/emergency-cancel", status_code=202)
    def request_emergency_cancel(
        device_id: str,
        payload: EmergencyCancelRequest,
        request: Request,
        orchestrator: CommitmentOrchestrator = Depends(get_orchestrator),
    ):
        """File an emergency cancellation for manual review. The timer keeps running."""
        ticket = orchestrator.request_emergency_cancel(
            device_id,
            payload.user_id,
            payload.reason,
            payload.confirm_emergency,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        return {
            "success": True,
            "status": "pending_review",
            "ticket_id": ticket.ticket_id,
            "support_email": request.app.state.config.admin.support_email,
            "message": "Emergency cancellation requests require manual review. Support has been notified.",
        }

    @app.post("/admin/timers/{commitment_id}/terminate")
    def terminate_commitment(
        commitment_id: str,
        payload: TerminateRequest,
        orchestrator: CommitmentOrchestrator = Depends(get_orchestrator),
        verified: bool = Depends(verify_admin_key),
    ):
        """Emergency termination. Status advances even if profile removal fails."""
        result = orchestrator.manual_terminate(
            commitment_id,
            AdminAuthorization(actor=payload.actor, reason=payload.reason, admin_key_verified=verified),
        )
        return {
            "success": True,
            "timer": result.commitment.model_dump(mode="json"),
            "removal_failed": result.removal_failed,
            "notified": result.notified,
        }

    @app.get("/admin/timers/{commitment_id}/audit")
    def get_audit(
        commitment_id: str,
        orchestrator: CommitmentOrchestrator = Depends(get_orchestrator),
        _: bool = Depends(verify_admin_key),
    ):
        """Return the full audit trail for a commitment."""
        records = [r.model_dump(mode="json") for r in orchestrator.audit_trail(commitment_id)]
        return {"success": True, "commitment_id": commitment_id, "records": records, "count": len(records)}

    @app.get("/admin/timer-stats")
    def timer_stats(sweeper: ExpirySweeper = Depends(get_sweeper), _: bool = Depends(verify_admin_key)):
        stats = sweeper.get_stats()
        logger.info(f"STATS | success={stats['success']}")
        if not stats["success"]:
            return JSONResponse(status_code=500, content={"success": False, "error": "Failed to get timer statistics"})
        return stats


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


app = create_app()
