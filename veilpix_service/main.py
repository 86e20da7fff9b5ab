from __future__ import annotations

import base64
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .asset_store import URL_PREFIX, TemporaryAssetStore
from .datastore import DatastoreHandle, now_iso
from .errors import ConfigurationError, DatastoreError, GenerationError, RequestBuildError, SessionRequired
from .gemini_client import GeminiClient
from .job_client import KieJobClient
from .ledger import CreditLedger
from .models import (
    DEFAULT_RESOLUTION,
    Caller,
    GenerationIntent,
    GenerationKind,
    SourceImage,
)
from .orchestrator import GenerationOrchestrator, build_orchestrators
from .schemas import (
    AnonymousUsageResponse,
    CleanupSessionsResponse,
    CreditsResponse,
    ErrorResponse,
    GenerationResponse,
    GrantCreditsRequest,
    GrantCreditsResponse,
    ImagePayload,
    SessionUsage,
    SweepResponse,
    UsageStatsResponse,
    ValidateSessionRequest,
    ValidateSessionResponse,
)
from .settings import PROVIDERS, ServiceSettings, load_settings
from .transport import HttpTransport
from .usage_gate import UsageGate

logging.basicConfig(level=os.environ.get("VEILPIX_LOG_LEVEL", "INFO"))
logger = logging.getLogger("veilpix-service")
access_logger = logging.getLogger("veilpix-service.access")

REQUEST_ID_HEADER = "X-Request-ID"
USAGE_PERIODS = ("today", "week", "month")
DEFAULT_SESSION_RETENTION_DAYS = 7
GENERATION_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status: {"model": ErrorResponse} for status in (400, 401, 402, 404, 429, 500)
}


class Services(NamedTuple):
    settings: ServiceSettings
    datastore: DatastoreHandle
    gate: UsageGate
    ledger: CreditLedger
    asset_store: TemporaryAssetStore
    orchestrators: dict[tuple[GenerationKind, str], GenerationOrchestrator]


def build_services(
    settings: ServiceSettings,
    datastore: DatastoreHandle | None = None,
    transport: HttpTransport | None = None,
    gemini_client: GeminiClient | None = None,
    job_client: KieJobClient | None = None,
) -> Services:
    datastore = datastore or DatastoreHandle(settings.database_path, starting_credits=settings.starting_credits)
    transport = transport or HttpTransport(timeout_ms=settings.kie.http_timeout_ms)
    gemini_client = gemini_client or GeminiClient(settings.gemini)
    job_client = job_client or KieJobClient(settings.kie, transport=transport)
    gate = UsageGate(datastore, settings.anonymous_quota)
    ledger = CreditLedger(datastore)
    asset_store = TemporaryAssetStore(settings.temp_asset_dir, settings.public_base_url, datastore=datastore)
    orchestrators = build_orchestrators(settings, gate, ledger, asset_store, transport, gemini_client, job_client)
    return Services(
        settings=settings,
        datastore=datastore,
        gate=gate,
        ledger=ledger,
        asset_store=asset_store,
        orchestrators=orchestrators,
    )


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def resolve_caller(request: Request) -> Caller:
    """Identity as asserted by the upstream auth gateway."""
    user_id = (request.headers.get("x-user-id") or "").strip() or None
    email = (request.headers.get("x-user-email") or "").strip() or None
    session_id = (request.headers.get("x-session-id") or "").strip() or None
    return Caller(user_id=user_id, email=email, session_id=session_id, ip_address=client_ip(request))


def first_value(*values: Optional[str]) -> str:
    for value in values:
        if value is not None and value.strip():
            return value.strip()
    return ""


def parse_coordinate(raw: Optional[str], name: str) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(round(float(raw)))
    except ValueError:
        raise RequestBuildError(f"{name} must be a number.") from None


def read_source_image(upload: UploadFile, max_bytes: int) -> SourceImage:
    data = upload.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise RequestBuildError(f"Image '{upload.filename}' exceeds the {limit_mb}MB limit.")
    return SourceImage(
        data=data,
        mime_type=(upload.content_type or "").lower(),
        filename=upload.filename or "image",
    )


def error_body(error: str, message: str, details: str | None, development: bool) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error, "message": message}
    if development and details:
        body["details"] = details
    return body


def create_app(
    settings: ServiceSettings | None = None,
    *,
    datastore: DatastoreHandle | None = None,
    transport: HttpTransport | None = None,
    gemini_client: GeminiClient | None = None,
    job_client: KieJobClient | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    services = build_services(
        settings,
        datastore=datastore,
        transport=transport,
        gemini_client=gemini_client,
        job_client=job_client,
    )

    app = FastAPI(title="VeilPix Image Service", version=__version__)
    app.state.services = services
    app.mount(URL_PREFIX, StaticFiles(directory=str(settings.temp_asset_dir)), name="temp-assets")

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        response.headers[REQUEST_ID_HEADER] = request_id
        access_logger.info(
            "%s %s -> %s (%sms) [%s]",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id,
        )
        return response

    @app.exception_handler(GenerationError)
    async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
        body = error_body(exc.error_code, exc.public_message(), f"[{exc.stage}] {exc}", settings.development)
        body.update(exc.payload())
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(DatastoreError)
    async def datastore_error_handler(request: Request, exc: DatastoreError) -> JSONResponse:
        logger.error("Datastore failure on %s: %s", request.url.path, exc)
        body = error_body("Service unavailable", "Please try again in a moment.", str(exc), settings.development)
        return JSONResponse(status_code=500, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": message, "message": message},
            headers=getattr(exc, "headers", None),
        )

    def get_orchestrator(kind: GenerationKind, provider: str) -> GenerationOrchestrator:
        if provider not in PROVIDERS:
            raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")
        return services.orchestrators[(kind, provider)]

    def run_generation(
        request: Request,
        orchestrator: GenerationOrchestrator,
        intent: GenerationIntent,
    ) -> GenerationResponse:
        caller = resolve_caller(request)
        outcome = orchestrator.run(caller, intent)
        image = outcome.image
        return GenerationResponse(
            image=ImagePayload(data=base64.b64encode(image.data).decode("ascii"), mimeType=image.mime_type),
            processingTime=outcome.processing_time_ms,
            creditsRemaining=outcome.credits_remaining,
            creditsUsed=outcome.credits_used,
            usage=outcome.usage,
        )

    def single_image(upload: UploadFile | None, orchestrator: GenerationOrchestrator) -> tuple[SourceImage, ...]:
        if upload is None:
            raise RequestBuildError("An image file is required.")
        return (read_source_image(upload, orchestrator.provider.max_upload_bytes),)

    @app.get("/healthz")
    def healthz() -> dict:
        return {
            "ok": services.datastore.ping(),
            "version": __version__,
            "providers": {
                provider_id: {
                    "label": provider.label,
                    "credit_cost": provider.credit_cost,
                    "allow_anonymous": provider.allow_anonymous,
                    "max_combine_images": provider.max_combine_images,
                    "max_poll_attempts": provider.max_attempts,
                }
                for provider_id, provider in settings.providers.items()
            },
            "gemini_api_key_configured": bool(settings.gemini.api_key),
            "kie_api_key_configured": bool(settings.kie.api_key),
            "anonymous_quota": settings.anonymous_quota,
        }

    @app.post(
        "/api/{provider}/generate-edit",
        response_model=GenerationResponse,
        response_model_exclude_none=True,
        responses=GENERATION_ERROR_RESPONSES,
    )
    def generate_edit(
        request: Request,
        provider: str,
        image: Optional[UploadFile] = File(None),
        prompt: Optional[str] = Form(None),
        x: Optional[str] = Form(None),
        y: Optional[str] = Form(None),
        hotspotX: Optional[str] = Form(None),
        hotspotY: Optional[str] = Form(None),
        resolution: Optional[str] = Form(None),
        aspectRatio: Optional[str] = Form(None),
    ) -> GenerationResponse:
        orchestrator = get_orchestrator(GenerationKind.EDIT, provider)
        intent = GenerationIntent(
            kind=GenerationKind.EDIT,
            images=single_image(image, orchestrator),
            instruction=first_value(prompt),
            x=parse_coordinate(x if x is not None else hotspotX, "x"),
            y=parse_coordinate(y if y is not None else hotspotY, "y"),
            aspect_ratio=first_value(aspectRatio) or None,
            resolution=first_value(resolution) or DEFAULT_RESOLUTION,
        )
        return run_generation(request, orchestrator, intent)

    @app.post(
        "/api/{provider}/generate-filter",
        response_model=GenerationResponse,
        response_model_exclude_none=True,
        responses=GENERATION_ERROR_RESPONSES,
    )
    def generate_filter(
        request: Request,
        provider: str,
        image: Optional[UploadFile] = File(None),
        filterType: Optional[str] = Form(None),
        style: Optional[str] = Form(None),
        resolution: Optional[str] = Form(None),
        aspectRatio: Optional[str] = Form(None),
    ) -> GenerationResponse:
        orchestrator = get_orchestrator(GenerationKind.FILTER, provider)
        intent = GenerationIntent(
            kind=GenerationKind.FILTER,
            images=single_image(image, orchestrator),
            instruction=first_value(filterType, style),
            aspect_ratio=first_value(aspectRatio) or None,
            resolution=first_value(resolution) or DEFAULT_RESOLUTION,
        )
        return run_generation(request, orchestrator, intent)

    @app.post(
        "/api/{provider}/generate-adjust",
        response_model=GenerationResponse,
        response_model_exclude_none=True,
        responses=GENERATION_ERROR_RESPONSES,
    )
    def generate_adjust(
        request: Request,
        provider: str,
        image: Optional[UploadFile] = File(None),
        adjustment: Optional[str] = Form(None),
        resolution: Optional[str] = Form(None),
        aspectRatio: Optional[str] = Form(None),
    ) -> GenerationResponse:
        orchestrator = get_orchestrator(GenerationKind.ADJUST, provider)
        intent = GenerationIntent(
            kind=GenerationKind.ADJUST,
            images=single_image(image, orchestrator),
            instruction=first_value(adjustment),
            aspect_ratio=first_value(aspectRatio) or None,
            resolution=first_value(resolution) or DEFAULT_RESOLUTION,
        )
        return run_generation(request, orchestrator, intent)

    @app.post(
        "/api/{provider}/combine-photos",
        response_model=GenerationResponse,
        response_model_exclude_none=True,
        responses=GENERATION_ERROR_RESPONSES,
    )
    def combine_photos(
        request: Request,
        provider: str,
        images: Optional[list[UploadFile]] = File(None),
        prompt: Optional[str] = Form(None),
        style: Optional[str] = Form(None),
        resolution: Optional[str] = Form(None),
        aspectRatio: Optional[str] = Form(None),
    ) -> GenerationResponse:
        orchestrator = get_orchestrator(GenerationKind.COMBINE, provider)
        if not images:
            raise RequestBuildError("At least 2 images are required to combine.")
        if len(images) > orchestrator.provider.max_combine_images:
            raise RequestBuildError(
                f"{orchestrator.provider.label} can combine at most "
                f"{orchestrator.provider.max_combine_images} images, got {len(images)}."
            )
        intent = GenerationIntent(
            kind=GenerationKind.COMBINE,
            images=tuple(read_source_image(upload, orchestrator.provider.max_upload_bytes) for upload in images),
            instruction=first_value(prompt),
            style=first_value(style) or None,
            aspect_ratio=first_value(aspectRatio) or None,
            resolution=first_value(resolution) or DEFAULT_RESOLUTION,
        )
        return run_generation(request, orchestrator, intent)

    @app.get("/api/usage/anonymous", response_model=AnonymousUsageResponse)
    def anonymous_usage(request: Request) -> AnonymousUsageResponse:
        caller = resolve_caller(request)
        summary = services.gate.describe(Caller(session_id=caller.session_id, ip_address=caller.ip_address))
        return AnonymousUsageResponse(
            totalUsage=summary["totalUsage"],
            remainingFreeUsage=summary["remainingFreeUsage"],
        )

    @app.get("/api/usage/stats", response_model=UsageStatsResponse, response_model_exclude_none=True)
    def usage_stats(request: Request, period: str = "month") -> UsageStatsResponse:
        caller = resolve_caller(request)
        if not caller.is_authenticated:
            raise HTTPException(status_code=401, detail="Authentication required")
        if period not in USAGE_PERIODS:
            period = "month"
        now = datetime.now(timezone.utc)
        if period == "today":
            since = now.replace(hour=0, minute=0, second=0, microsecond=0)
        elif period == "week":
            since = now - timedelta(days=7)
        else:
            since = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        total = services.datastore.count_user_usage(caller.user_id, since.timestamp())
        return UsageStatsResponse(totalUsage=total, period=period)

    @app.get("/api/usage/credits", response_model=CreditsResponse)
    def usage_credits(request: Request) -> CreditsResponse:
        caller = resolve_caller(request)
        if not caller.is_authenticated:
            raise HTTPException(status_code=401, detail="Authentication required")
        summary = services.gate.describe(caller)
        return CreditsResponse(
            creditsRemaining=summary["creditsRemaining"],
            totalCreditsPurchased=summary["totalCreditsPurchased"],
            lastCreditPurchaseAt=summary["lastCreditPurchaseAt"],
        )

    @app.post("/api/usage/validate-session", response_model=ValidateSessionResponse)
    def validate_session(request: Request, payload: ValidateSessionRequest) -> ValidateSessionResponse:
        session_id = first_value(payload.sessionId)
        if not session_id:
            raise SessionRequired()
        ip_address = client_ip(request)
        row = services.datastore.get_anonymous_usage(session_id, ip_address)
        current = int(row["request_count"]) if row else 0
        limit = settings.anonymous_quota
        return ValidateSessionResponse(
            sessionId=session_id,
            isValid=current < limit,
            usage=SessionUsage(current=current, limit=limit, remaining=max(0, limit - current)),
            lastActivity=(row["updated_at"] or row["created_at"]) if row else None,
            ipAddress=(row["ip_address"] or None) if row else None,
        )

    def require_admin(token: str | None) -> None:
        if not settings.admin_token:
            raise HTTPException(status_code=403, detail="Admin operations are disabled")
        if token != settings.admin_token:
            raise HTTPException(status_code=403, detail="Invalid admin token")

    @app.delete("/api/usage/cleanup-sessions", response_model=CleanupSessionsResponse)
    def cleanup_sessions(
        olderThanDays: int = DEFAULT_SESSION_RETENTION_DAYS,
        x_admin_token: Optional[str] = Header(None),
    ) -> CleanupSessionsResponse:
        require_admin(x_admin_token)
        days = max(0, olderThanDays)
        cutoff_ts = time.time() - days * 86_400
        deleted = services.datastore.delete_anonymous_sessions_older_than(cutoff_ts)
        logger.info("Deleted %s anonymous session(s) idle for more than %s day(s)", deleted, days)
        return CleanupSessionsResponse(
            deletedCount=deleted,
            cutoffDate=now_iso(cutoff_ts),
            message=f"Successfully cleaned up {deleted} expired anonymous sessions",
        )

    @app.post("/api/credits/grant", response_model=GrantCreditsResponse)
    def grant_credits(
        payload: GrantCreditsRequest,
        x_admin_token: Optional[str] = Header(None),
    ) -> GrantCreditsResponse:
        require_admin(x_admin_token)
        services.datastore.get_or_create_user(payload.userId, payload.email)
        if not services.datastore.add_user_credits(payload.userId, payload.credits):
            raise HTTPException(status_code=404, detail=f"User '{payload.userId}' not found")
        remaining = services.datastore.get_user_credits(payload.userId)
        logger.info("Granted %s credit(s) to %s, balance %s", payload.credits, payload.userId, remaining)
        return GrantCreditsResponse(userId=payload.userId, creditsAdded=payload.credits, creditsRemaining=remaining)

    @app.post("/api/admin/sweep-temp-assets", response_model=SweepResponse)
    def sweep_temp_assets(
        dryRun: bool = False,
        x_admin_token: Optional[str] = Header(None),
    ) -> SweepResponse:
        require_admin(x_admin_token)
        keys = services.asset_store.sweep_expired(settings.temp_asset_horizon_seconds, dry_run=dryRun)
        return SweepResponse(dryRun=dryRun, deletedCount=0 if dryRun else len(keys), keys=keys)

    return app


def main() -> int:
    import uvicorn

    try:
        app = create_app()
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "3001")),
        log_level=os.environ.get("VEILPIX_LOG_LEVEL", "info").lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
