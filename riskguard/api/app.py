"""
riskguard/api/app.py
=====================
HTTP API — RiskGuard

Responsibility:
    - Expose the fraud analysis endpoints:
        POST /fraud/analyze
        GET  /fraud/analyze/status/{request_id}
        POST /fraud/analyze/batch
        GET  /fraud/patterns/{phone_hash}
        GET  /health
    - Assign a correlation id to every request (X-Correlation-ID or
      X-Request-ID, generated otherwise) and echo it back
    - Resolve caller identity (a configured X-Api-Key, else client IP) and
      privilege (Bearer admin token) for rate limiting and audit
    - Scan request bodies for intrusion signatures before analysis
    - Map RiskGuardError subclasses to JSON error bodies; anything else
      becomes a 500 ``analysis_failed`` body with the correlation id
    - Write exactly one audit entry per /fraud call, whatever the outcome
      (/health is not audited)
    - Start / stop the audit worker and the rate-limit sweeper

This module does NOT:
    - Contain any scoring logic
    - Build components itself (see services.build_services)
"""

import asyncio
import hashlib
import json
import logging
import secrets
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from riskguard import __version__
from riskguard.errors import (
    InternalError,
    NotFoundError,
    RateLimitError,
    RiskGuardError,
    SecurityViolation,
    UpstreamUnavailable,
    ValidationError,
    classify_error,
)
from riskguard.models import (
    AuditLevel,
    AuditLogEntry,
    AuditResult,
    RecommendedAction,
    RequestContext,
    ThreatLevel,
    new_id,
)
from riskguard.services import Services, build_services
from riskguard.validation import (
    parse_analysis_request,
    parse_batch_requests,
    parse_bool,
    parse_pattern_types,
    validate_phone_hash,
    validate_request_id,
    validate_time_window,
)

logger = logging.getLogger("riskguard.api")

CORRELATION_HEADER = "X-Correlation-ID"
RATE_LIMIT_SWEEP_SECONDS = 60


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _is_privileged(authorization: str | None, admin_tokens: tuple[str, ...]) -> bool:
    if not authorization or not authorization.startswith("Bearer "):
        return False
    token = authorization[len("Bearer "):].strip()
    return any(secrets.compare_digest(token, admin) for admin in admin_tokens)


def _resolve_identity(api_key: str | None, api_keys: tuple[str, ...], ip_address: str) -> str:
    """Issued API key (fingerprinted), else the client IP."""
    if api_key and any(secrets.compare_digest(api_key, known) for known in api_keys):
        return "key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    return ip_address


def _build_context(request: Request, services: Services) -> RequestContext:
    correlation_id = (
        request.headers.get("x-correlation-id")
        or request.headers.get("x-request-id")
        or new_id()
    )
    ip_address = request.client.host if request.client else "unknown"
    return RequestContext(
        correlation_id=correlation_id,
        endpoint=request.url.path,
        method=request.method,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent", "unknown"),
        identity=_resolve_identity(
            request.headers.get("x-api-key"), services.settings.api_keys, ip_address,
        ),
        privileged=_is_privileged(
            request.headers.get("authorization"), services.settings.admin_tokens,
        ),
    )


def _context(request: Request) -> RequestContext:
    return request.state.context


async def _json_body(request: Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError(
            "Request body must be valid JSON",
            [{"field": "body", "message": "Malformed JSON"}],
        )


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------


def _audit(
    services: Services,
    ctx: RequestContext,
    event_type: str,
    result: AuditResult,
    level: AuditLevel,
    resource_type: str = "request",
    resource_id: str = "",
    metadata: dict | None = None,
) -> None:
    services.audit.log_event(AuditLogEntry(
        event_type=event_type,
        action=f"{ctx.method} {ctx.endpoint}",
        result=result,
        user_id=ctx.identity,
        user_type="admin" if ctx.privileged else "api_client",
        resource_type=resource_type,
        resource_id=resource_id,
        level=level,
        context=ctx.audit_context(),
        metadata=metadata or {},
    ))
    ctx.audited = True


# (exception type, event type, result, level); first match wins
_ERROR_EVENTS = (
    (ValidationError, "validation_failed", AuditResult.BLOCKED, AuditLevel.WARNING),
    (RateLimitError, "rate_limit_exceeded", AuditResult.BLOCKED, AuditLevel.WARNING),
    (SecurityViolation, "security_violation", AuditResult.BLOCKED, AuditLevel.ERROR),
    (NotFoundError, "resource_not_found", AuditResult.SUCCESS, AuditLevel.INFO),
    (UpstreamUnavailable, "upstream_unavailable", AuditResult.FAILURE, AuditLevel.ERROR),
)


def _audit_error(services: Services, ctx: RequestContext, exc: Exception) -> None:
    """Audit a failed call unless something already wrote its entry."""
    if ctx.audited:
        return
    for exc_type, event_type, result, level in _ERROR_EVENTS:
        if isinstance(exc, exc_type):
            break
    else:
        event_type, result, level = "request_failed", AuditResult.FAILURE, AuditLevel.ERROR
    if isinstance(exc, RiskGuardError):
        metadata = exc.to_dict()
    else:
        metadata = {"error": str(exc), "error_kind": classify_error(exc)}
    _audit(services, ctx, event_type, result, level, metadata=metadata)


def _scan(request: Request, services: Services, body) -> None:
    """Raise SecurityViolation when the scanner recommends blocking."""
    ctx = _context(request)
    result = services.scanner.analyze_request(
        method=request.method,
        url=str(request.url),
        headers=dict(request.headers),
        body=body,
        query=dict(request.query_params),
        ip=ctx.ip_address,
        user_agent=ctx.user_agent,
        correlation_id=ctx.correlation_id,
    )
    if result.recommended_action != RecommendedAction.BLOCK:
        return

    services.audit.log_event(AuditLogEntry(
        event_type="security_violation",
        action="intrusion_blocked",
        result=AuditResult.BLOCKED,
        user_id=ctx.identity,
        user_type="api_client",
        resource_type="request",
        resource_id=result.event_id or "",
        level=AuditLevel.CRITICAL if result.threat_level == ThreatLevel.CRITICAL else AuditLevel.ERROR,
        context=ctx.audit_context(),
        metadata=result.to_dict(),
    ))
    ctx.audited = True
    raise SecurityViolation(
        "Request blocked by security policy",
        threat_level=result.threat_level.value,
        event_id=result.event_id,
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the FastAPI app around ``services`` (built from the environment
    when omitted).
    """
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.audit.start()

        async def _sweep_rate_limits():
            while True:
                await asyncio.sleep(RATE_LIMIT_SWEEP_SECONDS)
                removed = services.rate_limiter.sweep()
                if removed:
                    logger.debug("Swept %d expired rate-limit windows", removed)

        sweeper = asyncio.create_task(_sweep_rate_limits(), name="rate-limit-sweeper")
        services.audit.log_system_event("service_started", metadata={"version": __version__})
        logger.info("RiskGuard %s started", __version__)
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await services.engine.drain()
            services.audit.log_system_event("service_stopped")
            await services.audit.stop()
            logger.info("RiskGuard stopped")

    app = FastAPI(
        title="RiskGuard",
        description="Fraud and intrusion risk analysis for feedback calls.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Middleware + error handlers
    # -----------------------------------------------------------------------

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        ctx = _build_context(request, services)
        request.state.context = ctx
        try:
            response = await call_next(request)
        except Exception as exc:
            # anything not mapped by the RiskGuardError handler
            logger.error(
                "Unhandled error [%s] %s %s: %s",
                ctx.correlation_id, ctx.method, ctx.endpoint, exc, exc_info=True,
            )
            _audit_error(services, ctx, exc)
            error = InternalError("Request failed")
            response = JSONResponse(
                status_code=error.status_code,
                content={**error.to_dict(), "correlation_id": ctx.correlation_id},
            )
        response.headers[CORRELATION_HEADER] = ctx.correlation_id
        return response

    @app.exception_handler(RiskGuardError)
    async def riskguard_error_handler(request: Request, exc: RiskGuardError):
        ctx = _context(request)
        _audit_error(services, ctx, exc)
        headers = {CORRELATION_HEADER: ctx.correlation_id}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "correlation_id": ctx.correlation_id},
            headers=headers,
        )

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.post("/fraud/analyze")
    async def analyze(request: Request):
        """
        Analyze one feedback-call submission.

        Returns the FraudAnalysisResponse JSON.
        """
        ctx = _context(request)
        body = await _json_body(request)
        _scan(request, services, body)
        services.rate_limiter.check("analyze", ctx.identity, ctx.privileged)

        analysis_request = parse_analysis_request(body)
        try:
            response = await services.engine.analyze(analysis_request, ctx)
        except RiskGuardError:
            raise
        except Exception as exc:
            logger.error(
                "Analysis %s failed [%s]: %s",
                analysis_request.request_id, ctx.correlation_id, exc, exc_info=True,
            )
            raise InternalError("Fraud analysis failed", request_id=analysis_request.request_id)
        return JSONResponse(status_code=200, content=response.to_dict())

    @app.get("/fraud/analyze/status/{request_id}")
    async def analysis_status(request: Request, request_id: str):
        ctx = _context(request)
        services.rate_limiter.check("status", ctx.identity, ctx.privileged)
        request_id = validate_request_id(request_id)
        _audit(
            services, ctx, "analysis_status_checked", AuditResult.SUCCESS, AuditLevel.INFO,
            resource_type="fraud_analysis", resource_id=request_id,
        )
        return {"request_id": request_id, "status": "completed"}

    @app.post("/fraud/analyze/batch")
    async def analyze_batch(request: Request):
        """Analyze 1–20 submissions; items default to quick_scan."""
        ctx = _context(request)
        body = await _json_body(request)
        _scan(request, services, body)
        services.rate_limiter.check("batch", ctx.identity, ctx.privileged)

        batch_id = new_id()
        requests = parse_batch_requests(body, batch_id)
        result = await services.batch.analyze_batch(batch_id, requests, ctx)
        return JSONResponse(status_code=200, content=result.to_dict())

    @app.get("/fraud/patterns/{phone_hash}")
    async def behavioral_patterns(
        request: Request,
        phone_hash: str,
        time_window: str | None = None,
        pattern_types: str | None = None,
        include_details: str | None = None,
    ):
        ctx = _context(request)
        services.rate_limiter.check("patterns", ctx.identity, ctx.privileged)

        phone_hash = validate_phone_hash(phone_hash)
        window = validate_time_window(time_window)
        types = parse_pattern_types(pattern_types)
        details = parse_bool(include_details, "include_details", default=False)

        result = await services.analyzer.analyze_patterns(
            phone_hash,
            time_window=window,
            pattern_types=types,
            include_details=details,
        )
        _audit(
            services, ctx, "pattern_analysis_completed", AuditResult.SUCCESS, AuditLevel.INFO,
            resource_type="behavioral_patterns", resource_id=phone_hash,
            metadata={
                "time_window": result.time_window,
                "found": result.found,
                "pattern_count": len(result.patterns),
                "overall_risk_score": result.overall_risk_score,
            },
        )
        if not result.found:
            raise NotFoundError(
                f"No behavioral patterns found for {phone_hash} in the last {window}",
                error_code="patterns_not_found",
            )
        return JSONResponse(status_code=200, content=result.to_dict())

    @app.get("/health")
    async def health():
        breakers = services.guard.states()
        degraded = any(state != "closed" for state in breakers.values())
        return {
            "status": "degraded" if degraded else "healthy",
            "version": __version__,
            "audit_worker": services.audit.running,
            "llm_enabled": services.context.llm_enabled,
            "breakers": breakers,
        }

    return app


app = create_app()
