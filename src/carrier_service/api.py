from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from carrier_risk.config import NationalAverages
from carrier_risk.data_models import InsuranceCoverage, VerificationResult
from carrier_risk.identifiers import CarrierIdentifier, NormalizedIdentifier, normalize_number
from carrier_risk.scheduler import build_reverification_scheduler
from carrier_service.auth import APIKeyAuth, RateLimiter
from carrier_service.errors import IdentifierValidationError, ServiceUnavailableError, UnknownCarrierError
from carrier_service.logging_config import bind_correlation_id, configure_logging
from carrier_service.messaging import CARRIER_REVERIFICATION_TRIGGERS_TOPIC, KafkaBus
from carrier_service.registry import RegistryClient
from carrier_service.reverification import run_reverification, sync_carrier_status
from carrier_service.settings import ServiceSettings
from carrier_service.storage import PostgresStore, VerificationCache
from carrier_service.verification import RegistryLookup, VerificationService

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class CarrierRef(BaseModel):
    mc_number: str | None = None
    dot_number: str | None = None
    carrier_id: str | None = None

    def to_identifier(self) -> CarrierIdentifier:
        return CarrierIdentifier(
            mc_number=self.mc_number,
            dot_number=self.dot_number,
            internal_carrier_id=self.carrier_id,
        )


class SaveCarrierRequest(BaseModel):
    mc_number: str | None = None
    dot_number: str | None = None
    carrier_name: str | None = None


class ReverifyRequest(BaseModel):
    carriers: list[CarrierRef] | None = Field(default=None, max_length=1000)
    force_refresh: bool = True


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


class TriggerResponse(BaseModel):
    scheduled: bool
    message: str


# ── Prometheus-style Metrics ────────────────────────────────────────

# Latency samples kept per metric; older samples fall off.
HISTOGRAM_WINDOW = 10_000

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=HISTOGRAM_WINDOW))


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text(extra_counters: dict[str, int]) -> str:
    """Render metrics in Prometheus exposition format."""
    lines: list[str] = []
    counters = {**_prom_counters, **{f"service_{k}": v for k, v in extra_counters.items()}}
    for k, v in sorted(counters.items()):
        safe = k.replace(".", "_").replace("-", "_")
        lines.append(f"# TYPE carrier_verification_{safe} counter")
        lines.append(f"carrier_verification_{safe} {v}")

    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        safe = name.replace(".", "_").replace("-", "_")
        sorted_vals = sorted(vals)
        n = len(sorted_vals)
        lines.append(f"# TYPE carrier_verification_{safe}_seconds summary")
        for q in (0.5, 0.9, 0.95, 0.99):
            idx = min(int(n * q), n - 1)
            lines.append(f'carrier_verification_{safe}_seconds{{quantile="{q}"}} {sorted_vals[idx]:.6f}')
        lines.append(f"carrier_verification_{safe}_seconds_count {n}")
        lines.append(f"carrier_verification_{safe}_seconds_sum {sum(sorted_vals):.6f}")

    return "\n".join(lines) + "\n"


# ── Response Shaping ────────────────────────────────────────────────

def insurance_status(coverage: InsuranceCoverage) -> str:
    if coverage.required is None:
        return "NOT_REQUIRED"
    if not coverage.on_file:
        return "NOT_ON_FILE"
    if coverage.on_file < coverage.required:
        return "INADEQUATE"
    return "ADEQUATE"


def _insurance(coverage: InsuranceCoverage) -> dict[str, Any]:
    return {
        "required": coverage.required,
        "on_file": coverage.on_file or 0,
        "status": insurance_status(coverage),
    }


def verification_payload(result: VerificationResult) -> dict[str, Any]:
    record = result.record
    requested = NormalizedIdentifier.from_key(record.key)
    body: dict[str, Any] = {
        "verified": record.verified,
        "mc_number": requested.number if requested.kind == "mc" else None,
        "dot_number": requested.number if requested.kind == "dot" else None,
        "verified_at": record.verified_at.isoformat(),
        "cache_expires_at": record.cache_expires_at.isoformat(),
        "from_cache": result.from_cache,
        "stale": result.stale,
    }
    snapshot, assessment = record.snapshot, record.assessment
    if snapshot is None or assessment is None:
        body.update({"risk_level": None, "risk_score": None, "warnings": [], "guidance": list(record.guidance)})
        return body

    has_oos = snapshot.vehicle_oos_rate is not None or snapshot.driver_oos_rate is not None
    crashes = snapshot.crashes
    counts = (crashes.fatal, crashes.injury, crashes.tow)
    has_crashes = crashes.total is not None or any(n is not None for n in counts)
    body.update({
        "mc_number": body["mc_number"] or snapshot.mc_number,
        "dot_number": body["dot_number"] or snapshot.dot_number,
        "legal_name": snapshot.legal_name,
        "dba_name": snapshot.dba_name,
        "operating_status": snapshot.operating_status,
        "safety_rating": snapshot.safety_rating,
        "authority_age_days": snapshot.authority_age_days,
        "insurance": {
            "liability": _insurance(snapshot.liability),
            "cargo": _insurance(snapshot.cargo),
        },
        "safety_scores": {
            "vehicle_oos_rate": snapshot.vehicle_oos_rate,
            "driver_oos_rate": snapshot.driver_oos_rate,
            "national_avg_vehicle": snapshot.national_avg_vehicle_oos_rate,
            "national_avg_driver": snapshot.national_avg_driver_oos_rate,
        } if has_oos else None,
        "crashes": {
            "fatal": crashes.fatal or 0,
            "injury": crashes.injury or 0,
            "tow": crashes.tow or 0,
            "total": crashes.total if crashes.total is not None else sum(n or 0 for n in counts),
        } if has_crashes else None,
        "fleet_size": {
            "power_units": snapshot.fleet.power_units,
            "drivers": snapshot.fleet.drivers,
        },
        "risk_level": assessment.level,
        "risk_score": assessment.score,
        "warnings": assessment.to_dict()["warnings"],
        "guidance": [],
    })
    return body


def _jsonable_row(row: dict[str, Any]) -> dict[str, Any]:
    entry = dict(row)
    for k, v in entry.items():
        if hasattr(v, "isoformat"):
            entry[k] = v.isoformat()
    return entry


# ── App Factory ─────────────────────────────────────────────────────

def create_app(registry: RegistryLookup | None = None) -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = VerificationCache(
        redis_url=settings.redis_url,
        namespace=settings.redis_namespace,
        stale_retention_seconds=settings.stale_retention_seconds,
    )
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
    )
    if registry is None:
        registry = RegistryClient(
            base_url=settings.fmcsa_base_url,
            web_key=settings.fmcsa_web_key,
            timeout_seconds=settings.registry_timeout_seconds,
            national_averages=NationalAverages(),
        )
    service = VerificationService(
        registry=registry,
        cache=cache,
        directory=store,
        history=store,
        kafka=kafka,
        verified_ttl_seconds=settings.verification_cache_ttl_seconds,
        not_found_ttl_seconds=settings.not_found_cache_ttl_seconds,
        timeout_seconds=settings.verification_timeout_seconds,
        retry_backoff_seconds=settings.upstream_retry_backoff_seconds,
    )

    api_keys = [k.strip() for k in settings.api_keys.split(",") if k.strip()] if settings.api_keys else []
    auth = APIKeyAuth(allowed_keys=api_keys or None)
    limiter = RateLimiter(requests_per_minute=settings.rate_limit_rpm)

    stop_event = asyncio.Event()

    async def _reverify_due() -> dict[str, Any]:
        return await run_reverification(
            service=service,
            store=store,
            concurrency=settings.reverify_concurrency,
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()

        async def _trigger_handler(_: dict[str, Any]) -> None:
            await _reverify_due()

        consumer_task = asyncio.create_task(kafka.consume_reverification_forever(_trigger_handler, stop_event))
        scheduler = None
        if settings.reverify_scheduler_enabled:
            scheduler = build_reverification_scheduler(settings.reverify_cron, _reverify_due)
            scheduler.start()
        try:
            yield
        finally:
            stop_event.set()
            consumer_task.cancel()
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Carrier Verification API", version="1.0.0", lifespan=lifespan)
    app.state.service = service
    app.state.store = store
    app.state.kafka = kafka

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = bind_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next: Any) -> Response:
        return await limiter.middleware(request, call_next)

    # ── Verification ────────────────────────────────────────────────

    async def _verify(identifier: CarrierIdentifier, *, force: bool, carrier_id: str | None = None) -> VerificationResult:
        t0 = time.monotonic()
        try:
            result = await service.verify(identifier, force_refresh=force, carrier_id=carrier_id)
        except IdentifierValidationError as exc:
            _prom_counters["verify_invalid"] += 1
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except UnknownCarrierError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except ServiceUnavailableError as exc:
            _prom_counters["verify_unavailable"] += 1
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=str(exc),
                headers={"Retry-After": "30"},
            ) from exc

        _record_latency("verify", time.monotonic() - t0)
        _prom_counters[f"verify_from_cache_{str(result.from_cache).lower()}"] += 1
        if result.stale:
            _prom_counters["verify_stale"] += 1
        if result.assessment is not None:
            _prom_counters[f"risk_level_{result.assessment.level.lower()}"] += 1
        else:
            _prom_counters["verify_not_found"] += 1
        return result

    @app.get("/carriers/verify")
    async def verify_carrier(
        mc: str | None = None,
        dot: str | None = None,
        carrier_id: str | None = None,
        force: bool = False,
        _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        identifier = CarrierIdentifier(mc_number=mc, dot_number=dot, internal_carrier_id=carrier_id)
        result = await _verify(identifier, force=force)
        if identifier.internal_id is not None:
            try:
                await sync_carrier_status(store, identifier.internal_id, result)
            except Exception:
                logger.warning("Failed to sync status for carrier %s", identifier.internal_id, exc_info=True)
        return verification_payload(result)

    @app.post("/carriers/verify")
    async def verify_and_save_carrier(req: SaveCarrierRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        """Force a registry lookup and create or update the CRM carrier from it."""
        if not (req.mc_number or req.dot_number):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="An MC number or DOT number is required",
            )
        existing = await store.find_carrier(mc_number=req.mc_number, dot_number=req.dot_number)
        carrier_id = existing["id"] if existing else str(uuid.uuid4())

        identifier = CarrierIdentifier(mc_number=req.mc_number, dot_number=req.dot_number)
        result = await _verify(identifier, force=True, carrier_id=carrier_id)
        if not result.verified or result.snapshot is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Carrier verification failed", "guidance": list(result.record.guidance)},
            )

        snapshot = result.snapshot
        mc, dot = normalize_number(req.mc_number), normalize_number(req.dot_number)
        carrier_name = snapshot.legal_name or req.carrier_name or "Unknown Carrier"
        try:
            await store.upsert_carrier(
                carrier_id=carrier_id,
                carrier_name=carrier_name,
                mc_number=f"MC-{mc}" if mc else (existing or {}).get("mc_number"),
                dot_number=dot or snapshot.dot_number or (existing or {}).get("dot_number"),
                legal_name=snapshot.legal_name,
                phone=snapshot.phone,
                address=snapshot.physical_address,
                city=snapshot.physical_city,
                state=snapshot.physical_state,
                zip_code=snapshot.physical_zip,
            )
            await sync_carrier_status(store, carrier_id, result)
        except Exception as exc:
            logger.exception("Failed to save carrier %s", carrier_id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to save carrier",
            ) from exc

        return {
            "success": True,
            "carrier_id": carrier_id,
            "carrier_name": carrier_name,
            "created": existing is None,
            "verification": verification_payload(result),
            "message": "Carrier updated successfully" if existing else "Carrier created successfully",
        }

    @app.get("/carriers/{carrier_id}/verifications")
    async def carrier_verification_history(
        carrier_id: str, limit: int = 20, _: str | None = Depends(auth),
    ) -> dict[str, Any]:
        try:
            normalized = await service.resolve(CarrierIdentifier(internal_carrier_id=carrier_id))
        except UnknownCarrierError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        rows = await store.fetch_verification_history(cache_key=normalized.key, limit=min(max(limit, 1), 100))
        return {
            "carrier_id": carrier_id,
            "key": normalized.key,
            "count": len(rows),
            "verifications": [_jsonable_row(r) for r in rows],
        }

    # ── Re-verification ─────────────────────────────────────────────

    @app.post("/carriers/reverify")
    async def reverify(req: ReverifyRequest, _: str | None = Depends(auth)) -> dict[str, Any]:
        identifiers = None if req.carriers is None else [c.to_identifier() for c in req.carriers]
        return await run_reverification(
            service=service,
            store=store,
            identifiers=identifiers,
            concurrency=settings.reverify_concurrency,
            force_refresh=req.force_refresh,
        )

    @app.post("/carriers/reverify/trigger", response_model=TriggerResponse)
    async def trigger_reverify(_: str | None = Depends(auth)) -> TriggerResponse:
        await kafka.publish(CARRIER_REVERIFICATION_TRIGGERS_TOPIC, {"source": "api_manual"})
        return TriggerResponse(scheduled=True, message="re-verification trigger published")

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    # ── Metrics ─────────────────────────────────────────────────────

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("verify", []))
        return {
            "counters": dict(_prom_counters),
            "service": dict(service.stats),
            "verify_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[int(len(latencies) * 0.95)] * 1000, 1) if latencies else 0,
                "p99_ms": round(latencies[int(len(latencies) * 0.99)] * 1000, 1) if latencies else 0,
            },
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(dict(service.stats)), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
