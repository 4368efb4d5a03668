from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from carrier_risk.config import ScoringConfig
from carrier_risk.data_models import RegistrySnapshot, VerificationRecord, VerificationResult
from carrier_risk.identifiers import CarrierIdentifier, NormalizedIdentifier
from carrier_risk.risk_scorer import score
from carrier_service.errors import (
    IdentifierValidationError,
    RegistryUpstreamError,
    ServiceUnavailableError,
    UnknownCarrierError,
)
from carrier_service.logging_config import log_data
from carrier_service.messaging import CARRIER_VERIFICATION_RESULTS_TOPIC, KafkaBus
from carrier_service.singleflight import SingleFlight
from carrier_service.storage import PostgresStore, VerificationCache

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistryLookup(Protocol):
    async def fetch(self, identifier: NormalizedIdentifier) -> RegistrySnapshot | None: ...


class CarrierDirectory(Protocol):
    async def get_carrier(self, carrier_id: str) -> dict[str, Any] | None: ...


class VerificationService:
    """Normalize, check cache, coalesce registry lookups, score, write through.

    The cache and the in-flight table are only mutated from here.
    """

    def __init__(
        self,
        *,
        registry: RegistryLookup,
        cache: VerificationCache,
        directory: CarrierDirectory | None = None,
        history: PostgresStore | None = None,
        kafka: KafkaBus | None = None,
        scoring: ScoringConfig = ScoringConfig(),
        verified_ttl_seconds: int = 86_400,
        not_found_ttl_seconds: int = 900,
        timeout_seconds: float = 10.0,
        retry_backoff_seconds: float = 0.25,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.directory = directory
        self.history = history
        self.kafka = kafka
        self.scoring = scoring
        self.verified_ttl = timedelta(seconds=verified_ttl_seconds)
        self.not_found_ttl = timedelta(seconds=not_found_ttl_seconds)
        self.timeout_seconds = timeout_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock
        self._flights: SingleFlight[VerificationResult] = SingleFlight()
        self.stats: dict[str, int] = defaultdict(int)

    async def resolve(self, identifier: CarrierIdentifier) -> NormalizedIdentifier:
        if identifier.is_empty:
            raise IdentifierValidationError("An MC number, DOT number or carrier id is required")
        try:
            normalized = identifier.registry_identifier()
        except ValueError as exc:
            raise IdentifierValidationError(str(exc)) from exc
        if normalized is not None:
            return normalized

        carrier_id = identifier.internal_id
        carrier = None if self.directory is None else await self.directory.get_carrier(carrier_id)
        if carrier is None:
            raise UnknownCarrierError(f"Carrier {carrier_id} not found")
        try:
            normalized = CarrierIdentifier(
                mc_number=carrier.get("mc_number"),
                dot_number=carrier.get("dot_number"),
            ).registry_identifier()
        except ValueError as exc:
            raise UnknownCarrierError(f"Carrier {carrier_id} has an invalid registry number: {exc}") from exc
        if normalized is None:
            raise UnknownCarrierError(f"Carrier {carrier_id} has no MC or DOT number on file")
        return normalized

    async def verify(
        self,
        identifier: CarrierIdentifier,
        *,
        force_refresh: bool = False,
        carrier_id: str | None = None,
    ) -> VerificationResult:
        """Verify one carrier.

        ``carrier_id`` links the history row written by a fresh lookup to a CRM
        carrier; it defaults to the identifier's internal id.
        """
        normalized = await self.resolve(identifier)
        key = normalized.key
        carrier_id = carrier_id or identifier.internal_id

        if not force_refresh and not self._flights.in_flight(key):
            cached = await self.cache.get(key)
            if cached is not None:
                self.stats["cache_hit"] += 1
                logger.debug("Verification cache hit for %s", key)
                return VerificationResult(record=cached, from_cache=True)

        self.stats["cache_miss"] += 1
        result, shared = await self._flights.do(key, lambda: self._refresh(normalized, force_refresh, carrier_id))
        if shared:
            self.stats["coalesced"] += 1
        return result

    async def _refresh(
        self, normalized: NormalizedIdentifier, force_refresh: bool, carrier_id: str | None,
    ) -> VerificationResult:
        key = normalized.key
        if not force_refresh:
            # Another flight may have populated the key while this one was queued.
            cached = await self.cache.get(key)
            if cached is not None:
                return VerificationResult(record=cached, from_cache=True)

        prior = await self.cache.peek(key)
        if force_refresh and prior is not None:
            await self.cache.invalidate(key)

        try:
            snapshot = await asyncio.wait_for(self._fetch_with_retry(normalized), timeout=self.timeout_seconds)
        except (RegistryUpstreamError, asyncio.TimeoutError) as exc:
            return await self._fallback(key, prior, exc, restore=force_refresh)

        now = self._clock()
        if snapshot is None:
            record = VerificationRecord.not_found(key=key, verified_at=now, ttl=self.not_found_ttl)
            await self.cache.put(key, record)
            self.stats["not_found"] += 1
            logger.info("Carrier %s not found in registry", key, extra=log_data(key=key))
            return VerificationResult(record=record, from_cache=False)

        assessment = score(snapshot, self.scoring)
        record = VerificationRecord.found(
            key=key,
            snapshot=snapshot,
            assessment=assessment,
            verified_at=now,
            ttl=self.verified_ttl,
        )
        await self.cache.put(key, record)
        self.stats["verified"] += 1
        logger.info(
            "Verified carrier %s: score=%d level=%s",
            key, assessment.score, assessment.level,
            extra=log_data(key=key, score=assessment.score, level=assessment.level, warnings=len(assessment.warnings)),
        )
        await self._publish(record, carrier_id)
        return VerificationResult(record=record, from_cache=False)

    async def _fetch_with_retry(self, normalized: NormalizedIdentifier) -> RegistrySnapshot | None:
        try:
            return await self.registry.fetch(normalized)
        except RegistryUpstreamError as exc:
            if not exc.retryable:
                raise
            logger.warning("Registry lookup for %s failed (%s); retrying once", normalized.key, exc)
            await asyncio.sleep(self.retry_backoff_seconds)
            return await self.registry.fetch(normalized)

    async def _fallback(
        self,
        key: str,
        prior: VerificationRecord | None,
        exc: Exception,
        *,
        restore: bool,
    ) -> VerificationResult:
        cause = str(exc) or "verification_timeout"
        self.stats["upstream_error"] += 1
        if prior is None:
            logger.warning("Registry unavailable for %s and nothing cached: %s", key, cause)
            raise ServiceUnavailableError(key, cause) from exc

        if restore:
            await self.cache.put(key, prior)
        stale = prior.is_expired(self._clock())
        self.stats["stale_served" if stale else "prior_served"] += 1
        logger.warning(
            "Serving %s verification for %s after registry failure: %s",
            "stale" if stale else "cached", key, cause,
            extra=log_data(key=key, stale=stale, cause=cause),
        )
        return VerificationResult(record=prior, from_cache=True, stale=stale)

    async def _publish(self, record: VerificationRecord, carrier_id: str | None = None) -> None:
        if self.history is not None:
            try:
                await self.history.insert_verification(record, carrier_id=carrier_id)
            except Exception:
                logger.warning("Failed to record verification history for %s", record.key, exc_info=True)
        if self.kafka is not None:
            assessment = record.assessment
            event = {
                "key": record.key,
                "verified": record.verified,
                "risk_score": assessment.score if assessment else None,
                "risk_level": assessment.level if assessment else None,
                "verified_at": record.verified_at.isoformat(),
            }
            try:
                await self.kafka.publish(CARRIER_VERIFICATION_RESULTS_TOPIC, event, key=record.key)
            except Exception:
                logger.warning("Failed to publish verification event for %s", record.key, exc_info=True)
