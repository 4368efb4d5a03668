from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Iterable

from carrier_risk.data_models import VerificationResult
from carrier_risk.identifiers import CarrierIdentifier
from carrier_service.errors import VerificationError
from carrier_service.storage import PostgresStore
from carrier_service.verification import VerificationService

logger = logging.getLogger(__name__)

STATUS_BY_LEVEL = {
    "LOW": "VERIFIED_LOW_RISK",
    "MEDIUM": "VERIFIED_MEDIUM_RISK",
    "HIGH": "VERIFIED_HIGH_RISK",
}
UNVERIFIED = "UNVERIFIED"
VERIFICATION_FAILED = "VERIFICATION_FAILED"


def carrier_status(result: VerificationResult) -> str:
    if not result.verified or result.assessment is None:
        return UNVERIFIED
    return STATUS_BY_LEVEL[result.assessment.level]


async def sync_carrier_status(store: PostgresStore, carrier_id: str, result: VerificationResult) -> str | None:
    """Copy a verification outcome onto the CRM carrier row.

    Stale reads are skipped so an old record never overwrites newer status.
    """
    if result.stale:
        return None
    status = carrier_status(result)
    warnings = [asdict(w) for w in result.assessment.warnings] if result.assessment else []
    await store.update_carrier_verification(
        carrier_id,
        verification_status=status,
        warnings=warnings,
        verified_at=result.record.verified_at,
    )
    return status


async def run_reverification(
    *,
    service: VerificationService,
    store: PostgresStore | None = None,
    identifiers: Iterable[CarrierIdentifier] | None = None,
    concurrency: int = 8,
    force_refresh: bool = True,
    verified_before: datetime | None = None,
    limit: int = 500,
) -> dict[str, Any]:
    if identifiers is not None:
        targets = list(identifiers)
    elif store is not None:
        carriers = await store.list_carriers_for_reverification(verified_before=verified_before, limit=limit)
        targets = [
            CarrierIdentifier(
                mc_number=c.get("mc_number"),
                dot_number=c.get("dot_number"),
                internal_carrier_id=c["id"],
            )
            for c in carriers
        ]
    else:
        return {"status": "skipped", "reason": "no_carrier_source"}

    if not targets:
        return {"status": "skipped", "reason": "no_carriers_due"}

    started = datetime.now(timezone.utc)
    semaphore = asyncio.Semaphore(max(1, concurrency))
    counts: Counter[str] = Counter()
    levels: Counter[str] = Counter()

    async def _one(identifier: CarrierIdentifier) -> None:
        async with semaphore:
            carrier_id = identifier.internal_id
            try:
                result = await service.verify(identifier, force_refresh=force_refresh)
            except VerificationError as exc:
                counts["failed"] += 1
                logger.warning("Re-verification failed for %s: %s", carrier_id or identifier, exc)
                if store is not None and carrier_id is not None:
                    try:
                        await store.update_carrier_verification(
                            carrier_id,
                            verification_status=VERIFICATION_FAILED,
                            warnings=[{"severity": "CRITICAL", "message": str(exc), "field": ""}],
                            verified_at=datetime.now(timezone.utc),
                        )
                    except Exception:
                        logger.warning("Failed to record failure status for carrier %s", carrier_id, exc_info=True)
                return

            if store is not None and carrier_id is not None:
                try:
                    await sync_carrier_status(store, carrier_id, result)
                except Exception:
                    counts["failed"] += 1
                    logger.warning("Failed to sync status for carrier %s", carrier_id, exc_info=True)
                    return

            if result.stale:
                counts["stale"] += 1
            if result.verified and result.assessment is not None:
                counts["verified"] += 1
                levels[result.assessment.level] += 1
            else:
                counts["not_found"] += 1

    await asyncio.gather(*(_one(identifier) for identifier in targets))

    summary = {
        "status": "ok",
        "total": len(targets),
        "verified": counts["verified"],
        "not_found": counts["not_found"],
        "failed": counts["failed"],
        "stale": counts["stale"],
        "levels": dict(levels),
        "started_at": started.isoformat(),
    }
    logger.info(
        "Re-verified %d carriers (%d verified, %d not found, %d failed)",
        summary["total"], summary["verified"], summary["not_found"], summary["failed"],
    )
    return summary
