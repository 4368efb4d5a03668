from __future__ import annotations

import asyncio
import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from carrier_risk.data_models import VerificationRecord
from carrier_risk.identifiers import normalize_number

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

carrier_verifications_table = Table(
    "carrier_verifications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("carrier_id", String(64), nullable=True, index=True),
    Column("cache_key", String(32), nullable=False, index=True),
    Column("mc_number", String(16), nullable=True, index=True),
    Column("dot_number", String(16), nullable=True, index=True),
    Column("verified", Boolean, nullable=False),
    Column("legal_name", String(255), nullable=True),
    Column("dba_name", String(255), nullable=True),
    Column("operating_status", String(32), nullable=True),
    Column("safety_rating", String(32), nullable=True),
    Column("liability_required", Float, nullable=True),
    Column("liability_on_file", Float, nullable=True),
    Column("cargo_required", Float, nullable=True),
    Column("cargo_on_file", Float, nullable=True),
    Column("vehicle_oos_rate", Float, nullable=True),
    Column("driver_oos_rate", Float, nullable=True),
    Column("fatal_crashes", Integer, nullable=True),
    Column("injury_crashes", Integer, nullable=True),
    Column("power_units", Integer, nullable=True),
    Column("drivers", Integer, nullable=True),
    Column("risk_level", String(8), nullable=True, index=True),
    Column("risk_score", Integer, nullable=True),
    Column("warnings_json", JSON, nullable=False, default=list),
    Column("snapshot_json", JSON, nullable=True),
    Column("verification_source", String(32), nullable=False, default="FMCSA_QCMOBILE"),
    Column("verified_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
)

carriers_table = Table(
    "carriers",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("carrier_name", String(255), nullable=False),
    Column("mc_number", String(16), nullable=True, index=True),
    Column("dot_number", String(16), nullable=True, index=True),
    Column("legal_name", String(255), nullable=True),
    Column("phone", String(32), nullable=True),
    Column("address", String(255), nullable=True),
    Column("city", String(128), nullable=True),
    Column("state", String(8), nullable=True),
    Column("zip_code", String(16), nullable=True),
    Column("verification_status", String(32), nullable=False, default="UNVERIFIED"),
    Column("verification_warnings", JSON, nullable=True),
    Column("last_verification_date", DateTime(timezone=True), nullable=True),
)


CONTACT_FIELDS = ("legal_name", "phone", "address", "city", "state", "zip_code")


class VerificationCache:
    """Keyed store of :class:`VerificationRecord` values.

    Expiry is decided on read from ``cache_expires_at``. Expired entries are
    kept (for stale fallback) until superseded or until ``stale_retention_seconds``
    past expiry. Reads past that window drop the entry, so the in-process
    fallback forgets records on the same schedule Redis does.
    """

    def __init__(
        self,
        redis_url: str,
        namespace: str = "carrier_verification",
        stale_retention_seconds: int = 604_800,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.stale_retention_seconds = stale_retention_seconds
        self._clock = clock
        self._client: Any = None
        self._mem: dict[str, str] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def _retained_until(self, record: VerificationRecord) -> datetime:
        return record.cache_expires_at + timedelta(seconds=self.stale_retention_seconds)

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.warning("Redis unreachable at %s; using in-process verification cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get(self, key: str) -> VerificationRecord | None:
        record = await self.peek(key)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def peek(self, key: str) -> VerificationRecord | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
            except Exception as exc:
                logger.warning("Redis read failed for %s: %s", full_key, exc)
                return None
        else:
            raw = self._mem.get(full_key)
        if raw is None:
            return None
        try:
            record = VerificationRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable cache entry %s", full_key)
            await self.invalidate(key)
            return None
        # Same retention on both backends; Redis normally drops these itself.
        if self._clock() >= self._retained_until(record):
            await self.invalidate(key)
            return None
        return record

    async def put(self, key: str, record: VerificationRecord) -> None:
        if record.key != key:
            raise ValueError(f"record for {record.key} cannot be stored under {key}")
        full_key = self._build_key(key)
        retain_seconds = math.ceil((self._retained_until(record) - self._clock()).total_seconds())
        if retain_seconds <= 0:
            return
        payload = json.dumps(record.to_dict())
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=retain_seconds)
            except Exception as exc:
                logger.warning("Redis write failed for %s: %s", full_key, exc)
            return
        self._mem[full_key] = payload

    async def invalidate(self, key: str) -> None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                await self._client.delete(full_key)
            except Exception as exc:
                logger.warning("Redis delete failed for %s: %s", full_key, exc)
            return
        self._mem.pop(full_key, None)


class PostgresStore:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_verifications: list[dict[str, Any]] = []
        self._mem_carriers: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            logger.warning("Postgres unreachable; verification history kept in memory")
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None:
            return False
        if self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def insert_verification(self, record: VerificationRecord, carrier_id: str | None = None) -> str:
        row_id = str(uuid4())
        snapshot = record.snapshot
        assessment = record.assessment
        kind, _, number = record.key.partition(":")
        row = {
            "id": row_id,
            "carrier_id": carrier_id,
            "cache_key": record.key,
            "mc_number": snapshot.mc_number if snapshot else (number if kind == "mc" else None),
            "dot_number": snapshot.dot_number if snapshot else (number if kind == "dot" else None),
            "verified": record.verified,
            "legal_name": snapshot.legal_name if snapshot else None,
            "dba_name": snapshot.dba_name if snapshot else None,
            "operating_status": snapshot.operating_status if snapshot else None,
            "safety_rating": snapshot.safety_rating if snapshot else None,
            "liability_required": snapshot.liability.required if snapshot else None,
            "liability_on_file": snapshot.liability.on_file if snapshot else None,
            "cargo_required": snapshot.cargo.required if snapshot else None,
            "cargo_on_file": snapshot.cargo.on_file if snapshot else None,
            "vehicle_oos_rate": snapshot.vehicle_oos_rate if snapshot else None,
            "driver_oos_rate": snapshot.driver_oos_rate if snapshot else None,
            "fatal_crashes": snapshot.crashes.fatal if snapshot else None,
            "injury_crashes": snapshot.crashes.injury if snapshot else None,
            "power_units": snapshot.fleet.power_units if snapshot else None,
            "drivers": snapshot.fleet.drivers if snapshot else None,
            "risk_level": assessment.level if assessment else None,
            "risk_score": assessment.score if assessment else None,
            "warnings_json": assessment.to_dict()["warnings"] if assessment else [],
            "snapshot_json": snapshot.to_dict() if snapshot else None,
            "verification_source": "FMCSA_QCMOBILE",
            "verified_at": record.verified_at,
            "expires_at": record.cache_expires_at,
        }
        if self.engine is None:
            self._mem_verifications.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(carrier_verifications_table).values(**row))
        return row_id

    async def fetch_verification_history(
        self,
        *,
        cache_key: str | None = None,
        carrier_id: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [
                r for r in self._mem_verifications
                if (cache_key is None or r["cache_key"] == cache_key)
                and (carrier_id is None or r["carrier_id"] == carrier_id)
            ]
            return sorted(rows, key=lambda r: r["verified_at"], reverse=True)[:limit]
        stmt = select(carrier_verifications_table)
        if cache_key is not None:
            stmt = stmt.where(carrier_verifications_table.c.cache_key == cache_key)
        if carrier_id is not None:
            stmt = stmt.where(carrier_verifications_table.c.carrier_id == carrier_id)
        stmt = stmt.order_by(carrier_verifications_table.c.verified_at.desc()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    async def upsert_carrier(
        self,
        *,
        carrier_name: str,
        mc_number: str | None = None,
        dot_number: str | None = None,
        carrier_id: str | None = None,
        **contact: str | None,
    ) -> str:
        unknown = set(contact) - set(CONTACT_FIELDS)
        if unknown:
            raise TypeError(f"unknown carrier fields: {sorted(unknown)}")
        row_id = carrier_id or str(uuid4())
        row = {
            "id": row_id,
            "carrier_name": carrier_name,
            "mc_number": mc_number,
            "dot_number": dot_number,
            # Blank contact values never overwrite what is on file.
            **{k: v for k, v in contact.items() if v},
        }
        if self.engine is None:
            existing = self._mem_carriers.get(row_id, {
                "verification_status": "UNVERIFIED",
                "verification_warnings": None,
                "last_verification_date": None,
            })
            self._mem_carriers[row_id] = {**existing, **row}
            return row_id
        async with self.engine.begin() as conn:
            found = (await conn.execute(
                select(carriers_table.c.id).where(carriers_table.c.id == row_id)
            )).first()
            if found:
                await conn.execute(update(carriers_table).where(carriers_table.c.id == row_id).values(**row))
            else:
                await conn.execute(insert(carriers_table).values(**row, verification_status="UNVERIFIED"))
        return row_id

    async def get_carrier(self, carrier_id: str) -> dict[str, Any] | None:
        if self.engine is None:
            return self._mem_carriers.get(carrier_id)
        stmt = select(carriers_table).where(carriers_table.c.id == carrier_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return dict(row._mapping) if row else None

    async def find_carrier(
        self,
        *,
        mc_number: str | None = None,
        dot_number: str | None = None,
    ) -> dict[str, Any] | None:
        """Look up a carrier row by registry number, MC first.

        Stored numbers may carry an ``MC-`` prefix; both forms match.
        """
        for column, raw in (("mc_number", mc_number), ("dot_number", dot_number)):
            digits = normalize_number(raw)
            if not digits:
                continue
            if self.engine is None:
                for carrier in self._mem_carriers.values():
                    if normalize_number(carrier.get(column)) == digits:
                        return carrier
                continue
            candidates = [digits, f"MC-{digits}"] if column == "mc_number" else [digits]
            stmt = select(carriers_table).where(carriers_table.c[column].in_(candidates)).limit(1)
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
            if row:
                return dict(row._mapping)
        return None

    async def update_carrier_verification(
        self,
        carrier_id: str,
        *,
        verification_status: str,
        warnings: list[dict[str, Any]],
        verified_at: datetime,
    ) -> None:
        values = {
            "verification_status": verification_status,
            "verification_warnings": warnings,
            "last_verification_date": verified_at,
        }
        if self.engine is None:
            if carrier_id in self._mem_carriers:
                self._mem_carriers[carrier_id].update(values)
            return
        async with self.engine.begin() as conn:
            await conn.execute(
                update(carriers_table).where(carriers_table.c.id == carrier_id).values(**values)
            )

    async def list_carriers_for_reverification(
        self,
        *,
        verified_before: datetime | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [
                c for c in self._mem_carriers.values()
                if (c.get("mc_number") or c.get("dot_number"))
                and (
                    verified_before is None
                    or c.get("last_verification_date") is None
                    or c["last_verification_date"] < verified_before
                )
            ]
            return rows[:limit]
        stmt = select(carriers_table).where(
            (carriers_table.c.mc_number.is_not(None)) | (carriers_table.c.dot_number.is_not(None))
        )
        if verified_before is not None:
            stmt = stmt.where(
                (carriers_table.c.last_verification_date.is_(None))
                | (carriers_table.c.last_verification_date < verified_before)
            )
        stmt = stmt.order_by(carriers_table.c.last_verification_date.asc().nulls_first()).limit(limit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]
