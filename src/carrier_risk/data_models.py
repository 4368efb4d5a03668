from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal

from carrier_risk.config import NationalAverages


Severity = Literal["CRITICAL", "WARNING", "INFO"]
RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]
SafetyRating = Literal["SATISFACTORY", "CONDITIONAL", "UNSATISFACTORY", "NOT_RATED"]

SEVERITY_RANK: dict[str, int] = {"CRITICAL": 0, "WARNING": 1, "INFO": 2}

NOT_FOUND_GUIDANCE: tuple[str, ...] = (
    "The MC or DOT number may be invalid.",
    "The carrier's authority may be very new and not yet published by FMCSA.",
    "The carrier may have ceased operating or had its registration revoked.",
    "The number may contain a typo; double-check it against the carrier's paperwork.",
)

_NATIONAL = NationalAverages()


@dataclass(frozen=True)
class InsuranceCoverage:
    required: float | None = None
    on_file: float | None = None


@dataclass(frozen=True)
class CrashCounts:
    fatal: int | None = None
    injury: int | None = None
    tow: int | None = None
    total: int | None = None


@dataclass(frozen=True)
class FleetSize:
    power_units: int | None = None
    drivers: int | None = None


@dataclass(frozen=True)
class RegistrySnapshot:
    """Typed registry facts for one carrier. ``None`` means the registry gave no evidence."""

    mc_number: str | None = None
    dot_number: str | None = None
    legal_name: str = ""
    dba_name: str = ""
    operating_status: str = "UNKNOWN"
    safety_rating: SafetyRating = "NOT_RATED"
    authority_granted_on: date | None = None
    authority_age_days: int | None = None
    liability: InsuranceCoverage = field(default_factory=InsuranceCoverage)
    cargo: InsuranceCoverage = field(default_factory=InsuranceCoverage)
    vehicle_oos_rate: float | None = None
    driver_oos_rate: float | None = None
    national_avg_vehicle_oos_rate: float = _NATIONAL.vehicle_oos_rate
    national_avg_driver_oos_rate: float = _NATIONAL.driver_oos_rate
    crashes: CrashCounts = field(default_factory=CrashCounts)
    fleet: FleetSize = field(default_factory=FleetSize)
    phone: str = ""
    physical_address: str = ""
    physical_city: str = ""
    physical_state: str = ""
    physical_zip: str = ""
    entity_type: str = ""
    mcs150_date: date | None = None
    mcs150_age_days: int | None = None
    out_of_service_date: date | None = None
    fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistrySnapshot:
        payload = dict(data)
        payload["liability"] = InsuranceCoverage(**(payload.get("liability") or {}))
        payload["cargo"] = InsuranceCoverage(**(payload.get("cargo") or {}))
        payload["crashes"] = CrashCounts(**(payload.get("crashes") or {}))
        payload["fleet"] = FleetSize(**(payload.get("fleet") or {}))
        for name in ("authority_granted_on", "mcs150_date", "out_of_service_date"):
            payload[name] = _parse_date(payload.get(name))
        payload["fetched_at"] = _parse_datetime(payload.get("fetched_at"))
        return cls(**payload)


@dataclass(frozen=True)
class RiskWarning:
    severity: Severity
    message: str
    field: str = ""


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel
    warnings: tuple[RiskWarning, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level,
            "warnings": [asdict(w) for w in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskAssessment:
        return cls(
            score=int(data["score"]),
            level=data["level"],
            warnings=tuple(RiskWarning(**w) for w in data.get("warnings") or []),
        )


@dataclass(frozen=True)
class VerificationRecord:
    """Unit stored in the verification cache.

    Build through :meth:`found` or :meth:`not_found` so that
    ``cache_expires_at`` is always ``verified_at + ttl``.
    """

    key: str
    verified: bool
    verified_at: datetime
    cache_expires_at: datetime
    snapshot: RegistrySnapshot | None = None
    assessment: RiskAssessment | None = None
    guidance: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.verified and (self.snapshot is None or self.assessment is None):
            raise ValueError("verified record requires both snapshot and assessment")
        if not self.verified and (self.snapshot is not None or self.assessment is not None):
            raise ValueError("unverified record cannot carry a snapshot or assessment")
        if self.verified_at.tzinfo is None or self.cache_expires_at.tzinfo is None:
            raise ValueError("record timestamps must be timezone-aware")
        if self.cache_expires_at <= self.verified_at:
            raise ValueError("cache_expires_at must be after verified_at")

    @classmethod
    def found(
        cls,
        *,
        key: str,
        snapshot: RegistrySnapshot,
        assessment: RiskAssessment,
        verified_at: datetime,
        ttl: timedelta,
    ) -> VerificationRecord:
        return cls(
            key=key,
            verified=True,
            verified_at=verified_at,
            cache_expires_at=verified_at + ttl,
            snapshot=snapshot,
            assessment=assessment,
        )

    @classmethod
    def not_found(
        cls,
        *,
        key: str,
        verified_at: datetime,
        ttl: timedelta,
        guidance: tuple[str, ...] = NOT_FOUND_GUIDANCE,
    ) -> VerificationRecord:
        return cls(
            key=key,
            verified=False,
            verified_at=verified_at,
            cache_expires_at=verified_at + ttl,
            guidance=guidance,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.cache_expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "verified": self.verified,
            "verified_at": self.verified_at.isoformat(),
            "cache_expires_at": self.cache_expires_at.isoformat(),
            "snapshot": None if self.snapshot is None else self.snapshot.to_dict(),
            "assessment": None if self.assessment is None else self.assessment.to_dict(),
            "guidance": list(self.guidance),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationRecord:
        snapshot = data.get("snapshot")
        assessment = data.get("assessment")
        return cls(
            key=data["key"],
            verified=bool(data["verified"]),
            verified_at=datetime.fromisoformat(data["verified_at"]),
            cache_expires_at=datetime.fromisoformat(data["cache_expires_at"]),
            snapshot=None if snapshot is None else RegistrySnapshot.from_dict(snapshot),
            assessment=None if assessment is None else RiskAssessment.from_dict(assessment),
            guidance=tuple(data.get("guidance") or ()),
        )


@dataclass(frozen=True)
class VerificationResult:
    """One read of a record; ``from_cache`` and ``stale`` describe the read, not the record."""

    record: VerificationRecord
    from_cache: bool
    stale: bool = False

    @property
    def verified(self) -> bool:
        return self.record.verified

    @property
    def assessment(self) -> RiskAssessment | None:
        return self.record.assessment

    @property
    def snapshot(self) -> RegistrySnapshot | None:
        return self.record.snapshot


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _parse_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
