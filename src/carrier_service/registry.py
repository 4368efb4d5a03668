from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Callable

import httpx

from carrier_risk.config import DEFAULT_LIABILITY_REQUIRED_USD, NationalAverages
from carrier_risk.data_models import (
    CrashCounts,
    FleetSize,
    InsuranceCoverage,
    RegistrySnapshot,
    SafetyRating,
)
from carrier_risk.identifiers import NormalizedIdentifier
from carrier_service.errors import RegistryUpstreamError

logger = logging.getLogger(__name__)

USER_AGENT = "carrier-verification/1.0"

# Carriers flagged as cargo-required without a published amount.
DEFAULT_CARGO_REQUIRED_USD = 100_000.0

# (payload key, multiplier to USD). QCMobile publishes insurance in thousands.
_LIABILITY_ON_FILE = (("bipdInsuranceOnFile", 1000.0), ("bipdOnFile", 1.0))
_LIABILITY_REQUIRED = (("bipdRequiredAmount", 1000.0), ("bipdRequired", 1.0))
_CARGO_ON_FILE = (("cargoInsuranceOnFile", 1000.0), ("cargoOnFile", 1.0))
_CARGO_REQUIRED = (("cargoRequiredAmount", 1000.0), ("cargoRequired", 1.0))

_AUTHORITY_DATE_KEYS = (
    "authorityGrantDate",
    "authorityDate",
    "commonAuthorityGrantDate",
    "commonAuthorityDate",
    "contractAuthorityGrantDate",
    "contractAuthorityDate",
)

_RATING_CODES: dict[str, SafetyRating] = {
    "S": "SATISFACTORY",
    "SATISFACTORY": "SATISFACTORY",
    "C": "CONDITIONAL",
    "CONDITIONAL": "CONDITIONAL",
    "U": "UNSATISFACTORY",
    "UNSATISFACTORY": "UNSATISFACTORY",
}

_TRUE_FLAGS = {"Y", "YES", "TRUE"}
_FALSE_FLAGS = {"N", "NO", "FALSE"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistryClient:
    """Single-lookup client for the FMCSA QCMobile carrier API.

    Returns ``None`` when the registry does not know the carrier and raises
    :class:`RegistryUpstreamError` for anything that is not a usable answer.
    Retry policy belongs to the caller.
    """

    def __init__(
        self,
        base_url: str,
        web_key: str,
        timeout_seconds: float = 5.0,
        national_averages: NationalAverages = NationalAverages(),
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.web_key = web_key
        self.timeout_seconds = timeout_seconds
        self.national_averages = national_averages
        self._transport = transport
        self._clock = clock
        self._enabled = bool(web_key)

    def _path(self, identifier: NormalizedIdentifier) -> str:
        if identifier.kind == "mc":
            return f"/carriers/docket-number/{identifier.number}"
        return f"/carriers/{identifier.number}"

    async def fetch(self, identifier: NormalizedIdentifier) -> RegistrySnapshot | None:
        if not self._enabled:
            raise RegistryUpstreamError("registry_not_configured", retryable=False)

        url = f"{self.base_url}{self._path(identifier)}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.get(
                    url,
                    params={"webKey": self.web_key},
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                )
        except httpx.TimeoutException as exc:
            logger.warning("Registry lookup timed out for %s", identifier.key)
            raise RegistryUpstreamError("registry_timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("Registry lookup failed for %s: %s", identifier.key, exc)
            raise RegistryUpstreamError(f"registry_unreachable: {exc}") from exc

        if resp.status_code == 404:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RegistryUpstreamError("registry_unavailable", status_code=resp.status_code)
        if not resp.is_success:
            raise RegistryUpstreamError("registry_rejected_request", status_code=resp.status_code, retryable=False)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise RegistryUpstreamError("registry_malformed_payload: not JSON", retryable=False) from exc

        carrier = extract_carrier(payload)
        if carrier is None:
            return None
        try:
            return map_registry_payload(
                carrier,
                identifier=identifier,
                fetched_at=self._clock(),
                national_averages=self.national_averages,
            )
        except (ValueError, TypeError, OverflowError) as exc:
            raise RegistryUpstreamError(f"registry_malformed_payload: {exc}", retryable=False) from exc


def extract_carrier(payload: Any) -> dict[str, Any] | None:
    """Locate the carrier object in a registry response.

    Accepts the QCMobile envelope (``content`` as object or list) and flat
    legacy payloads. Returns None for an empty answer.
    """
    if not isinstance(payload, dict):
        raise RegistryUpstreamError("registry_malformed_payload: expected an object", retryable=False)

    if "content" not in payload:
        return payload if _looks_like_carrier(payload) else None

    content = payload["content"]
    if content is None:
        return None
    if isinstance(content, list):
        if not content:
            return None
        content = content[0]
    if not isinstance(content, dict):
        raise RegistryUpstreamError("registry_malformed_payload: unexpected content", retryable=False)

    carrier = content.get("carrier", content)
    if carrier is None:
        return None
    if not isinstance(carrier, dict):
        raise RegistryUpstreamError("registry_malformed_payload: unexpected carrier", retryable=False)
    if not _looks_like_carrier(carrier):
        raise RegistryUpstreamError("registry_malformed_payload: carrier has no name or DOT number", retryable=False)
    return carrier


def map_registry_payload(
    raw: dict[str, Any],
    *,
    identifier: NormalizedIdentifier,
    fetched_at: datetime,
    national_averages: NationalAverages = NationalAverages(),
) -> RegistrySnapshot:
    """Total mapping from a loosely-typed carrier object to a snapshot.

    Absent or unparsable numbers become None ("no evidence"); the scorer never
    sees a guessed zero.
    """
    today = fetched_at.date()
    granted = _first_date(raw, _AUTHORITY_DATE_KEYS)
    mcs150 = _first_date(raw, ("mcs150Date", "mcs150FormDate"))

    mc_number = identifier.number if identifier.kind == "mc" else _coerce_text(_first(raw, "mcNumber", "docketNumber"))
    dot_number = identifier.number if identifier.kind == "dot" else _coerce_text(_first(raw, "dotNumber", "dot"))

    return RegistrySnapshot(
        mc_number=mc_number or None,
        dot_number=dot_number or None,
        legal_name=_coerce_text(_first(raw, "legalName", "name")),
        dba_name=_coerce_text(_first(raw, "dbaName", "doingBusinessAs")),
        operating_status=_operating_status(raw),
        safety_rating=_safety_rating(_first(raw, "safetyRating", "rating")),
        authority_granted_on=granted,
        authority_age_days=_days_between(granted, today),
        liability=_liability(raw),
        cargo=_cargo(raw),
        vehicle_oos_rate=_coerce_float(_first(raw, "vehicleOosRate", "vehicleOOSRate")),
        driver_oos_rate=_coerce_float(_first(raw, "driverOosRate", "driverOOSRate")),
        national_avg_vehicle_oos_rate=_coerce_float(raw.get("vehicleOosRateNationalAverage"))
        or national_averages.vehicle_oos_rate,
        national_avg_driver_oos_rate=_coerce_float(raw.get("driverOosRateNationalAverage"))
        or national_averages.driver_oos_rate,
        crashes=CrashCounts(
            fatal=_coerce_int(_first(raw, "fatalCrash", "fatalCrashes")),
            injury=_coerce_int(_first(raw, "injCrash", "injuryCrashes")),
            tow=_coerce_int(_first(raw, "towawayCrash", "towCrashes")),
            total=_coerce_int(_first(raw, "crashTotal", "totalCrashes")),
        ),
        fleet=FleetSize(
            power_units=_coerce_int(_first(raw, "totalPowerUnits", "powerUnits")),
            drivers=_coerce_int(_first(raw, "totalDrivers", "drivers")),
        ),
        phone=_coerce_text(_first(raw, "telephone", "phone")),
        physical_address=_coerce_text(_first(raw, "phyStreet", "physicalAddress")),
        physical_city=_coerce_text(_first(raw, "phyCity", "physicalCity")),
        physical_state=_coerce_text(_first(raw, "phyState", "physicalState")),
        physical_zip=_coerce_text(_first(raw, "phyZipcode", "phyZip", "physicalZip")),
        entity_type=_coerce_text(_first(raw, "entityType", "censusTypeId", "carrierOperation")),
        mcs150_date=mcs150,
        mcs150_age_days=_days_between(mcs150, today),
        out_of_service_date=_first_date(raw, ("oosDate", "outOfServiceDate")),
        fetched_at=fetched_at,
    )


def _looks_like_carrier(obj: dict[str, Any]) -> bool:
    return _first(obj, "legalName", "name", "dotNumber", "dot") is not None


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _liability(raw: dict[str, Any]) -> InsuranceCoverage:
    if _coerce_flag(raw.get("bipdInsuranceRequired")) is False:
        required = None
    else:
        required = _coerce_amount(raw, _LIABILITY_REQUIRED) or DEFAULT_LIABILITY_REQUIRED_USD
    return InsuranceCoverage(required=required, on_file=_on_file(raw, _LIABILITY_ON_FILE, "bipdInsuranceOnFile", required))


def _cargo(raw: dict[str, Any]) -> InsuranceCoverage:
    required = _coerce_amount(raw, _CARGO_REQUIRED)
    flag = _coerce_flag(raw.get("cargoInsuranceRequired"))
    if flag is False:
        required = None
    elif required is None and flag is True:
        required = DEFAULT_CARGO_REQUIRED_USD
    return InsuranceCoverage(required=required, on_file=_on_file(raw, _CARGO_ON_FILE, "cargoInsuranceOnFile", required))


def _on_file(
    raw: dict[str, Any],
    keys: tuple[tuple[str, float], ...],
    flag_key: str,
    required: float | None,
) -> float | None:
    amount = _coerce_amount(raw, keys)
    if amount is not None:
        return amount
    # Legacy payloads carry only a Y/N "on file" flag.
    flag = _coerce_flag(raw.get(flag_key))
    if flag is False:
        return 0.0
    if flag is True:
        return required
    return None


def _coerce_amount(raw: dict[str, Any], keys: tuple[tuple[str, float], ...]) -> float | None:
    for key, multiplier in keys:
        value = _coerce_float(raw.get(key))
        if value is not None:
            return value * multiplier
    return None


def _operating_status(raw: dict[str, Any]) -> str:
    allowed = _coerce_flag(raw.get("allowedToOperate"))
    text = _coerce_text(_first(raw, "operatingStatus", "status", "statusCode")).upper()

    if "OUT" in text and "SERVICE" in text:
        return "OUT OF SERVICE"
    if "SUSPEND" in text:
        return "SUSPENDED"
    if "NOT" in text or "REVOKED" in text or "INACTIVE" in text or text == "I":
        return "NOT AUTHORIZED"
    if allowed is False:
        return "NOT AUTHORIZED"
    if text in ("A", "ACTIVE") or "AUTHORIZED" in text or allowed is True:
        return "AUTHORIZED"
    if text:
        return "UNREGISTERED"
    return "UNKNOWN"


def _safety_rating(value: Any) -> SafetyRating:
    code = _coerce_text(value).upper().replace("-", " ").strip()
    return _RATING_CODES.get(code, "NOT_RATED")


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        for key, item in value.items():
            if key.endswith("Desc") and item:
                return str(item).strip()
        return ""
    return str(value).strip()


def _coerce_flag(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().upper()
        if text in _TRUE_FLAGS:
            return True
        if text in _FALSE_FLAGS:
            return False
    return None


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%").replace(",", "").replace("$", "")
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def _coerce_int(value: Any) -> int | None:
    number = _coerce_float(value)
    return None if number is None else int(number)


def _coerce_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%m/%d/%Y").date()
    except ValueError:
        return None


def _first_date(raw: dict[str, Any], keys: tuple[str, ...]) -> date | None:
    for key in keys:
        parsed = _coerce_date(raw.get(key))
        if parsed is not None:
            return parsed
    return None


def _days_between(earlier: date | None, today: date) -> int | None:
    if earlier is None:
        return None
    return max(0, (today - earlier).days)
