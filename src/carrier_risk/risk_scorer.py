from __future__ import annotations

from carrier_risk.config import ScoringConfig
from carrier_risk.data_models import (
    SEVERITY_RANK,
    InsuranceCoverage,
    RegistrySnapshot,
    RiskAssessment,
    RiskLevel,
    RiskWarning,
    Severity,
)


AUTHORIZED = "AUTHORIZED"


class _Tally:
    def __init__(self, base: int) -> None:
        self.score = base
        self.warnings: list[RiskWarning] = []

    def flag(self, penalty: int, severity: Severity, message: str, field: str) -> None:
        self.score -= penalty
        self.warnings.append(RiskWarning(severity=severity, message=message, field=field))


def score(snapshot: RegistrySnapshot, config: ScoringConfig = ScoringConfig()) -> RiskAssessment:
    """Additive-penalty risk score for one registry snapshot.

    Pure and deterministic: absent evidence never adds a penalty, at most an INFO warning.
    """
    tally = _Tally(config.base_score)

    if snapshot.operating_status != AUTHORIZED:
        tally.flag(
            config.inactive_authority_penalty,
            "CRITICAL",
            "Operating authority is not active.",
            "operating_status",
        )

    _score_insurance(
        tally,
        snapshot.liability,
        label="Liability",
        field="liability",
        none_penalty=config.liability_none_penalty,
        partial_penalty=config.liability_partial_penalty,
    )
    _score_insurance(
        tally,
        snapshot.cargo,
        label="Cargo",
        field="cargo",
        none_penalty=config.cargo_none_penalty,
        partial_penalty=config.cargo_partial_penalty,
    )

    _score_oos_rate(
        tally,
        snapshot.vehicle_oos_rate,
        label="vehicle",
        field="vehicle_oos_rate",
        critical_rate=config.vehicle_oos_critical_rate,
        national_avg=snapshot.national_avg_vehicle_oos_rate,
        config=config,
    )
    _score_oos_rate(
        tally,
        snapshot.driver_oos_rate,
        label="driver",
        field="driver_oos_rate",
        critical_rate=config.driver_oos_critical_rate,
        national_avg=snapshot.national_avg_driver_oos_rate,
        config=config,
    )

    age = snapshot.authority_age_days
    if age is not None:
        if age < config.new_authority_days:
            tally.flag(
                config.new_authority_penalty,
                "WARNING",
                f"New authority - limited operating history ({age} days old).",
                "authority_age_days",
            )
        elif age < config.young_authority_days:
            tally.flag(0, "INFO", f"Relatively new authority ({age} days old).", "authority_age_days")

    rating = snapshot.safety_rating
    if rating == "UNSATISFACTORY":
        tally.flag(config.unsatisfactory_rating_penalty, "CRITICAL", "Unsatisfactory safety rating.", "safety_rating")
    elif rating == "CONDITIONAL":
        tally.flag(config.conditional_rating_penalty, "WARNING", "Conditional safety rating - monitor closely.", "safety_rating")
    elif rating == "NOT_RATED":
        tally.flag(0, "INFO", "Carrier has not been rated by FMCSA.", "safety_rating")

    _score_crashes(tally, snapshot, config)

    mcs150_age = snapshot.mcs150_age_days
    if mcs150_age is not None and mcs150_age > config.mcs150_stale_days:
        tally.flag(0, "INFO", f"MCS-150 not updated in {mcs150_age // 365} years.", "mcs150_date")

    final = max(0, min(config.base_score, tally.score))
    ordered = sorted(tally.warnings, key=lambda w: SEVERITY_RANK[w.severity])
    return RiskAssessment(score=final, level=risk_level(final, config), warnings=tuple(ordered))


def risk_level(value: int, config: ScoringConfig = ScoringConfig()) -> RiskLevel:
    if value >= config.low_risk_min_score:
        return "LOW"
    if value >= config.medium_risk_min_score:
        return "MEDIUM"
    return "HIGH"


def _score_insurance(
    tally: _Tally,
    coverage: InsuranceCoverage,
    *,
    label: str,
    field: str,
    none_penalty: int,
    partial_penalty: int,
) -> None:
    required = coverage.required
    if required is None or required <= 0:
        return
    on_file = coverage.on_file or 0.0
    if on_file <= 0:
        tally.flag(none_penalty, "CRITICAL", f"{label} insurance is not on file.", field)
    elif on_file < required:
        tally.flag(
            partial_penalty,
            "WARNING",
            f"{label} insurance below requirement: ${on_file:,.0f} on file, ${required:,.0f} required.",
            field,
        )


def _score_oos_rate(
    tally: _Tally,
    rate: float | None,
    *,
    label: str,
    field: str,
    critical_rate: float,
    national_avg: float,
    config: ScoringConfig,
) -> None:
    if rate is None:
        tally.flag(0, "INFO", f"No {label} out-of-service data on record.", field)
    elif rate > critical_rate:
        tally.flag(
            config.oos_critical_penalty,
            "CRITICAL",
            f"High {label} out-of-service rate: {rate:g}% (national avg: {national_avg:g}%).",
            field,
        )
    elif rate > national_avg:
        tally.flag(
            config.oos_above_average_penalty,
            "WARNING",
            f"{label.capitalize()} out-of-service rate above national average: {rate:g}% (national avg: {national_avg:g}%).",
            field,
        )


def _score_crashes(tally: _Tally, snapshot: RegistrySnapshot, config: ScoringConfig) -> None:
    fatal = snapshot.crashes.fatal or 0
    injury = snapshot.crashes.injury or 0
    severity: Severity = "WARNING" if fatal > 0 else "INFO"
    if fatal > 0:
        tally.flag(
            min(fatal * config.fatal_crash_penalty, config.fatal_crash_cap),
            severity,
            f"{fatal} fatal crash{'es' if fatal > 1 else ''} in the last 24 months.",
            "crashes",
        )
    if injury > 0:
        tally.flag(
            min(injury * config.injury_crash_penalty, config.injury_crash_cap),
            severity,
            f"{injury} injury crash{'es' if injury > 1 else ''} in the last 24 months.",
            "crashes",
        )
