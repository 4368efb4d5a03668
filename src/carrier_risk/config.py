from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ScoringConfig:
    base_score: int = 100
    inactive_authority_penalty: int = 40
    liability_none_penalty: int = 35
    liability_partial_penalty: int = 20
    cargo_none_penalty: int = 18
    cargo_partial_penalty: int = 10
    vehicle_oos_critical_rate: float = 30.0
    driver_oos_critical_rate: float = 10.0
    oos_critical_penalty: int = 15
    oos_above_average_penalty: int = 8
    new_authority_days: int = 90
    new_authority_penalty: int = 10
    young_authority_days: int = 180
    unsatisfactory_rating_penalty: int = 25
    conditional_rating_penalty: int = 10
    fatal_crash_penalty: int = 3
    fatal_crash_cap: int = 15
    injury_crash_penalty: int = 1
    injury_crash_cap: int = 10
    mcs150_stale_days: int = 730
    low_risk_min_score: int = 80
    medium_risk_min_score: int = 50


@dataclass(frozen=True)
class NationalAverages:
    vehicle_oos_rate: float = 20.7
    driver_oos_rate: float = 5.5
    hazmat_oos_rate: float = 4.5


# Federal BIPD minimum for general freight (49 CFR 387.9).
DEFAULT_LIABILITY_REQUIRED_USD = 750_000.0
