from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal


IdentifierKind = Literal["mc", "dot"]

MAX_NUMBER_DIGITS = 10

_PREFIX_RE = re.compile(r"^\s*(?:USDOT|DOT|MC|MX|FF)[\s#:\-]*", re.IGNORECASE)
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_number(raw: str | int | None) -> str:
    """Strip a known registry prefix, every non-digit and leading zeros.

    Idempotent: ``normalize_number(normalize_number(x)) == normalize_number(x)``.
    Returns an empty string when nothing numeric is left.
    """
    if raw is None:
        return ""
    text = _PREFIX_RE.sub("", str(raw), count=1)
    return _NON_DIGIT_RE.sub("", text).lstrip("0")


def is_plausible_number(number: str) -> bool:
    return number.isdigit() and 1 <= len(number) <= MAX_NUMBER_DIGITS


@dataclass(frozen=True)
class NormalizedIdentifier:
    kind: IdentifierKind
    number: str

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.number}"

    @classmethod
    def from_key(cls, key: str) -> NormalizedIdentifier:
        kind, _, number = key.partition(":")
        if kind not in ("mc", "dot") or not is_plausible_number(number):
            raise ValueError(f"Not a carrier cache key: {key!r}")
        return cls(kind=kind, number=number)  # type: ignore[arg-type]


@dataclass(frozen=True)
class CarrierIdentifier:
    """Caller-supplied identifier; at least one field must be present.

    Precedence is MC number, then DOT number, then internal CRM id.
    """

    mc_number: str | None = None
    dot_number: str | None = None
    internal_carrier_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not any(
            (value or "").strip()
            for value in (self.mc_number, self.dot_number, self.internal_carrier_id)
        )

    @property
    def internal_id(self) -> str | None:
        value = (self.internal_carrier_id or "").strip()
        return value or None

    def registry_identifier(self) -> NormalizedIdentifier | None:
        """Normalized MC/DOT identifier, or None when only an internal id was given.

        Raises ``ValueError`` when an MC/DOT value is present but implausible.
        """
        for kind, raw in (("mc", self.mc_number), ("dot", self.dot_number)):
            if raw is None or not str(raw).strip():
                continue
            number = normalize_number(raw)
            if not is_plausible_number(number):
                raise ValueError(f"{kind.upper()} number {raw!r} is not a valid registry number")
            return NormalizedIdentifier(kind=kind, number=number)  # type: ignore[arg-type]
        return None
