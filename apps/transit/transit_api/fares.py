from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from .config import settings
from .errors import ValidationError


CONCESSION_TYPES = ("general", "student", "child", "women", "elderly", "disabled")


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FareBreakdown:
    original_fare: int
    discount_amount: int
    discount_percentage: int
    final_fare: int
    concession_type: str

    def as_dict(self) -> dict:
        return asdict(self)


class FareCalculator:
    """Base fare plus per-km rate, discounted by the rider's concession.

    Money is in whole currency units. The original fare is rounded half-up,
    the discounted fare is rounded from it, and the discount is the
    difference, so ``discount_amount + final_fare == original_fare`` always.
    """

    def __init__(self, base_fare: int, per_km_rate: int, discounts: Mapping[str, int]):
        if base_fare < 0 or per_km_rate < 0:
            raise ValueError("fare constants must be non-negative")
        for name, pct in discounts.items():
            if not 0 <= int(pct) <= 100:
                raise ValueError(f"discount for {name!r} must be within 0..100")
        self.base_fare = int(base_fare)
        self.per_km_rate = int(per_km_rate)
        self.discounts = {k.lower(): int(v) for k, v in discounts.items()}

    @classmethod
    def from_settings(cls) -> "FareCalculator":
        return cls(settings.BASE_FARE, settings.PER_KM_RATE, settings.CONCESSION_DISCOUNTS)

    def discount_percentage(self, concession_type: str | None) -> int:
        return self.discounts.get((concession_type or "general").lower(), 0)

    def compute_fare(self, distance_km: float, concession_type: str | None = "general") -> FareBreakdown:
        if distance_km is None or not math.isfinite(distance_km):
            raise ValidationError("distance must be a finite number", code="invalid_distance")
        if distance_km < 0:
            raise ValidationError("distance must not be negative", code="invalid_distance")
        pct = self.discount_percentage(concession_type)
        raw = Decimal(self.base_fare) + Decimal(self.per_km_rate) * Decimal(str(distance_km))
        original = round_half_up(raw)
        final = round_half_up(Decimal(original) * Decimal(100 - pct) / Decimal(100))
        return FareBreakdown(
            original_fare=original,
            discount_amount=original - final,
            discount_percentage=pct,
            final_fare=final,
            concession_type=(concession_type or "general").lower(),
        )


_calculator: FareCalculator | None = None


def get_fare_calculator() -> FareCalculator:
    global _calculator
    if _calculator is None:
        _calculator = FareCalculator.from_settings()
    return _calculator
