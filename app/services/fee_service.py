"""
Processing-fee pass-through.

When enabled, the payer covers the processor's fee so the merchant nets the
full amount. The fee is grossed up: the processor takes its percentage of
the *total* charged, not of the base amount, so

    total = (base + flat) / (1 - percent / 100)
    fee   = ceil(total - base)

e.g. base 10000, 2.9% + 30 -> total 10329.56 -> fee 330 cents.

Rounding is always up so the merchant is never short by a fraction of a
cent. Decimal arithmetic keeps the result independent of float error.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING

from app.config import Settings


@dataclass(frozen=True)
class FeeConfig:
    enabled: bool = False
    percent: Decimal = Decimal("0")
    flat_cents: int = 0
    refundable: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeeConfig":
        return cls(
            enabled=settings.PROCESSING_FEE_ENABLED,
            percent=Decimal(str(settings.PROCESSING_FEE_PERCENT)),
            flat_cents=settings.PROCESSING_FEE_FLAT_CENTS,
            refundable=settings.PROCESSING_FEE_REFUNDABLE,
        )

    def calculate_fee(self, base_cents: int) -> int:
        """Fee in cents to add on top of base_cents (0 when disabled)."""
        if not self.enabled or base_cents <= 0:
            return 0
        if self.percent <= 0:
            return self.flat_cents
        if self.percent >= 100:
            raise ValueError("fee percent must be below 100")

        rate = self.percent / Decimal(100)
        total = (Decimal(base_cents) + Decimal(self.flat_cents)) / (Decimal(1) - rate)
        fee = (total - Decimal(base_cents)).to_integral_value(rounding=ROUND_CEILING)
        return int(fee)

    def breakdown(self, base_cents: int) -> "FeeBreakdown":
        return FeeBreakdown(
            fee_cents=self.calculate_fee(base_cents),
            percent=self.percent if self.enabled else None,
            flat_cents=self.flat_cents if self.enabled else None,
            refundable=self.enabled and self.refundable,
        )


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee audit values stored on the transaction when its intent is created."""
    fee_cents: int = 0
    percent: Decimal | None = None
    flat_cents: int | None = None
    refundable: bool = False
