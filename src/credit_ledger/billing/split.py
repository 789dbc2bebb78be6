"""
Sale Split Calculator

Divides a course sale between the platform and the creator in integer minor
units (cents). The platform fee is rounded half-up and the creator receives
the remainder, so the two parts always add back to the gross amount.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from ..core.errors import InvalidAmount

Number = Union[int, float, str, Decimal]

CENTS = Decimal(100)


@dataclass(frozen=True)
class SplitResult:
    """Platform/creator division of one sale."""
    gross_cents: int
    platform_fee_cents: int
    creator_amount_cents: int
    commission_rate: Decimal

    @property
    def gross_amount(self) -> Decimal:
        return Decimal(self.gross_cents) / CENTS

    @property
    def platform_fee(self) -> Decimal:
        return Decimal(self.platform_fee_cents) / CENTS

    @property
    def creator_amount(self) -> Decimal:
        return Decimal(self.creator_amount_cents) / CENTS

    def to_gateway_params(
        self,
        destination_account: str,
        currency: str = "brl",
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Payment-intent parameters for a destination charge.

        The gateway keeps ``application_fee_amount`` for the platform and
        transfers the rest to the creator's connected account.
        """
        params: Dict[str, Any] = {
            "amount": self.gross_cents,
            "currency": currency,
            "application_fee_amount": self.platform_fee_cents,
            "transfer_data": {"destination": destination_account},
            "metadata": {
                "platform_fee": str(self.platform_fee_cents),
                "creator_amount": str(self.creator_amount_cents),
                "commission_rate": str(self.commission_rate),
            },
        }
        if metadata:
            params["metadata"].update(metadata)
        return params

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gross_cents": self.gross_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "creator_amount_cents": self.creator_amount_cents,
            "gross_amount": str(self.gross_amount),
            "platform_fee": str(self.platform_fee),
            "creator_amount": str(self.creator_amount),
            "commission_rate": str(self.commission_rate),
        }


def _to_decimal(value: Number) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def normalize_rate(commission_rate: Number) -> Decimal:
    """Non-finite rates count as zero; the rest is clamped to [0, 1]."""
    rate = _to_decimal(commission_rate)
    if rate is None:
        return Decimal(0)
    return max(Decimal(0), min(rate, Decimal(1)))


def calculate_split(gross_amount: Number, commission_rate: Number) -> SplitResult:
    """
    Split ``gross_amount`` (major units, e.g. reais) at ``commission_rate``.

    >>> calculate_split("19.99", "0.15").platform_fee_cents
    300
    """
    gross = _to_decimal(gross_amount)
    if gross is None:
        raise InvalidAmount(gross_amount, "gross amount must be a finite number")
    if gross < 0:
        raise InvalidAmount(gross_amount, "gross amount cannot be negative")

    rate = normalize_rate(commission_rate)
    gross_cents = _round_half_up(gross * CENTS)
    platform_fee_cents = _round_half_up(gross_cents * rate)

    return SplitResult(
        gross_cents=gross_cents,
        platform_fee_cents=platform_fee_cents,
        creator_amount_cents=gross_cents - platform_fee_cents,
        commission_rate=rate,
    )
