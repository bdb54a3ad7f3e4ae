"""Settlement fee schedule.

One canonical schedule is applied at settlement time: 11% of the gross payout,
split 10% platform / 1% reserve. The safety slice is kept as a separate,
configurable rate (0 by default) and is routed to the reserve together with the
reserve slice. Instant payouts add a fixed service fee on top.

All amounts are whole currency units. Each percentage slice is rounded half-up
on its own and the net is derived by subtraction, so
``net_amount + total_fees == gross_amount`` always holds exactly.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_HALF_UP

from payfesa.errors import InvalidAmountError


@dataclass(frozen=True)
class FeeSchedule:
    platform_rate: Decimal = Decimal("0.10")
    reserve_rate: Decimal = Decimal("0.01")
    safety_rate: Decimal = Decimal("0")
    instant_fee: int = 1500

    @property
    def percentage_rate(self) -> Decimal:
        return self.platform_rate + self.reserve_rate + self.safety_rate


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: int
    platform_fee: int
    reserve_fee: int
    service_fee: int
    safety_fee: int
    total_fees: int
    net_amount: int

    @property
    def reserve_routed(self) -> int:
        """Amount that goes to the group's reserve wallet."""
        return self.reserve_fee + self.safety_fee

    def to_dict(self) -> dict:
        return {
            "gross_amount": self.gross_amount,
            "platform_fee": self.platform_fee,
            "reserve_fee": self.reserve_fee,
            "service_fee": self.service_fee,
            "safety_fee": self.safety_fee,
            "total_fees": self.total_fees,
            "net_amount": self.net_amount,
        }


DEFAULT_SCHEDULE = FeeSchedule()


def schedule_from_config(config) -> FeeSchedule:
    try:
        return FeeSchedule(
            platform_rate=Decimal(str(config.get("PLATFORM_FEE_RATE", DEFAULT_SCHEDULE.platform_rate))),
            reserve_rate=Decimal(str(config.get("RESERVE_FEE_RATE", DEFAULT_SCHEDULE.reserve_rate))),
            safety_rate=Decimal(str(config.get("SAFETY_FEE_RATE", DEFAULT_SCHEDULE.safety_rate))),
            instant_fee=int(config.get("INSTANT_PAYOUT_FEE", DEFAULT_SCHEDULE.instant_fee)),
        )
    except (InvalidOperation, TypeError, ValueError) as e:
        raise RuntimeError(f"Invalid fee configuration: {e}")


def to_units(amount) -> int:
    """Coerce an amount to whole currency units, rejecting anything else."""
    if isinstance(amount, bool):
        raise InvalidAmountError()
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError()
    if not value.is_finite() or value != value.to_integral_value():
        raise InvalidAmountError()
    return int(value)


def _slice(gross: int, rate: Decimal) -> int:
    return int((Decimal(gross) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_fees(gross_amount, *, instant: bool = False, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    s = schedule or DEFAULT_SCHEDULE
    gross = to_units(gross_amount)
    if gross <= 0:
        raise InvalidAmountError()

    platform_fee = _slice(gross, s.platform_rate)
    reserve_fee = _slice(gross, s.reserve_rate)
    safety_fee = _slice(gross, s.safety_rate)
    service_fee = int(s.instant_fee) if instant else 0

    total = platform_fee + reserve_fee + safety_fee + service_fee
    if total > gross:
        raise InvalidAmountError("Amount is too small to cover payout fees")

    return FeeBreakdown(
        gross_amount=gross,
        platform_fee=platform_fee,
        reserve_fee=reserve_fee,
        service_fee=service_fee,
        safety_fee=safety_fee,
        total_fees=total,
        net_amount=gross - total,
    )


def calculate_gross_from_net(net_amount, *, instant: bool = False, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    """Breakdown for the smallest gross amount that nets at least ``net_amount``."""
    s = schedule or DEFAULT_SCHEDULE
    net = to_units(net_amount)
    if net <= 0:
        raise InvalidAmountError()
    if s.percentage_rate >= 1:
        raise InvalidAmountError("Fee schedule leaves nothing to pay out")

    fixed = int(s.instant_fee) if instant else 0
    gross = int(((Decimal(net + fixed)) / (1 - s.percentage_rate)).to_integral_value(rounding=ROUND_CEILING))
    # Per-slice rounding can shift the net by a unit either way; settle on the minimum.
    while gross > 1:
        try:
            if calculate_fees(gross - 1, instant=instant, schedule=s).net_amount < net:
                break
        except InvalidAmountError:
            break
        gross -= 1
    breakdown = calculate_fees(gross, instant=instant, schedule=s)
    while breakdown.net_amount < net:
        gross += 1
        breakdown = calculate_fees(gross, instant=instant, schedule=s)
    return breakdown
