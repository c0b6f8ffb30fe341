# File: parkflow/domain/strategies.py
"""
Strategy Pattern Implementation for Fee Computation

This module encapsulates the pure algorithms of the pricing engine:

Key Strategies:
1. Rate Selection - Ordered priority table choosing default / night /
   weekend / weekend-night from the session entry time
2. Fee Calculation - Free time, base tier, rounded-up additional units
   and the daily cap
3. Discount Strategies - One strategy per discount type, aggregated by
   the discount engine

Every strategy here is stateless. They hold no shared mutable state and
may be used concurrently from any number of threads.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time, tzinfo
from typing import Optional, List, Dict, Callable, Tuple
import logging

from .models import (
    RateRules, TariffTier, RateCategory,
    DiscountRule, DiscountEffect, DiscountType,
    discount_effects_total
)


# ============================================================================
# RATE SELECTION
# ============================================================================

def is_weekend(moment: datetime) -> bool:
    """Saturday or Sunday"""
    return moment.weekday() >= 5


def to_local_time(moment: datetime, zone: Optional[tzinfo] = None) -> datetime:
    """
    Naive wall-clock time in the given zone.
    Aware values are converted to the zone first; without a zone they keep
    their own wall clock. Naive values are taken as local already.
    """
    if moment.tzinfo is None:
        return moment
    if zone is not None:
        moment = moment.astimezone(zone)
    return moment.replace(tzinfo=None)


def is_night_time(moment: datetime, start: time, end: time) -> bool:
    """
    Check whether a moment falls inside a night window.
    A window whose start is after its end wraps past midnight (22:00-06:00).
    """
    current = moment.time().replace(second=0, microsecond=0)
    if start > end:
        return current >= start or current < end
    return start <= current < end


@dataclass(frozen=True)
class RateSelectionRule:
    """One row of the rate selection priority table"""
    category: RateCategory
    is_enabled: Callable[[RateRules], bool]
    matches: Callable[[bool, bool], bool]  # (weekend, night) -> bool


# Evaluated top to bottom, first match wins.
RATE_SELECTION_PRIORITY: Tuple[RateSelectionRule, ...] = (
    RateSelectionRule(
        RateCategory.WEEKEND_NIGHT,
        lambda rules: rules.weekend_night_rate_enabled and rules.weekend_night is not None,
        lambda weekend, night: weekend and night,
    ),
    RateSelectionRule(
        RateCategory.WEEKEND,
        lambda rules: rules.weekend_rate_enabled and rules.weekend is not None,
        lambda weekend, night: weekend and not night,
    ),
    RateSelectionRule(
        RateCategory.NIGHT,
        lambda rules: rules.night_rate_enabled and rules.night is not None,
        lambda weekend, night: night and not weekend,
    ),
    RateSelectionRule(
        RateCategory.WEEKEND,
        lambda rules: rules.weekend_rate_enabled and rules.weekend is not None,
        lambda weekend, night: weekend,
    ),
    RateSelectionRule(
        RateCategory.NIGHT,
        lambda rules: rules.night_rate_enabled and rules.night is not None,
        lambda weekend, night: night,
    ),
)


class RateResolver:
    """
    Selects the rate category for a session from its entry time.

    The category is fixed by the entry instant; exits on another day or
    across the night-window wrap do not change it.
    """

    def __init__(
        self,
        timezone: Optional[tzinfo] = None,
        priority: Tuple[RateSelectionRule, ...] = RATE_SELECTION_PRIORITY
    ):
        self.timezone = timezone
        self.priority = priority
        self.logger = logging.getLogger(self.__class__.__name__)

    def resolve(self, entry_at: datetime, rules: RateRules) -> RateCategory:
        if not rules.time_based_enabled:
            return RateCategory.DEFAULT

        local_entry = to_local_time(entry_at, self.timezone)
        weekend = is_weekend(local_entry)
        window = rules.night_window
        night = window is not None and is_night_time(local_entry, *window)

        for rule in self.priority:
            if rule.is_enabled(rules) and rule.matches(weekend, night):
                self.logger.debug(
                    f"Rate {rule.category} selected for entry {local_entry} "
                    f"(weekend={weekend}, night={night})"
                )
                return rule.category

        return RateCategory.DEFAULT


# ============================================================================
# FEE CALCULATION
# ============================================================================

@dataclass(frozen=True)
class FeeCalculation:
    """Fee calculator output: every breakdown field up to the raw fee"""
    parking_minutes: int
    free_minutes_applied: int
    chargeable_minutes: int
    base_minutes: int
    base_fee: int
    additional_minutes: int
    additional_fee: int
    subtotal: int
    daily_max_applied: bool
    daily_max_cap: int
    raw_fee: int


def parking_minutes_between(entry_at: datetime, exit_at: datetime) -> int:
    """Whole elapsed minutes, clamped at zero for exits recorded before entry"""
    elapsed = (exit_at - entry_at).total_seconds()
    return max(0, int(elapsed // 60))


class FeeCalculator:
    """
    Tiered fee calculator

    1. Minutes within the free allowance cost nothing
    2. The base tier consumes up to base_minutes for a flat base_fee
    3. Remaining minutes are billed per started additional unit
    4. The total is clamped to the tier's daily maximum
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def calculate(
        self,
        entry_at: datetime,
        exit_at: datetime,
        tier: TariffTier,
        free_minutes: int = 0
    ) -> FeeCalculation:
        parking_minutes = parking_minutes_between(entry_at, exit_at)

        if parking_minutes <= free_minutes:
            return FeeCalculation(
                parking_minutes=parking_minutes,
                free_minutes_applied=parking_minutes,
                chargeable_minutes=0,
                base_minutes=0,
                base_fee=0,
                additional_minutes=0,
                additional_fee=0,
                subtotal=0,
                daily_max_applied=False,
                daily_max_cap=tier.daily_max,
                raw_fee=0,
            )

        chargeable_minutes = parking_minutes - free_minutes

        base_minutes = min(chargeable_minutes, tier.base_minutes)
        base_fee = tier.base_fee
        remaining = chargeable_minutes - base_minutes

        additional_minutes = 0
        additional_fee = 0
        if remaining > 0:
            units = -(-remaining // tier.additional_minutes)  # ceiling division
            additional_minutes = units * tier.additional_minutes
            additional_fee = units * tier.additional_fee

        subtotal = base_fee + additional_fee
        daily_max_applied = subtotal > tier.daily_max
        raw_fee = tier.daily_max if daily_max_applied else subtotal

        self.logger.debug(
            f"{parking_minutes} min parked, {chargeable_minutes} chargeable, "
            f"subtotal {subtotal}, raw fee {raw_fee}"
        )

        return FeeCalculation(
            parking_minutes=parking_minutes,
            free_minutes_applied=free_minutes,
            chargeable_minutes=chargeable_minutes,
            base_minutes=base_minutes,
            base_fee=base_fee,
            additional_minutes=additional_minutes,
            additional_fee=additional_fee,
            subtotal=subtotal,
            daily_max_applied=daily_max_applied,
            daily_max_cap=tier.daily_max,
            raw_fee=raw_fee,
        )


# ============================================================================
# DISCOUNT STRATEGIES
# ============================================================================

class DiscountStrategy(ABC):
    """Computes the monetary effect of one discount type"""

    @abstractmethod
    def calculate(self, raw_fee: int, chargeable_minutes: int, value: int) -> int:
        """Return the amount taken off the raw fee"""
        pass


class AmountDiscountStrategy(DiscountStrategy):
    """Fixed amount off, never more than the fee itself"""

    def calculate(self, raw_fee: int, chargeable_minutes: int, value: int) -> int:
        return min(value, raw_fee)


class PercentDiscountStrategy(DiscountStrategy):
    """Percentage of the fee, rounded down"""

    def calculate(self, raw_fee: int, chargeable_minutes: int, value: int) -> int:
        percent = max(0, min(100, value))
        return raw_fee * percent // 100


class FreeMinutesDiscountStrategy(DiscountStrategy):
    """
    Free minutes priced at the session's average per-minute rate
    (raw fee spread over the chargeable minutes). This approximates the
    tiered schedule rather than re-deriving it.
    """

    def calculate(self, raw_fee: int, chargeable_minutes: int, value: int) -> int:
        per_minute_basis = max(chargeable_minutes, 1)
        return min(raw_fee * value // per_minute_basis, raw_fee)


class FreeAllDiscountStrategy(DiscountStrategy):

    def calculate(self, raw_fee: int, chargeable_minutes: int, value: int) -> int:
        return raw_fee


class DiscountEngine:
    """
    Applies discount rules to a raw fee.

    Applies whatever it is given. Stacking eligibility and application
    limits are checked by the caller beforehand.
    """

    def __init__(self, strategies: Optional[Dict[DiscountType, DiscountStrategy]] = None):
        self.strategies = strategies or {
            DiscountType.AMOUNT: AmountDiscountStrategy(),
            DiscountType.PERCENT: PercentDiscountStrategy(),
            DiscountType.FREE_MINUTES: FreeMinutesDiscountStrategy(),
            DiscountType.FREE_ALL: FreeAllDiscountStrategy(),
        }
        self.logger = logging.getLogger(self.__class__.__name__)

    def apply(
        self,
        raw_fee: int,
        free_minutes_used: int,
        total_parking_minutes: int,
        rule: DiscountRule,
        value_override: Optional[int] = None
    ) -> DiscountEffect:
        value = rule.value if value_override is None else value_override
        chargeable_minutes = total_parking_minutes - free_minutes_used
        applied_value = self.strategies[rule.type].calculate(raw_fee, chargeable_minutes, value)

        self.logger.debug(f"Discount {rule.name} ({rule.type}) applied {applied_value} of {raw_fee}")
        return DiscountEffect(
            rule_id=rule.id,
            rule_name=rule.name,
            type=rule.type,
            applied_value=applied_value,
        )

    @staticmethod
    def settle(raw_fee: int, effects: List[DiscountEffect]) -> Tuple[int, int]:
        """
        Aggregate effects into (discount_total, final_fee).
        The total is reported uncapped; the final fee never drops below zero.
        """
        discount_total = discount_effects_total(effects)
        return discount_total, max(0, raw_fee - discount_total)
