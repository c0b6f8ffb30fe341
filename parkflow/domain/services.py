# File: parkflow/domain/services.py
"""
Domain Services for the fee engine

FeeComputationService composes the pure strategies into one breakdown:
rate resolver -> fee calculator -> discount engine -> FeeBreakdown.

Rate rules and discount rules are passed in explicitly; the service never
looks anything up, so it is safe to call repeatedly (recalculation) and
returns equal breakdowns for equal inputs.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Iterable, Union
import logging

from .models import RatePlan, RateRules, DiscountRule, FeeBreakdown
from .strategies import (
    RateResolver, FeeCalculator, DiscountEngine, parking_minutes_between, to_local_time
)


@dataclass(frozen=True)
class DiscountRequest:
    """A discount rule paired with an optional operator override of its value"""
    rule: DiscountRule
    value_override: Optional[int] = None


DiscountInput = Union[DiscountRule, DiscountRequest]


class FeeComputationService:
    """
    Domain Service: Computes the full fee breakdown of a stay
    """

    def __init__(
        self,
        rate_resolver: Optional[RateResolver] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        discount_engine: Optional[DiscountEngine] = None
    ):
        self.rate_resolver = rate_resolver or RateResolver()
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.discount_engine = discount_engine or DiscountEngine()
        self._logger = logging.getLogger(self.__class__.__name__)

    def compute_fee(
        self,
        entry_at: datetime,
        exit_at: datetime,
        rates: Union[RatePlan, RateRules, None],
        discounts: Iterable[DiscountInput] = ()
    ) -> FeeBreakdown:
        """
        Compute the breakdown for a stay.

        Args:
            entry_at: Session entry time; it alone decides the rate category
            exit_at: Exit time; an exit before entry counts as zero minutes
            rates: A rate plan, bare rate rules, or None when the session has
                no usable plan (billing then degrades to a zero fee)
            discounts: Rules to apply unconditionally, optionally with overrides
        """
        entry_at = to_local_time(entry_at, self.rate_resolver.timezone)
        exit_at = to_local_time(exit_at, self.rate_resolver.timezone)

        if rates is None:
            self._logger.warning("No rate rules available, computing a zero fee")
            return FeeBreakdown.zero(parking_minutes_between(entry_at, exit_at))

        if isinstance(rates, RatePlan):
            plan_id, plan_name, rules = rates.id, rates.name, rates.rules
        else:
            plan_id, plan_name, rules = None, None, rates

        category = self.rate_resolver.resolve(entry_at, rules)
        tier = rules.tier_for(category)
        calculation = self.fee_calculator.calculate(entry_at, exit_at, tier, rules.free_minutes)

        effects = []
        for item in discounts:
            request = item if isinstance(item, DiscountRequest) else DiscountRequest(item)
            effects.append(self.discount_engine.apply(
                calculation.raw_fee,
                calculation.free_minutes_applied,
                calculation.parking_minutes,
                request.rule,
                request.value_override,
            ))
        discount_total, final_fee = self.discount_engine.settle(calculation.raw_fee, effects)

        return FeeBreakdown(
            parking_minutes=calculation.parking_minutes,
            free_minutes_applied=calculation.free_minutes_applied,
            chargeable_minutes=calculation.chargeable_minutes,
            base_minutes=calculation.base_minutes,
            base_fee=calculation.base_fee,
            additional_minutes=calculation.additional_minutes,
            additional_fee=calculation.additional_fee,
            subtotal=calculation.subtotal,
            daily_max_applied=calculation.daily_max_applied,
            daily_max_cap=calculation.daily_max_cap,
            raw_fee=calculation.raw_fee,
            rate_category=category,
            rate_plan_id=plan_id,
            rate_plan_name=plan_name,
            discounts=tuple(effects),
            discount_total=discount_total,
            final_fee=final_fee,
        )


_default_service = FeeComputationService()


def compute_fee(
    entry_at: datetime,
    exit_at: datetime,
    rates: Union[RatePlan, RateRules, None],
    discounts: Iterable[DiscountInput] = ()
) -> FeeBreakdown:
    """Module-level shortcut using the default (timezone-naive) service"""
    return _default_service.compute_fee(entry_at, exit_at, rates, discounts)
