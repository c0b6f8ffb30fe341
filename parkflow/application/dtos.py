# File: parkflow/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Parking Session Engine

This module defines DTOs for data crossing the application boundary:
1. Capture DTOs - Validated plate captures from LPR devices
2. Configuration DTOs - Rate plans, discount rules, memberships, barrier
   bindings (also used to seed an engine from YAML)
3. Request DTOs - Operator and kiosk requests (payment, discount,
   recalculation, correction, force close)

DTO Principles:
- Validation at creation; malformed input never reaches the state machine
- camelCase aliases for wire payloads, snake_case names in Python
- No business logic, only data and conversion to domain value objects
"""

from datetime import datetime, tzinfo
from typing import Dict, List, Optional, Any
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..domain.models import (
    TariffTier, RateRules, RatePlan, DiscountRule, Membership,
    DiscountType, LaneDirection, PaymentMethod, normalize_plate_no
)
from ..domain.strategies import to_local_time


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        return self.model_dump(exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls.model_validate(json.loads(json_str))


class SessionRequestDTO(BaseDTO):
    """Base for requests that target one session"""
    session_id: str = Field(..., min_length=1, description="Parking session ID")


# ============================================================================
# CAPTURE DTOs
# ============================================================================

class PlateCaptureDTO(BaseDTO):
    """License plate capture reported by an LPR camera"""
    device_id: str = Field(..., min_length=1, description="Capturing device ID")
    lane_id: str = Field(..., min_length=1, description="Lane the camera watches")
    direction: LaneDirection = Field(..., description="ENTRY or EXIT")
    plate_no: str = Field(..., min_length=1, max_length=20, description="Raw recognized plate")
    captured_at: datetime = Field(..., description="Capture timestamp")
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    image_url: Optional[str] = Field(default=None, description="Snapshot location")

    @field_validator("plate_no")
    @classmethod
    def check_plate_no(cls, value: str) -> str:
        if not normalize_plate_no(value):
            raise ValueError("plate number has no letters or digits")
        return value


# ============================================================================
# CONFIGURATION DTOs
# ============================================================================

TIME_OF_DAY_PATTERN = r'^([01]\d|2[0-3]):[0-5]\d$'


class TariffTierDTO(BaseDTO):
    """One billing tier"""
    base_minutes: int = Field(default=30, ge=1)
    base_fee: int = Field(default=1000, ge=0)
    additional_minutes: int = Field(default=10, ge=1)
    additional_fee: int = Field(default=500, ge=0)
    daily_max: int = Field(default=15000, ge=0)

    def to_domain(self) -> TariffTier:
        return TariffTier(
            base_minutes=self.base_minutes,
            base_fee=self.base_fee,
            additional_minutes=self.additional_minutes,
            additional_fee=self.additional_fee,
            daily_max=self.daily_max,
        )


class RateRulesDTO(BaseDTO):
    """Full tariff: default tier plus optional night / weekend tiers"""
    free_minutes: int = Field(default=30, ge=0)
    grace_minutes: int = Field(default=15, ge=0)
    default: TariffTierDTO = Field(default_factory=TariffTierDTO)
    time_based_enabled: bool = False
    night_rate_enabled: bool = False
    night_start: Optional[str] = Field(default=None, pattern=TIME_OF_DAY_PATTERN)
    night_end: Optional[str] = Field(default=None, pattern=TIME_OF_DAY_PATTERN)
    night: Optional[TariffTierDTO] = None
    weekend_rate_enabled: bool = False
    weekend: Optional[TariffTierDTO] = None
    weekend_night_rate_enabled: bool = False
    weekend_night: Optional[TariffTierDTO] = None

    @model_validator(mode='after')
    def check_night_window(self) -> 'RateRulesDTO':
        if (self.night_start is None) != (self.night_end is None):
            raise ValueError("nightStart and nightEnd must be set together")
        return self

    def to_domain(self) -> RateRules:
        return RateRules(
            default=self.default.to_domain(),
            free_minutes=self.free_minutes,
            grace_minutes=self.grace_minutes,
            time_based_enabled=self.time_based_enabled,
            night_rate_enabled=self.night_rate_enabled,
            night_start=self.night_start,
            night_end=self.night_end,
            night=self.night.to_domain() if self.night else None,
            weekend_rate_enabled=self.weekend_rate_enabled,
            weekend=self.weekend.to_domain() if self.weekend else None,
            weekend_night_rate_enabled=self.weekend_night_rate_enabled,
            weekend_night=self.weekend_night.to_domain() if self.weekend_night else None,
        )


class RatePlanDTO(BaseDTO):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    rules: RateRulesDTO = Field(default_factory=RateRulesDTO)
    is_active: bool = False

    def to_domain(self) -> RatePlan:
        extra = {'id': self.id} if self.id else {}
        return RatePlan(name=self.name, rules=self.rules.to_domain(), is_active=self.is_active, **extra)


class DiscountRuleDTO(BaseDTO):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    type: DiscountType
    value: int = Field(..., ge=0)
    is_stackable: bool = True
    max_apply_count: Optional[int] = Field(default=None, ge=1)

    def to_domain(self) -> DiscountRule:
        extra = {'id': self.id} if self.id else {}
        return DiscountRule(
            name=self.name,
            type=DiscountType(self.type),
            value=self.value,
            is_stackable=self.is_stackable,
            max_apply_count=self.max_apply_count,
            **extra
        )


class MembershipDTO(BaseDTO):
    id: Optional[str] = None
    plate_no: str = Field(..., min_length=1, max_length=20)
    member_name: Optional[str] = Field(default=None, max_length=100)
    valid_from: datetime
    valid_to: datetime
    note: Optional[str] = Field(default=None, max_length=500)

    @field_validator("plate_no")
    @classmethod
    def check_plate_no(cls, value: str) -> str:
        if not normalize_plate_no(value):
            raise ValueError("plate number has no letters or digits")
        return value

    @model_validator(mode='after')
    def check_validity_window(self) -> 'MembershipDTO':
        start, end = self.valid_from, self.valid_to
        if (start.tzinfo is None) != (end.tzinfo is None):
            start, end = to_local_time(start), to_local_time(end)
        if end < start:
            raise ValueError("validTo must not be before validFrom")
        return self

    def to_domain(self, zone: Optional[tzinfo] = None) -> Membership:
        """Validity bounds become naive wall-clock time in the given zone"""
        extra = {'id': self.id} if self.id else {}
        return Membership(
            plate_no=self.plate_no,
            valid_from=to_local_time(self.valid_from, zone),
            valid_to=to_local_time(self.valid_to, zone),
            member_name=self.member_name,
            note=self.note,
            **extra
        )


class BarrierBindingDTO(BaseDTO):
    """Binds a barrier device to the lane it guards"""
    lane_id: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1)


class SeedDataDTO(BaseDTO):
    """Reference data an engine can be seeded with"""
    rate_plans: List[RatePlanDTO] = Field(default_factory=list)
    discount_rules: List[DiscountRuleDTO] = Field(default_factory=list)
    memberships: List[MembershipDTO] = Field(default_factory=list)
    barriers: List[BarrierBindingDTO] = Field(default_factory=list)

    @model_validator(mode='after')
    def check_single_active_plan(self) -> 'SeedDataDTO':
        if sum(1 for plan in self.rate_plans if plan.is_active) > 1:
            raise ValueError("At most one rate plan can be active")
        return self


# ============================================================================
# REQUEST DTOs
# ============================================================================

class FeeQueryDTO(BaseDTO):
    """Stand-alone fee computation request"""
    entry_at: datetime
    exit_at: datetime
    rules: RateRulesDTO = Field(default_factory=RateRulesDTO)
    discounts: List[DiscountRuleDTO] = Field(default_factory=list)


class PaymentConfirmationDTO(SessionRequestDTO):
    amount: int = Field(..., ge=0)
    method: PaymentMethod = PaymentMethod.MOCK
    paid_at: Optional[datetime] = None


class ApplyDiscountRequestDTO(SessionRequestDTO):
    discount_rule_id: str = Field(..., min_length=1)
    value_override: Optional[int] = Field(default=None, ge=0)
    reason: Optional[str] = Field(default=None, max_length=500)
    applied_by: Optional[str] = None


class RecalculateRequestDTO(SessionRequestDTO):
    rate_plan_id: Optional[str] = None
    reason: str = Field(..., min_length=1, max_length=500)


class SessionCorrectionDTO(SessionRequestDTO):
    plate_no_corrected: Optional[str] = Field(default=None, min_length=1, max_length=20)
    entry_at: Optional[datetime] = None
    exit_at: Optional[datetime] = None
    reason: str = Field(..., min_length=1, max_length=500)

    @model_validator(mode='after')
    def check_has_correction(self) -> 'SessionCorrectionDTO':
        if not (self.plate_no_corrected or self.entry_at or self.exit_at):
            raise ValueError("At least one field must be corrected")
        return self


class ForceCloseRequestDTO(SessionRequestDTO):
    reason: str = Field(..., min_length=1, max_length=500)
    note: Optional[str] = Field(default=None, max_length=1000)


class FlagErrorRequestDTO(SessionRequestDTO):
    reason: str = Field(..., min_length=1, max_length=500)
