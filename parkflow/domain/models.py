# File: parkflow/domain/models.py
"""
Domain Models for the Parking Session & Fee Engine
Following Domain-Driven Design (DDD) principles

This module contains:
1. Enums - Session states, close reasons, rate categories, discount types
2. Value Objects - License plates, tariff tiers, rate rules, fee breakdowns
3. Entities - Base entity with identity
4. Records - Write-once capture events, barrier commands, payments
5. Domain Events - Events raised by the session aggregate

All monetary amounts are non-negative integers in the smallest currency unit
(KRW has no minor unit), so no floating-point arithmetic touches money.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, time
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
import re
import uuid


# ============================================================================
# ENUMS
# ============================================================================

class SessionStatus(Enum):
    """Lifecycle states of a parking session"""
    PARKING = "PARKING"
    EXIT_PENDING = "EXIT_PENDING"
    PAID = "PAID"
    CLOSED = "CLOSED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self == SessionStatus.CLOSED

    def __str__(self) -> str:
        return self.value


class PaymentStatus(Enum):
    """Payment state tracked on a session"""
    NONE = "NONE"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    def __str__(self) -> str:
        return self.value


class PaymentMethod(Enum):
    """How a payment was collected"""
    CARD = "CARD"
    CASH = "CASH"
    MOBILE = "MOBILE"
    MOCK = "MOCK"


class CloseReason(Enum):
    """Why a session reached CLOSED"""
    NORMAL_EXIT = "NORMAL_EXIT"
    MANUAL_EXIT = "MANUAL_EXIT"
    FORCE_CLOSE = "FORCE_CLOSE"
    SYSTEM_CLOSE = "SYSTEM_CLOSE"
    ERROR_RECOVERY = "ERROR_RECOVERY"
    MEMBERSHIP_VALID = "MEMBERSHIP_VALID"
    FREE_EXIT = "FREE_EXIT"

    def __str__(self) -> str:
        return self.value


class RateCategory(Enum):
    """Tariff category selected from the session entry time"""
    DEFAULT = "default"
    NIGHT = "night"
    WEEKEND = "weekend"
    WEEKEND_NIGHT = "weekendNight"

    def __str__(self) -> str:
        return self.value


class DiscountType(Enum):
    """Supported discount rule types"""
    AMOUNT = "AMOUNT"
    PERCENT = "PERCENT"
    FREE_MINUTES = "FREE_MINUTES"
    FREE_ALL = "FREE_ALL"

    def __str__(self) -> str:
        return self.value


class LaneDirection(Enum):
    """Direction of a lane where a capture happened"""
    ENTRY = "ENTRY"
    EXIT = "EXIT"

    def __str__(self) -> str:
        return self.value


class BarrierAction(Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"


class BarrierReason(Enum):
    """Reason attached to a barrier command"""
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    MEMBERSHIP_VALID = "MEMBERSHIP_VALID"
    FREE_EXIT = "FREE_EXIT"
    MANUAL_OPEN = "MANUAL_OPEN"
    EMERGENCY = "EMERGENCY"

    def __str__(self) -> str:
        return self.value


# ============================================================================
# VALUE OBJECTS
# ============================================================================

_PLATE_STRIP_PATTERN = re.compile(r'[^가-힣A-Z0-9]')
_KOREAN_PLATE_PATTERNS = (
    re.compile(r'^\d{2}[가-힣]\d{4}$'),          # 12가3456
    re.compile(r'^\d{3}[가-힣]\d{4}$'),          # 123가4567
    re.compile(r'^[가-힣]{2}\d{2}[가-힣]\d{4}$'),  # 서울12가3456
)
_TIME_OF_DAY_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


def normalize_plate_no(raw: str) -> str:
    """
    Normalize a captured plate number:
    strip all whitespace, uppercase, keep only Hangul syllables, A-Z and 0-9
    """
    collapsed = re.sub(r'\s+', '', raw or '').upper()
    return _PLATE_STRIP_PATTERN.sub('', collapsed)


def is_valid_korean_plate(plate: str) -> bool:
    normalized = normalize_plate_no(plate)
    return any(pattern.match(normalized) for pattern in _KOREAN_PLATE_PATTERNS)


def parse_time_of_day(value: str) -> time:
    """Parse an 'HH:MM' string into a time"""
    if not value or not _TIME_OF_DAY_PATTERN.match(value):
        raise ValueError(f"Time of day must be HH:MM, got: {value!r}")
    hours, minutes = value.split(':')
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class LicensePlate:
    """
    Value Object: Normalized license plate number
    Two captures of the same physical plate compare equal after normalization
    """
    value: str

    def __post_init__(self):
        normalized = normalize_plate_no(self.value)
        if not normalized:
            raise ValueError(f"License plate has no usable characters: {self.value!r}")
        object.__setattr__(self, 'value', normalized)

    @property
    def is_korean_format(self) -> bool:
        """Informational only; non-matching plates are still processed"""
        return is_valid_korean_plate(self.value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TariffTier:
    """
    Value Object: One complete billing configuration (base + additional + cap)
    """
    base_minutes: int = 30
    base_fee: int = 1000
    additional_minutes: int = 10
    additional_fee: int = 500
    daily_max: int = 15000

    def __post_init__(self):
        if self.base_minutes < 1:
            raise ValueError("Base minutes must be at least 1")
        if self.additional_minutes < 1:
            raise ValueError("Additional minutes must be at least 1")
        for name in ('base_fee', 'additional_fee', 'daily_max'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TariffTier':
        return cls(**data)


@dataclass(frozen=True)
class RateRules:
    """
    Value Object: Full tariff of a rate plan

    The default tier always applies unless time-based selection is enabled and
    a conditional tier (night / weekend / weekend night) is both enabled and
    present. Free minutes are shared by every tier.
    """
    default: TariffTier = field(default_factory=TariffTier)
    free_minutes: int = 30
    grace_minutes: int = 15
    time_based_enabled: bool = False
    night_rate_enabled: bool = False
    night_start: Optional[str] = None
    night_end: Optional[str] = None
    night: Optional[TariffTier] = None
    weekend_rate_enabled: bool = False
    weekend: Optional[TariffTier] = None
    weekend_night_rate_enabled: bool = False
    weekend_night: Optional[TariffTier] = None

    def __post_init__(self):
        if self.free_minutes < 0:
            raise ValueError("Free minutes cannot be negative")
        if self.grace_minutes < 0:
            raise ValueError("Grace minutes cannot be negative")
        for bound in (self.night_start, self.night_end):
            if bound is not None:
                parse_time_of_day(bound)

    @property
    def night_window(self) -> Optional[Tuple[time, time]]:
        """Night window, only when night pricing is switched on and both ends are set"""
        if not (self.night_rate_enabled and self.night_start and self.night_end):
            return None
        return parse_time_of_day(self.night_start), parse_time_of_day(self.night_end)

    def tier_for(self, category: RateCategory) -> TariffTier:
        """Resolve the tariff tier for a category, falling back to the default tier"""
        if category == RateCategory.NIGHT:
            return self.night or self.default
        if category == RateCategory.WEEKEND:
            return self.weekend or self.default
        if category == RateCategory.WEEKEND_NIGHT:
            return self.weekend_night or self.weekend or self.default
        return self.default

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ('night', 'weekend', 'weekend_night'):
            if data[name] is None:
                del data[name]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateRules':
        values = dict(data)
        for name in ('default', 'night', 'weekend', 'weekend_night'):
            if isinstance(values.get(name), dict):
                values[name] = TariffTier.from_dict(values[name])
        return cls(**values)


DEFAULT_RATE_RULES = RateRules()


@dataclass(frozen=True)
class RatePlan:
    """Value Object: Named set of rate rules"""
    name: str
    rules: RateRules = DEFAULT_RATE_RULES
    is_active: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Rate plan name cannot be empty")


@dataclass(frozen=True)
class DiscountRule:
    """Value Object: Operator-defined discount rule, read-only to the engine"""
    name: str
    type: DiscountType
    value: int
    is_stackable: bool = True
    max_apply_count: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not isinstance(self.type, DiscountType):
            object.__setattr__(self, 'type', DiscountType(self.type))
        if self.value < 0:
            raise ValueError("Discount value cannot be negative")
        if self.max_apply_count is not None and self.max_apply_count < 1:
            raise ValueError("Max apply count must be at least 1")


@dataclass(frozen=True)
class DiscountEffect:
    """Value Object: One rule's monetary impact on one fee"""
    rule_id: str
    rule_name: str
    type: DiscountType
    applied_value: int

    @property
    def description(self) -> str:
        return f"{self.rule_name} ({self.type.value}): -{self.applied_value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rule_id': self.rule_id,
            'rule_name': self.rule_name,
            'type': self.type.value,
            'applied_value': self.applied_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiscountEffect':
        return cls(
            rule_id=data['rule_id'],
            rule_name=data['rule_name'],
            type=DiscountType(data['type']),
            applied_value=int(data['applied_value']),
        )


@dataclass(frozen=True)
class FeeBreakdown:
    """
    Value Object: Complete result of one fee computation

    Never mutated; recomputation produces a new instance. Carries no
    wall-clock timestamp so identical inputs give equal breakdowns.
    """
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
    rate_category: RateCategory = RateCategory.DEFAULT
    rate_plan_id: Optional[str] = None
    rate_plan_name: Optional[str] = None
    discounts: Tuple[DiscountEffect, ...] = ()
    discount_total: int = 0
    final_fee: int = 0

    @classmethod
    def zero(cls, parking_minutes: int = 0) -> 'FeeBreakdown':
        """Breakdown used when no rate plan is available"""
        return cls(
            parking_minutes=parking_minutes,
            free_minutes_applied=0,
            chargeable_minutes=0,
            base_minutes=0,
            base_fee=0,
            additional_minutes=0,
            additional_fee=0,
            subtotal=0,
            daily_max_applied=False,
            daily_max_cap=0,
            raw_fee=0,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if name not in ('discounts', 'rate_category')
        }
        data['rate_category'] = self.rate_category.value
        data['discounts'] = [effect.to_dict() for effect in self.discounts]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeeBreakdown':
        values = dict(data)
        values['rate_category'] = RateCategory(values.get('rate_category', 'default'))
        values['discounts'] = tuple(
            DiscountEffect.from_dict(effect) for effect in values.get('discounts', [])
        )
        return cls(**values)


# ============================================================================
# ENTITIES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        """Get entity ID"""
        return self._id

    def __eq__(self, other: object) -> bool:
        """Entities are equal if they have the same ID and type"""
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


# ============================================================================
# WRITE-ONCE RECORDS
# ============================================================================

@dataclass(frozen=True)
class PlateEvent:
    """
    Immutable capture record
    session_id is None for duplicate entries and orphaned exits
    """
    direction: LaneDirection
    plate_no: str
    plate_no_raw: str
    lane_id: str
    captured_at: datetime
    device_id: Optional[str] = None
    confidence: Optional[float] = None
    image_url: Optional[str] = None
    session_id: Optional[str] = None
    received_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class BarrierCommand:
    """Intent to drive a barrier, consumed asynchronously by device collaborators"""
    device_id: str
    lane_id: str
    reason: BarrierReason
    correlation_id: Optional[str] = None
    action: BarrierAction = BarrierAction.OPEN
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'device_id': self.device_id,
            'lane_id': self.lane_id,
            'action': self.action.value,
            'reason': self.reason.value,
            'correlation_id': self.correlation_id,
            'created_at': self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Membership:
    """Membership pass covering a plate between two instants (inclusive)"""
    plate_no: str
    valid_from: datetime
    valid_to: datetime
    member_name: Optional[str] = None
    note: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        object.__setattr__(self, 'plate_no', LicensePlate(self.plate_no).value)
        if self.valid_to < self.valid_from:
            raise ValueError("Membership validity ends before it starts")

    def covers(self, instant: datetime) -> bool:
        return self.valid_from <= instant <= self.valid_to


@dataclass(frozen=True)
class MembershipStatus:
    """Answer of a membership lookup"""
    is_valid: bool
    membership_id: Optional[str] = None


@dataclass(frozen=True)
class Payment:
    session_id: str
    amount: int
    paid_at: datetime
    method: PaymentMethod = PaymentMethod.MOCK
    status: PaymentStatus = PaymentStatus.PAID
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("Payment amount cannot be negative")


@dataclass(frozen=True)
class DiscountApplication:
    """Record of an operator applying a discount rule to a session"""
    session_id: str
    rule_id: str
    applied_value: int
    applied_at: datetime
    value_override: Optional[int] = None
    reason: Optional[str] = None
    applied_by: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened in the domain
    """

    event_type: str = "domain.event"

    def __init__(self):
        self.event_id = str(uuid.uuid4())
        self.timestamp = datetime.now()
        self.version = "1.0"

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization"""
        pass

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class SessionEvent(DomainEvent):
    """Base for events raised by the parking session aggregate"""

    def __init__(self, session_id: str, plate_no: str, status: SessionStatus, **details: Any):
        super().__init__()
        self.session_id = session_id
        self.plate_no = plate_no
        self.status = status
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type,
            'timestamp': self.timestamp.isoformat(),
            'session_id': self.session_id,
            'plate_no': self.plate_no,
            'status': self.status.value,
            **self.details,
        }


class SessionOpenedEvent(SessionEvent):
    event_type = "session.opened"


class SessionExitPendingEvent(SessionEvent):
    event_type = "session.exit_pending"


class SessionPaidEvent(SessionEvent):
    event_type = "session.paid"


class SessionClosedEvent(SessionEvent):
    event_type = "session.closed"


class SessionRepricedEvent(SessionEvent):
    event_type = "session.repriced"


class SessionCorrectedEvent(SessionEvent):
    event_type = "session.corrected"


class SessionErrorEvent(SessionEvent):
    event_type = "session.error"


def discount_effects_total(effects: List[DiscountEffect]) -> int:
    """Uncapped sum of discount effects"""
    return sum(effect.applied_value for effect in effects)
