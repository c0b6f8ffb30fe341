# File: parkflow/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Parking Session Engine

Repositories give the application layer a collection-like view of sessions
and the records around them, hiding the storage technology.

Repository Types:
1. Session Repository - ParkingSession aggregates
2. Record Repositories - Write-once plate events, payments, discount
   applications and barrier commands
3. Reference Stores - Rate plans, discount rules, memberships and the
   lane -> barrier device directory, all read-only to the engine

Storage Implementations:
- InMemory* - For tests and CLI replays
- SQLAlchemy* - For relational databases

A Unit of Work groups one repository of each kind over a single
transaction; the session service opens a fresh one per operation.
"""

from abc import ABC, abstractmethod
from typing import Type, TypeVar, Generic, Optional, List, Dict, Callable
from datetime import datetime
from dataclasses import replace
import copy
import logging
import threading
from uuid import uuid4

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, Float,
    DateTime, Text, JSON, ForeignKey
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.models import (
    RatePlan, RateRules, DiscountRule, DiscountType, Membership, MembershipStatus,
    PlateEvent, BarrierCommand, BarrierAction, BarrierReason, Payment,
    PaymentMethod, PaymentStatus, DiscountApplication, FeeBreakdown,
    SessionStatus, CloseReason, LaneDirection, normalize_plate_no
)
from ..domain.aggregates import ParkingSession

T = TypeVar('T')

EXITABLE_STATUSES = (SessionStatus.PARKING, SessionStatus.PAID)


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class SessionRepository(ABC):
    """Persistence of ParkingSession aggregates"""

    @abstractmethod
    def add(self, session: ParkingSession) -> ParkingSession:
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[ParkingSession]:
        pass

    @abstractmethod
    def update(self, session: ParkingSession) -> ParkingSession:
        pass

    @abstractmethod
    def find_active_by_plate(self, plate_no: str) -> Optional[ParkingSession]:
        """The PARKING session of a plate, if any"""
        pass

    @abstractmethod
    def find_latest_exitable(self, plate_no: str) -> Optional[ParkingSession]:
        """Most recent (by entry time) PARKING or PAID session of a plate"""
        pass

    @abstractmethod
    def list_by_plate(self, plate_no: str) -> List[ParkingSession]:
        pass


class RecordRepository(ABC, Generic[T]):
    """Write-once records attached to sessions"""

    @abstractmethod
    def add(self, record: T) -> T:
        pass

    @abstractmethod
    def list_for_session(self, session_id: str) -> List[T]:
        pass


class PlateEventRepository(RecordRepository[PlateEvent], ABC):

    @abstractmethod
    def list_by_plate(self, plate_no: str) -> List[PlateEvent]:
        pass


class RatePlanStore(ABC):
    """Rate plan store; at most one plan is active at a time"""

    @abstractmethod
    def add(self, plan: RatePlan) -> RatePlan:
        pass

    @abstractmethod
    def get(self, plan_id: str) -> Optional[RatePlan]:
        pass

    @abstractmethod
    def get_active(self) -> Optional[RatePlan]:
        pass


class DiscountRuleStore(ABC):

    @abstractmethod
    def add(self, rule: DiscountRule) -> DiscountRule:
        pass

    @abstractmethod
    def get(self, rule_id: str) -> Optional[DiscountRule]:
        pass


class MembershipLookup(ABC):
    """Answers whether a plate is covered by a membership at an instant"""

    @abstractmethod
    def add(self, membership: Membership) -> Membership:
        pass

    @abstractmethod
    def get(self, membership_id: str) -> Optional[Membership]:
        pass

    @abstractmethod
    def find_covering(self, plate_no: str, instant: datetime) -> Optional[Membership]:
        pass

    def check(self, plate_no: str, instant: datetime) -> MembershipStatus:
        membership = self.find_covering(plate_no, instant)
        if membership is None:
            return MembershipStatus(is_valid=False)
        return MembershipStatus(is_valid=True, membership_id=membership.id)


class BarrierDirectory(ABC):
    """Maps a lane to zero or one barrier device"""

    @abstractmethod
    def register(self, lane_id: str, device_id: str) -> None:
        pass

    @abstractmethod
    def barrier_for_lane(self, lane_id: str) -> Optional[str]:
        pass


class UnitOfWork(ABC):
    """Unit of Work pattern interface"""

    sessions: SessionRepository
    plate_events: PlateEventRepository
    payments: RecordRepository[Payment]
    discount_applications: RecordRepository[DiscountApplication]
    barrier_commands: RecordRepository[BarrierCommand]
    rate_plans: RatePlanStore
    discount_rules: DiscountRuleStore
    memberships: MembershipLookup
    barriers: BarrierDirectory

    def __enter__(self) -> 'UnitOfWork':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        else:
            self.commit()

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


# ============================================================================
# IN-MEMORY REPOSITORIES
# ============================================================================

class InMemorySessionRepository(SessionRepository):
    """
    Keeps deep copies so that an aggregate mutated by a failed operation
    never leaks into stored state.
    """

    def __init__(self):
        self._sessions: Dict[str, ParkingSession] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _snapshot(session: ParkingSession) -> ParkingSession:
        stored = copy.deepcopy(session)
        stored.clear_events()
        return stored

    def add(self, session: ParkingSession) -> ParkingSession:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} already exists")
            self._sessions[session.id] = self._snapshot(session)
        return session

    def get(self, session_id: str) -> Optional[ParkingSession]:
        with self._lock:
            stored = self._sessions.get(session_id)
            return copy.deepcopy(stored) if stored else None

    def update(self, session: ParkingSession) -> ParkingSession:
        with self._lock:
            if session.id not in self._sessions:
                raise ValueError(f"Session {session.id} not found")
            self._sessions[session.id] = self._snapshot(session)
        return session

    def _matching(self, plate_no: str, statuses) -> List[ParkingSession]:
        key = normalize_plate_no(plate_no)
        with self._lock:
            found = [s for s in self._sessions.values() if s.plate_no == key and s.status in statuses]
        found.sort(key=lambda s: s.entry_at, reverse=True)
        return [copy.deepcopy(s) for s in found]

    def find_active_by_plate(self, plate_no: str) -> Optional[ParkingSession]:
        matches = self._matching(plate_no, (SessionStatus.PARKING,))
        return matches[0] if matches else None

    def find_latest_exitable(self, plate_no: str) -> Optional[ParkingSession]:
        matches = self._matching(plate_no, EXITABLE_STATUSES)
        return matches[0] if matches else None

    def list_by_plate(self, plate_no: str) -> List[ParkingSession]:
        return self._matching(plate_no, tuple(SessionStatus))

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)


class InMemoryRecordRepository(RecordRepository[T]):
    """Append-only list of frozen records, looked up by the attribute naming their session"""

    def __init__(self, session_attribute: str = 'session_id'):
        self.session_attribute = session_attribute
        self._records: List[T] = []
        self._lock = threading.RLock()

    def add(self, record: T) -> T:
        with self._lock:
            self._records.append(record)
        return record

    def list_for_session(self, session_id: str) -> List[T]:
        with self._lock:
            return [r for r in self._records if getattr(r, self.session_attribute) == session_id]

    def all(self) -> List[T]:
        with self._lock:
            return list(self._records)


class InMemoryPlateEventRepository(InMemoryRecordRepository[PlateEvent], PlateEventRepository):

    def list_by_plate(self, plate_no: str) -> List[PlateEvent]:
        key = normalize_plate_no(plate_no)
        with self._lock:
            return [e for e in self._records if e.plate_no == key]


class InMemoryRatePlanStore(RatePlanStore):

    def __init__(self):
        self._plans: Dict[str, RatePlan] = {}

    def add(self, plan: RatePlan) -> RatePlan:
        if plan.is_active:
            self._plans = {
                plan_id: replace(stored, is_active=False) if stored.is_active else stored
                for plan_id, stored in self._plans.items()
            }
        self._plans[plan.id] = plan
        return plan

    def get(self, plan_id: str) -> Optional[RatePlan]:
        return self._plans.get(plan_id)

    def get_active(self) -> Optional[RatePlan]:
        return next((plan for plan in self._plans.values() if plan.is_active), None)


class InMemoryDiscountRuleStore(DiscountRuleStore):

    def __init__(self):
        self._rules: Dict[str, DiscountRule] = {}

    def add(self, rule: DiscountRule) -> DiscountRule:
        self._rules[rule.id] = rule
        return rule

    def get(self, rule_id: str) -> Optional[DiscountRule]:
        return self._rules.get(rule_id)


class InMemoryMembershipLookup(MembershipLookup):

    def __init__(self):
        self._memberships: List[Membership] = []

    def add(self, membership: Membership) -> Membership:
        self._memberships.append(membership)
        return membership

    def get(self, membership_id: str) -> Optional[Membership]:
        return next((m for m in self._memberships if m.id == membership_id), None)

    def find_covering(self, plate_no: str, instant: datetime) -> Optional[Membership]:
        key = normalize_plate_no(plate_no)
        return next(
            (m for m in self._memberships if m.plate_no == key and m.covers(instant)),
            None
        )


class InMemoryBarrierDirectory(BarrierDirectory):

    def __init__(self):
        self._lanes: Dict[str, str] = {}

    def register(self, lane_id: str, device_id: str) -> None:
        self._lanes[lane_id] = device_id

    def barrier_for_lane(self, lane_id: str) -> Optional[str]:
        return self._lanes.get(lane_id)


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of work over shared in-memory repositories.
    Writes are visible immediately; rollback only logs, so callers rely on
    the session repository's copy semantics to discard failed changes.
    """

    def __init__(self):
        self.sessions = InMemorySessionRepository()
        self.plate_events = InMemoryPlateEventRepository()
        self.payments = InMemoryRecordRepository()
        self.discount_applications = InMemoryRecordRepository()
        self.barrier_commands = InMemoryRecordRepository(session_attribute='correlation_id')
        self.rate_plans = InMemoryRatePlanStore()
        self.discount_rules = InMemoryDiscountRuleStore()
        self.memberships = InMemoryMembershipLookup()
        self.barriers = InMemoryBarrierDirectory()
        self.committed = 0
        self._logger = logging.getLogger(self.__class__.__name__)

    def commit(self) -> None:
        self.committed += 1

    def rollback(self) -> None:
        self._logger.debug("Rollback requested on in-memory unit of work")


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class ParkingSessionModel(Base):
    """SQLAlchemy model for ParkingSession"""
    __tablename__ = 'parking_sessions'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    plate_no = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    entry_lane_id = Column(String(36))
    exit_lane_id = Column(String(36))
    entry_at = Column(DateTime, nullable=False, index=True)
    exit_at = Column(DateTime)
    rate_plan_id = Column(String(36))
    raw_fee = Column(Integer, nullable=False, default=0)
    discount_total = Column(Integer, nullable=False, default=0)
    final_fee = Column(Integer, nullable=False, default=0)
    fee_breakdown = Column(JSON)
    calculated_at = Column(DateTime)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE.value)
    paid_at = Column(DateTime)
    close_reason = Column(String(20))
    closed_at = Column(DateTime)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PlateEventModel(Base):
    """SQLAlchemy model for PlateEvent"""
    __tablename__ = 'plate_events'

    id = Column(String(36), primary_key=True)
    direction = Column(String(10), nullable=False)
    plate_no = Column(String(20), nullable=False, index=True)
    plate_no_raw = Column(String(40), nullable=False)
    lane_id = Column(String(36), nullable=False)
    device_id = Column(String(36))
    captured_at = Column(DateTime, nullable=False)
    received_at = Column(DateTime, nullable=False)
    confidence = Column(Float)
    image_url = Column(Text)
    session_id = Column(String(36), ForeignKey('parking_sessions.id'), index=True)


class RatePlanModel(Base):
    __tablename__ = 'rate_plans'

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    rules = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class DiscountRuleModel(Base):
    __tablename__ = 'discount_rules'

    id = Column(String(36), primary_key=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)
    value = Column(Integer, nullable=False)
    is_stackable = Column(Boolean, nullable=False, default=True)
    max_apply_count = Column(Integer)


class DiscountApplicationModel(Base):
    __tablename__ = 'discount_applications'

    id = Column(String(36), primary_key=True)
    session_id = Column(String(36), ForeignKey('parking_sessions.id'), nullable=False, index=True)
    rule_id = Column(String(36), ForeignKey('discount_rules.id'), nullable=False)
    applied_value = Column(Integer, nullable=False)
    value_override = Column(Integer)
    reason = Column(Text)
    applied_by = Column(String(100))
    applied_at = Column(DateTime, nullable=False)


class PaymentModel(Base):
    __tablename__ = 'payments'

    id = Column(String(36), primary_key=True)
    session_id = Column(String(36), ForeignKey('parking_sessions.id'), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    method = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    paid_at = Column(DateTime, nullable=False)


class MembershipModel(Base):
    __tablename__ = 'memberships'

    id = Column(String(36), primary_key=True)
    plate_no = Column(String(20), nullable=False, index=True)
    member_name = Column(String(100))
    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=False)
    note = Column(Text)


class BarrierDeviceModel(Base):
    __tablename__ = 'barrier_devices'

    id = Column(String(36), primary_key=True)
    lane_id = Column(String(36), nullable=False, unique=True, index=True)


class BarrierCommandModel(Base):
    __tablename__ = 'barrier_commands'

    id = Column(String(36), primary_key=True)
    device_id = Column(String(36), nullable=False)
    lane_id = Column(String(36), nullable=False)
    action = Column(String(10), nullable=False)
    reason = Column(String(30), nullable=False)
    correlation_id = Column(String(36), index=True)
    created_at = Column(DateTime, nullable=False)


# ============================================================================
# DOMAIN <-> ORM MAPPER
# ============================================================================

class Mapper:
    """Maps between domain objects and ORM models"""

    @staticmethod
    def session_to_orm(session: ParkingSession) -> ParkingSessionModel:
        return ParkingSessionModel(
            id=session.id,
            plate_no=session.plate_no,
            status=session.status.value,
            entry_lane_id=session.entry_lane_id,
            exit_lane_id=session.exit_lane_id,
            entry_at=session.entry_at,
            exit_at=session.exit_at,
            rate_plan_id=session.rate_plan_id,
            raw_fee=session.raw_fee,
            discount_total=session.discount_total,
            final_fee=session.final_fee,
            fee_breakdown=session.fee_breakdown.to_dict() if session.fee_breakdown else None,
            calculated_at=session.calculated_at,
            payment_status=session.payment_status.value,
            paid_at=session.paid_at,
            close_reason=session.close_reason.value if session.close_reason else None,
            closed_at=session.closed_at,
            version=session.version,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    @staticmethod
    def session_to_domain(model: ParkingSessionModel) -> ParkingSession:
        return ParkingSession.restore({
            'id': model.id,
            'plate_no': model.plate_no,
            'status': SessionStatus(model.status),
            'entry_lane_id': model.entry_lane_id,
            'exit_lane_id': model.exit_lane_id,
            'entry_at': model.entry_at,
            'exit_at': model.exit_at,
            'rate_plan_id': model.rate_plan_id,
            'raw_fee': model.raw_fee,
            'discount_total': model.discount_total,
            'final_fee': model.final_fee,
            'fee_breakdown': FeeBreakdown.from_dict(model.fee_breakdown) if model.fee_breakdown else None,
            'calculated_at': model.calculated_at,
            'payment_status': PaymentStatus(model.payment_status),
            'paid_at': model.paid_at,
            'close_reason': CloseReason(model.close_reason) if model.close_reason else None,
            'closed_at': model.closed_at,
            'created_at': model.created_at,
            'updated_at': model.updated_at,
            'version': model.version,
        })

    @staticmethod
    def plate_event_to_orm(event: PlateEvent) -> PlateEventModel:
        return PlateEventModel(
            id=event.id,
            direction=event.direction.value,
            plate_no=event.plate_no,
            plate_no_raw=event.plate_no_raw,
            lane_id=event.lane_id,
            device_id=event.device_id,
            captured_at=event.captured_at,
            received_at=event.received_at,
            confidence=event.confidence,
            image_url=event.image_url,
            session_id=event.session_id,
        )

    @staticmethod
    def plate_event_to_domain(model: PlateEventModel) -> PlateEvent:
        return PlateEvent(
            id=model.id,
            direction=LaneDirection(model.direction),
            plate_no=model.plate_no,
            plate_no_raw=model.plate_no_raw,
            lane_id=model.lane_id,
            device_id=model.device_id,
            captured_at=model.captured_at,
            received_at=model.received_at,
            confidence=model.confidence,
            image_url=model.image_url,
            session_id=model.session_id,
        )

    @staticmethod
    def rate_plan_to_orm(plan: RatePlan) -> RatePlanModel:
        return RatePlanModel(id=plan.id, name=plan.name, rules=plan.rules.to_dict(), is_active=plan.is_active)

    @staticmethod
    def rate_plan_to_domain(model: RatePlanModel) -> RatePlan:
        return RatePlan(
            id=model.id,
            name=model.name,
            rules=RateRules.from_dict(model.rules),
            is_active=model.is_active,
        )

    @staticmethod
    def discount_rule_to_orm(rule: DiscountRule) -> DiscountRuleModel:
        return DiscountRuleModel(
            id=rule.id,
            name=rule.name,
            type=rule.type.value,
            value=rule.value,
            is_stackable=rule.is_stackable,
            max_apply_count=rule.max_apply_count,
        )

    @staticmethod
    def discount_rule_to_domain(model: DiscountRuleModel) -> DiscountRule:
        return DiscountRule(
            id=model.id,
            name=model.name,
            type=DiscountType(model.type),
            value=model.value,
            is_stackable=model.is_stackable,
            max_apply_count=model.max_apply_count,
        )

    @staticmethod
    def discount_application_to_orm(application: DiscountApplication) -> DiscountApplicationModel:
        return DiscountApplicationModel(
            id=application.id,
            session_id=application.session_id,
            rule_id=application.rule_id,
            applied_value=application.applied_value,
            value_override=application.value_override,
            reason=application.reason,
            applied_by=application.applied_by,
            applied_at=application.applied_at,
        )

    @staticmethod
    def discount_application_to_domain(model: DiscountApplicationModel) -> DiscountApplication:
        return DiscountApplication(
            id=model.id,
            session_id=model.session_id,
            rule_id=model.rule_id,
            applied_value=model.applied_value,
            value_override=model.value_override,
            reason=model.reason,
            applied_by=model.applied_by,
            applied_at=model.applied_at,
        )

    @staticmethod
    def payment_to_orm(payment: Payment) -> PaymentModel:
        return PaymentModel(
            id=payment.id,
            session_id=payment.session_id,
            amount=payment.amount,
            method=payment.method.value,
            status=payment.status.value,
            paid_at=payment.paid_at,
        )

    @staticmethod
    def payment_to_domain(model: PaymentModel) -> Payment:
        return Payment(
            id=model.id,
            session_id=model.session_id,
            amount=model.amount,
            method=PaymentMethod(model.method),
            status=PaymentStatus(model.status),
            paid_at=model.paid_at,
        )

    @staticmethod
    def membership_to_orm(membership: Membership) -> MembershipModel:
        return MembershipModel(
            id=membership.id,
            plate_no=membership.plate_no,
            member_name=membership.member_name,
            valid_from=membership.valid_from,
            valid_to=membership.valid_to,
            note=membership.note,
        )

    @staticmethod
    def membership_to_domain(model: MembershipModel) -> Membership:
        return Membership(
            id=model.id,
            plate_no=model.plate_no,
            member_name=model.member_name,
            valid_from=model.valid_from,
            valid_to=model.valid_to,
            note=model.note,
        )

    @staticmethod
    def barrier_command_to_orm(command: BarrierCommand) -> BarrierCommandModel:
        return BarrierCommandModel(
            id=command.id,
            device_id=command.device_id,
            lane_id=command.lane_id,
            action=command.action.value,
            reason=command.reason.value,
            correlation_id=command.correlation_id,
            created_at=command.created_at,
        )

    @staticmethod
    def barrier_command_to_domain(model: BarrierCommandModel) -> BarrierCommand:
        return BarrierCommand(
            id=model.id,
            device_id=model.device_id,
            lane_id=model.lane_id,
            action=BarrierAction(model.action),
            reason=BarrierReason(model.reason),
            correlation_id=model.correlation_id,
            created_at=model.created_at,
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Generic[T]):
    """Base SQLAlchemy repository"""

    model_class: Type[Base]
    to_orm: Callable[[T], Base]
    to_domain: Callable[[Base], T]

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Added {self.model_class.__tablename__} row: {model.id}")
            return entity
        except IntegrityError as e:
            self.session.rollback()
            self._logger.error(f"Integrity error adding entity: {e}")
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, str(id))
            return self.to_domain(model) if model else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def _query(self, *criteria, order_by=None) -> List[T]:
        try:
            query = self.session.query(self.model_class).filter(*criteria)
            if order_by is not None:
                query = query.order_by(order_by)
            return [self.to_domain(model) for model in query.all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error querying {self.model_class.__tablename__}: {e}")
            raise


class SQLAlchemySessionRepository(SQLAlchemyRepository[ParkingSession], SessionRepository):
    model_class = ParkingSessionModel
    to_orm = staticmethod(Mapper.session_to_orm)
    to_domain = staticmethod(Mapper.session_to_domain)

    def update(self, session: ParkingSession) -> ParkingSession:
        try:
            model = self.session.get(ParkingSessionModel, session.id)
            if not model:
                raise ValueError(f"Session {session.id} not found")

            updated = Mapper.session_to_orm(session)
            for column in ParkingSessionModel.__table__.columns:
                if column.name not in ('id', 'created_at'):
                    setattr(model, column.name, getattr(updated, column.name))

            self.session.flush()
            self._logger.debug(f"Updated session: {session.id}")
            return session
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error updating session {session.id}: {e}")
            raise

    def _latest(self, plate_no: str, statuses) -> Optional[ParkingSession]:
        matches = self._query(
            ParkingSessionModel.plate_no == normalize_plate_no(plate_no),
            ParkingSessionModel.status.in_([s.value for s in statuses]),
            order_by=ParkingSessionModel.entry_at.desc(),
        )
        return matches[0] if matches else None

    def find_active_by_plate(self, plate_no: str) -> Optional[ParkingSession]:
        return self._latest(plate_no, (SessionStatus.PARKING,))

    def find_latest_exitable(self, plate_no: str) -> Optional[ParkingSession]:
        return self._latest(plate_no, EXITABLE_STATUSES)

    def list_by_plate(self, plate_no: str) -> List[ParkingSession]:
        return self._query(
            ParkingSessionModel.plate_no == normalize_plate_no(plate_no),
            order_by=ParkingSessionModel.entry_at.desc(),
        )


class SQLAlchemyPlateEventRepository(SQLAlchemyRepository[PlateEvent], PlateEventRepository):
    model_class = PlateEventModel
    to_orm = staticmethod(Mapper.plate_event_to_orm)
    to_domain = staticmethod(Mapper.plate_event_to_domain)

    def list_for_session(self, session_id: str) -> List[PlateEvent]:
        return self._query(PlateEventModel.session_id == session_id, order_by=PlateEventModel.captured_at)

    def list_by_plate(self, plate_no: str) -> List[PlateEvent]:
        return self._query(
            PlateEventModel.plate_no == normalize_plate_no(plate_no),
            order_by=PlateEventModel.captured_at,
        )


class SQLAlchemyPaymentRepository(SQLAlchemyRepository[Payment], RecordRepository[Payment]):
    model_class = PaymentModel
    to_orm = staticmethod(Mapper.payment_to_orm)
    to_domain = staticmethod(Mapper.payment_to_domain)

    def list_for_session(self, session_id: str) -> List[Payment]:
        return self._query(PaymentModel.session_id == session_id, order_by=PaymentModel.paid_at)


class SQLAlchemyDiscountApplicationRepository(
    SQLAlchemyRepository[DiscountApplication], RecordRepository[DiscountApplication]
):
    model_class = DiscountApplicationModel
    to_orm = staticmethod(Mapper.discount_application_to_orm)
    to_domain = staticmethod(Mapper.discount_application_to_domain)

    def list_for_session(self, session_id: str) -> List[DiscountApplication]:
        return self._query(
            DiscountApplicationModel.session_id == session_id,
            order_by=DiscountApplicationModel.applied_at,
        )


class SQLAlchemyBarrierCommandRepository(SQLAlchemyRepository[BarrierCommand], RecordRepository[BarrierCommand]):
    model_class = BarrierCommandModel
    to_orm = staticmethod(Mapper.barrier_command_to_orm)
    to_domain = staticmethod(Mapper.barrier_command_to_domain)

    def list_for_session(self, session_id: str) -> List[BarrierCommand]:
        return self._query(
            BarrierCommandModel.correlation_id == session_id,
            order_by=BarrierCommandModel.created_at,
        )


class SQLAlchemyRatePlanStore(SQLAlchemyRepository[RatePlan], RatePlanStore):
    model_class = RatePlanModel
    to_orm = staticmethod(Mapper.rate_plan_to_orm)
    to_domain = staticmethod(Mapper.rate_plan_to_domain)

    def add(self, plan: RatePlan) -> RatePlan:
        if plan.is_active:
            # Activating a plan retires the previous active one
            self.session.query(RatePlanModel).filter(RatePlanModel.is_active.is_(True)).update(
                {RatePlanModel.is_active: False}
            )
        return super().add(plan)

    def get_active(self) -> Optional[RatePlan]:
        plans = self._query(RatePlanModel.is_active.is_(True), order_by=RatePlanModel.created_at.desc())
        return plans[0] if plans else None


class SQLAlchemyDiscountRuleStore(SQLAlchemyRepository[DiscountRule], DiscountRuleStore):
    model_class = DiscountRuleModel
    to_orm = staticmethod(Mapper.discount_rule_to_orm)
    to_domain = staticmethod(Mapper.discount_rule_to_domain)


class SQLAlchemyMembershipLookup(SQLAlchemyRepository[Membership], MembershipLookup):
    model_class = MembershipModel
    to_orm = staticmethod(Mapper.membership_to_orm)
    to_domain = staticmethod(Mapper.membership_to_domain)

    def find_covering(self, plate_no: str, instant: datetime) -> Optional[Membership]:
        matches = self._query(
            MembershipModel.plate_no == normalize_plate_no(plate_no),
            MembershipModel.valid_from <= instant,
            MembershipModel.valid_to >= instant,
        )
        return matches[0] if matches else None


class SQLAlchemyBarrierDirectory(BarrierDirectory):

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def register(self, lane_id: str, device_id: str) -> None:
        try:
            existing = self.session.query(BarrierDeviceModel).filter(
                BarrierDeviceModel.lane_id == lane_id
            ).first()
            if existing:
                self.session.delete(existing)
                self.session.flush()
            self.session.add(BarrierDeviceModel(id=device_id, lane_id=lane_id))
            self.session.flush()
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error binding barrier {device_id} to lane {lane_id}: {e}")
            raise

    def barrier_for_lane(self, lane_id: str) -> Optional[str]:
        try:
            device = self.session.query(BarrierDeviceModel).filter(
                BarrierDeviceModel.lane_id == lane_id
            ).first()
            return device.id if device else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error looking up barrier for lane {lane_id}: {e}")
            raise


# ============================================================================
# UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> 'SQLAlchemyUnitOfWork':
        self.session = self.session_factory()

        self.sessions = SQLAlchemySessionRepository(self.session)
        self.plate_events = SQLAlchemyPlateEventRepository(self.session)
        self.payments = SQLAlchemyPaymentRepository(self.session)
        self.discount_applications = SQLAlchemyDiscountApplicationRepository(self.session)
        self.barrier_commands = SQLAlchemyBarrierCommandRepository(self.session)
        self.rate_plans = SQLAlchemyRatePlanStore(self.session)
        self.discount_rules = SQLAlchemyDiscountRuleStore(self.session)
        self.memberships = SQLAlchemyMembershipLookup(self.session)
        self.barriers = SQLAlchemyBarrierDirectory(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.error(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self) -> None:
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self) -> None:
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for units of work"""

    @staticmethod
    def create_engine(database_url: str, echo: bool = False):
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            # Share one connection so every unit of work sees the same in-memory database
            return create_engine(
                database_url,
                echo=echo,
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, echo=echo)

    @staticmethod
    def create_sqlalchemy_uow_factory(database_url: str) -> Callable[[], SQLAlchemyUnitOfWork]:
        """Create a factory of SQLAlchemy units of work over one engine"""
        engine = RepositoryFactory.create_engine(database_url)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=engine)

        return lambda: SQLAlchemyUnitOfWork(SessionLocal)

    @staticmethod
    def create_in_memory_uow_factory() -> Callable[[], InMemoryUnitOfWork]:
        """One shared in-memory store handed out for every unit of work"""
        uow = InMemoryUnitOfWork()
        return lambda: uow
