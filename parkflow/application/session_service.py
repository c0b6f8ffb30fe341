# File: parkflow/application/session_service.py
"""
Session Service - Application layer of the Parking Session Engine

This service turns plate captures and operator requests into session
transitions:
1. Entry processing - open a session, suppressing duplicate entries
2. Exit processing - membership override, paid exit, or pricing the stay
3. Payment, discounts, recalculation, correction, force close
4. Barrier intents for exits that reach CLOSED

Every operation on a plate runs inside that plate's lock and a fresh unit
of work. Domain events and barrier commands are published only after the
unit of work commits, and a failing notifier never undoes a transition.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Iterable, Iterator, Tuple, Union
import logging

from ..domain.models import (
    LicensePlate, LaneDirection, SessionStatus, CloseReason, PaymentMethod,
    BarrierReason, BarrierCommand, PlateEvent, Payment, DiscountApplication,
    FeeBreakdown, RatePlan, RateRules
)
from ..domain.aggregates import ParkingSession, SessionStateError
from ..domain.services import FeeComputationService, DiscountRequest, DiscountInput
from ..domain.strategies import to_local_time
from ..infrastructure.locking import PlateLockManager, InMemoryPlateLockManager
from ..infrastructure.repositories import UnitOfWork
from .dtos import PlateCaptureDTO


# ============================================================================
# EXCEPTIONS
# ============================================================================

class SessionServiceError(Exception):
    """Base exception for session service errors"""
    pass


class SessionNotFoundError(SessionServiceError):
    pass


class SessionClosedError(SessionServiceError):
    pass


class SessionAlreadyPaidError(SessionServiceError):
    pass


class InvalidSessionTransitionError(SessionServiceError):
    pass


class RatePlanNotFoundError(SessionServiceError):
    pass


class DiscountRuleNotFoundError(SessionServiceError):
    pass


class DiscountNotStackableError(SessionServiceError):
    pass


class DiscountLimitExceededError(SessionServiceError):
    pass


class MissingExitTimeError(SessionServiceError):
    pass


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True)
class EntryResult:
    session_created: bool
    session_id: Optional[str]
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': LaneDirection.ENTRY.value,
            'session_created': self.session_created,
            'session_id': self.session_id,
            'event_id': self.event_id,
        }


@dataclass(frozen=True)
class ExitResult:
    """Outcome of an exit capture; session_id is None for orphan exits"""
    session_id: Optional[str]
    new_state: Optional[SessionStatus]
    event_id: str
    final_fee: Optional[int] = None
    breakdown: Optional[FeeBreakdown] = None
    close_reason: Optional[CloseReason] = None
    barrier_command: Optional[BarrierCommand] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'direction': LaneDirection.EXIT.value,
            'session_id': self.session_id,
            'new_state': self.new_state.value if self.new_state else None,
            'event_id': self.event_id,
            'final_fee': self.final_fee,
            'breakdown': self.breakdown.to_dict() if self.breakdown else None,
            'close_reason': self.close_reason.value if self.close_reason else None,
            'barrier_command': self.barrier_command.to_dict() if self.barrier_command else None,
        }


@dataclass(frozen=True)
class SessionResult:
    """Snapshot of a session after an operator or payment operation"""
    session_id: str
    plate_no: str
    status: SessionStatus
    raw_fee: int
    discount_total: int
    final_fee: int
    payment_status: str
    close_reason: Optional[CloseReason] = None
    breakdown: Optional[FeeBreakdown] = None
    barrier_command: Optional[BarrierCommand] = None

    @classmethod
    def from_session(
        cls,
        session: ParkingSession,
        barrier_command: Optional[BarrierCommand] = None
    ) -> 'SessionResult':
        return cls(
            session_id=session.id,
            plate_no=session.plate_no,
            status=session.status,
            raw_fee=session.raw_fee,
            discount_total=session.discount_total,
            final_fee=session.final_fee,
            payment_status=session.payment_status.value,
            close_reason=session.close_reason,
            breakdown=session.fee_breakdown,
            barrier_command=barrier_command,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'plate_no': self.plate_no,
            'status': self.status.value,
            'raw_fee': self.raw_fee,
            'discount_total': self.discount_total,
            'final_fee': self.final_fee,
            'payment_status': self.payment_status,
            'close_reason': self.close_reason.value if self.close_reason else None,
            'breakdown': self.breakdown.to_dict() if self.breakdown else None,
            'barrier_command': self.barrier_command.to_dict() if self.barrier_command else None,
        }


# ============================================================================
# SESSION SERVICE
# ============================================================================

class SessionService:
    """
    Application service driving the parking session state machine

    Args:
        uow_factory: Returns a new unit of work for each operation
        lock_manager: Per-plate mutual exclusion
        notifier: Receives committed domain events and barrier commands
            (a MessageBus); optional
        fee_service: Fee computation, carrying the local timezone
        config: Service options (close_on_payment_at_exit)
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        lock_manager: Optional[PlateLockManager] = None,
        notifier: Optional[Any] = None,
        fee_service: Optional[FeeComputationService] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        self.uow_factory = uow_factory
        self.lock_manager = lock_manager or InMemoryPlateLockManager()
        self.notifier = notifier
        self.fee_service = fee_service or FeeComputationService()
        self.timezone = self.fee_service.rate_resolver.timezone
        self.config = {
            'close_on_payment_at_exit': True,
            **(config or {})
        }
        self._logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Capture processing
    # ------------------------------------------------------------------

    def process_capture(self, capture: PlateCaptureDTO) -> Union[EntryResult, ExitResult]:
        """Dispatch a validated capture by lane direction"""
        handler = (
            self.process_entry
            if LaneDirection(capture.direction) == LaneDirection.ENTRY
            else self.process_exit
        )
        return handler(
            capture.plate_no,
            capture.lane_id,
            capture.captured_at,
            device_id=capture.device_id,
            confidence=capture.confidence,
            image_url=capture.image_url,
        )

    def process_entry(
        self,
        plate_no: str,
        lane_id: str,
        captured_at: datetime,
        device_id: Optional[str] = None,
        confidence: Optional[float] = None,
        image_url: Optional[str] = None
    ) -> EntryResult:
        """
        Open a session for an entry capture.
        A plate that already has a PARKING session gets no second one; the
        capture is still recorded, without a session.
        """
        plate = LicensePlate(plate_no)
        captured_at = self._local_time(captured_at)
        session = None

        with self.lock_manager.lock(plate.value):
            with self.uow_factory() as uow:
                existing = uow.sessions.find_active_by_plate(plate.value)
                if existing is not None:
                    self._logger.warning(
                        f"Duplicate entry for {plate} on lane {lane_id}; session {existing.id} already parking"
                    )
                else:
                    active_plan = uow.rate_plans.get_active()
                    if active_plan is None:
                        self._logger.warning("No active rate plan; session opened without one")
                    session = ParkingSession.open(
                        plate.value, captured_at, lane_id,
                        active_plan.id if active_plan else None
                    )
                    uow.sessions.add(session)

                event = self._record_capture(
                    uow, LaneDirection.ENTRY, plate_no, lane_id, captured_at,
                    session.id if session else None, device_id, confidence, image_url
                )

        if session is not None:
            self._publish(session)
        return EntryResult(
            session_created=session is not None,
            session_id=session.id if session else None,
            event_id=event.id,
        )

    def process_exit(
        self,
        plate_no: str,
        lane_id: str,
        captured_at: datetime,
        device_id: Optional[str] = None,
        confidence: Optional[float] = None,
        image_url: Optional[str] = None
    ) -> ExitResult:
        """
        Resolve an exit capture against the plate's latest PARKING or PAID
        session:
        - no session: orphan event, nothing changes
        - valid membership at the capture instant: CLOSED with zero fee
        - PAID: CLOSED as a normal exit
        - PARKING: priced; free stays close, others wait for payment
        """
        plate = LicensePlate(plate_no)
        captured_at = self._local_time(captured_at)
        barrier = None

        with self.lock_manager.lock(plate.value):
            with self.uow_factory() as uow:
                session = uow.sessions.find_latest_exitable(plate.value)

                if session is None:
                    self._logger.warning(f"Orphan exit for {plate} on lane {lane_id}")
                    event = self._record_capture(
                        uow, LaneDirection.EXIT, plate_no, lane_id, captured_at,
                        None, device_id, confidence, image_url
                    )
                    return ExitResult(session_id=None, new_state=None, event_id=event.id)

                membership = uow.memberships.check(plate.value, captured_at)
                if membership.is_valid:
                    session.close_for_membership(captured_at, lane_id, membership.membership_id)
                    barrier = self._issue_barrier(uow, lane_id, BarrierReason.MEMBERSHIP_VALID, session.id)
                elif session.status == SessionStatus.PAID:
                    session.close_after_payment(captured_at, lane_id)
                    barrier = self._issue_barrier(uow, lane_id, BarrierReason.PAYMENT_CONFIRMED, session.id)
                else:
                    breakdown = self.fee_service.compute_fee(
                        session.entry_at, captured_at,
                        self._rate_plan_for(uow, session),
                        self._recorded_discounts(uow, session.id),
                    )
                    if session.record_exit_fee(captured_at, lane_id, breakdown) == SessionStatus.CLOSED:
                        barrier = self._issue_barrier(uow, lane_id, BarrierReason.FREE_EXIT, session.id)

                uow.sessions.update(session)
                event = self._record_capture(
                    uow, LaneDirection.EXIT, plate_no, lane_id, captured_at,
                    session.id, device_id, confidence, image_url
                )

        self._publish(session, barrier)
        return ExitResult(
            session_id=session.id,
            new_state=session.status,
            event_id=event.id,
            final_fee=session.final_fee,
            breakdown=session.fee_breakdown,
            close_reason=session.close_reason,
            barrier_command=barrier,
        )

    def compute_fee(
        self,
        entry_at: datetime,
        exit_at: datetime,
        rates: Union[RatePlan, RateRules, None],
        discounts: Iterable[DiscountInput] = ()
    ) -> FeeBreakdown:
        """Pure fee computation, no session involved"""
        return self.fee_service.compute_fee(entry_at, exit_at, rates, discounts)

    # ------------------------------------------------------------------
    # Payment and operator operations
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> ParkingSession:
        with self.uow_factory() as uow:
            session = uow.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def confirm_payment(
        self,
        session_id: str,
        amount: int,
        method: PaymentMethod = PaymentMethod.MOCK,
        paid_at: Optional[datetime] = None
    ) -> SessionResult:
        """
        Record a payment. When the vehicle is already held at the exit
        barrier the session closes right away and the barrier opens.
        """
        paid_at = self._local_time(paid_at or datetime.now())
        barrier = None

        with self._locked_session(session_id) as (uow, session):
            if session.is_closed:
                raise SessionClosedError(f"Session {session_id} is already closed")
            if session.is_paid:
                raise SessionAlreadyPaidError(f"Session {session_id} is already paid")

            waiting_at_exit = session.is_waiting_at_exit
            session.confirm_payment(amount, paid_at)
            uow.payments.add(Payment(
                session_id=session.id,
                amount=amount,
                paid_at=paid_at,
                method=PaymentMethod(method),
            ))

            if waiting_at_exit and self.config['close_on_payment_at_exit']:
                session.close_after_payment(session.exit_at, session.exit_lane_id)
                barrier = self._issue_barrier(
                    uow, session.exit_lane_id, BarrierReason.PAYMENT_CONFIRMED, session.id
                )
            uow.sessions.update(session)

        self._logger.info(f"Payment of {amount} confirmed for session {session_id}")
        self._publish(session, barrier)
        return SessionResult.from_session(session, barrier)

    def apply_discount(
        self,
        session_id: str,
        discount_rule_id: str,
        value_override: Optional[int] = None,
        reason: Optional[str] = None,
        applied_by: Optional[str] = None,
        applied_at: Optional[datetime] = None
    ) -> SessionResult:
        """
        Apply a discount rule to a session after checking stacking and
        application-count limits. A session that already has an exit time
        is repriced with every discount recorded so far.
        """
        barrier = None

        with self._locked_session(session_id) as (uow, session):
            if session.is_closed:
                raise SessionClosedError(f"Session {session_id} is already closed")
            if session.is_paid:
                raise SessionAlreadyPaidError(f"Session {session_id} is already paid")

            rule = uow.discount_rules.get(discount_rule_id)
            if rule is None:
                raise DiscountRuleNotFoundError(f"Discount rule {discount_rule_id} not found")

            requests = self._recorded_discounts(uow, session.id)
            others = [r.rule for r in requests if r.rule.id != rule.id]
            if others and not rule.is_stackable:
                raise DiscountNotStackableError(f"Discount {rule.name} cannot be combined with other discounts")
            blocking = next((other for other in others if not other.is_stackable), None)
            if blocking is not None:
                raise DiscountNotStackableError(f"Session already has non-stackable discount {blocking.name}")

            applied_count = len(requests) - len(others)
            if rule.max_apply_count is not None and applied_count >= rule.max_apply_count:
                raise DiscountLimitExceededError(
                    f"Discount {rule.name} already applied {applied_count} time(s), limit {rule.max_apply_count}"
                )

            applied_value = 0
            if session.exit_at is not None:
                requests.append(DiscountRequest(rule, value_override))
                breakdown = self.fee_service.compute_fee(
                    session.entry_at, session.exit_at, self._rate_plan_for(uow, session), requests
                )
                applied_value = breakdown.discounts[-1].applied_value
                if session.reprice(breakdown):
                    barrier = self._issue_barrier(
                        uow, session.exit_lane_id, BarrierReason.FREE_EXIT, session.id
                    )

            uow.discount_applications.add(DiscountApplication(
                session_id=session.id,
                rule_id=rule.id,
                applied_value=applied_value,
                applied_at=self._local_time(applied_at or datetime.now()),
                value_override=value_override,
                reason=reason,
                applied_by=applied_by,
            ))
            uow.sessions.update(session)

        self._logger.info(f"Discount {rule.name} applied to session {session_id} ({applied_value})")
        self._publish(session, barrier)
        return SessionResult.from_session(session, barrier)

    def recalculate(
        self,
        session_id: str,
        reason: str,
        rate_plan_id: Optional[str] = None
    ) -> SessionResult:
        """Reprice a session, optionally under another rate plan"""
        barrier = None

        with self._locked_session(session_id) as (uow, session):
            if session.exit_at is None:
                raise MissingExitTimeError(f"Session {session_id} has no exit time to price")

            if rate_plan_id is not None:
                plan = uow.rate_plans.get(rate_plan_id)
                if plan is None:
                    raise RatePlanNotFoundError(f"Rate plan {rate_plan_id} not found")
                session.rate_plan_id = plan.id
            else:
                plan = self._rate_plan_for(uow, session)

            breakdown = self.fee_service.compute_fee(
                session.entry_at, session.exit_at, plan, self._recorded_discounts(uow, session.id)
            )
            try:
                released = session.reprice(breakdown)
            except SessionStateError as e:
                raise SessionClosedError(str(e)) from e
            if released:
                barrier = self._issue_barrier(
                    uow, session.exit_lane_id, BarrierReason.FREE_EXIT, session.id
                )
            uow.sessions.update(session)

        self._logger.info(f"Session {session_id} recalculated ({reason}): final fee {session.final_fee}")
        self._publish(session, barrier)
        return SessionResult.from_session(session, barrier)

    def correct_session(
        self,
        session_id: str,
        reason: str,
        plate_no: Optional[str] = None,
        entry_at: Optional[datetime] = None,
        exit_at: Optional[datetime] = None
    ) -> SessionResult:
        entry_at = self._local_time(entry_at) if entry_at is not None else None
        exit_at = self._local_time(exit_at) if exit_at is not None else None
        with self._locked_session(session_id) as (uow, session):
            session.correct(reason, plate_no=plate_no, entry_at=entry_at, exit_at=exit_at)
            uow.sessions.update(session)

        self._publish(session)
        return SessionResult.from_session(session)

    def force_close(
        self,
        session_id: str,
        reason: str,
        note: Optional[str] = None,
        closed_at: Optional[datetime] = None
    ) -> SessionResult:
        """Operator close; no barrier intent is emitted"""
        with self._locked_session(session_id) as (uow, session):
            if session.is_closed:
                raise SessionClosedError(f"Session {session_id} is already closed")
            session.force_close(self._local_time(closed_at or datetime.now()), f"{reason} {note or ''}".strip())
            uow.sessions.update(session)

        self._publish(session)
        return SessionResult.from_session(session)

    def flag_error(self, session_id: str, reason: str) -> SessionResult:
        with self._locked_session(session_id) as (uow, session):
            try:
                session.flag_error(reason)
            except SessionStateError as e:
                raise InvalidSessionTransitionError(str(e)) from e
            uow.sessions.update(session)

        self._publish(session)
        return SessionResult.from_session(session)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _local_time(self, moment: datetime) -> datetime:
        """Stored timestamps are naive wall-clock time in the engine timezone"""
        return to_local_time(moment, self.timezone)

    @contextmanager
    def _locked_session(self, session_id: str) -> Iterator[Tuple[UnitOfWork, ParkingSession]]:
        """Lock the session's plate, then load it in a fresh unit of work"""
        plate_no = self.get_session(session_id).plate_no
        with self.lock_manager.lock(plate_no):
            with self.uow_factory() as uow:
                session = uow.sessions.get(session_id)
                if session is None:
                    raise SessionNotFoundError(f"Session {session_id} not found")
                yield uow, session

    def _record_capture(
        self,
        uow: UnitOfWork,
        direction: LaneDirection,
        plate_no_raw: str,
        lane_id: str,
        captured_at: datetime,
        session_id: Optional[str],
        device_id: Optional[str],
        confidence: Optional[float],
        image_url: Optional[str]
    ) -> PlateEvent:
        event = PlateEvent(
            direction=direction,
            plate_no=LicensePlate(plate_no_raw).value,
            plate_no_raw=plate_no_raw,
            lane_id=lane_id,
            captured_at=captured_at,
            device_id=device_id,
            confidence=confidence,
            image_url=image_url,
            session_id=session_id,
        )
        return uow.plate_events.add(event)

    def _issue_barrier(
        self,
        uow: UnitOfWork,
        lane_id: Optional[str],
        reason: BarrierReason,
        session_id: str
    ) -> Optional[BarrierCommand]:
        """Persist a barrier OPEN for the device guarding the lane, if there is one"""
        device_id = uow.barriers.barrier_for_lane(lane_id) if lane_id else None
        if device_id is None:
            self._logger.warning(f"No barrier bound to lane {lane_id}; nothing to open for session {session_id}")
            return None

        command = BarrierCommand(
            device_id=device_id,
            lane_id=lane_id,
            reason=reason,
            correlation_id=session_id,
        )
        return uow.barrier_commands.add(command)

    def _rate_plan_for(self, uow: UnitOfWork, session: ParkingSession) -> Optional[RatePlan]:
        if session.rate_plan_id is None:
            self._logger.warning(f"Session {session.id} has no rate plan; pricing at zero")
            return None
        plan = uow.rate_plans.get(session.rate_plan_id)
        if plan is None:
            self._logger.warning(f"Rate plan {session.rate_plan_id} of session {session.id} is missing; pricing at zero")
        return plan

    def _recorded_discounts(self, uow: UnitOfWork, session_id: str) -> List[DiscountRequest]:
        requests = []
        for application in uow.discount_applications.list_for_session(session_id):
            rule = uow.discount_rules.get(application.rule_id)
            if rule is None:
                self._logger.warning(f"Discount rule {application.rule_id} no longer exists; skipped")
                continue
            requests.append(DiscountRequest(rule, application.value_override))
        return requests

    def _publish(self, session: ParkingSession, barrier: Optional[BarrierCommand] = None) -> None:
        """Hand committed events and the barrier intent to the notifier"""
        events = session.clear_events()
        if self.notifier is None:
            return
        try:
            self.notifier.publish_domain_events(events)
        except Exception as e:
            self._logger.error(f"Failed to publish events for session {session.id}: {e}")
        if barrier is not None:
            try:
                self.notifier.publish_barrier_command(barrier)
            except Exception as e:
                self._logger.error(f"Failed to publish barrier command {barrier.id}: {e}")


# ============================================================================
# SERVICE FACTORY
# ============================================================================

class ServiceFactory:
    """Factory for creating session services"""

    @staticmethod
    def create_in_memory_service(**kwargs) -> SessionService:
        """Service over a single shared in-memory store (tests, replays)"""
        from ..infrastructure.repositories import RepositoryFactory
        return SessionService(RepositoryFactory.create_in_memory_uow_factory(), **kwargs)
