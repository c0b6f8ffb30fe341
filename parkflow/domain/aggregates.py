# File: parkflow/domain/aggregates.py
"""
Aggregate Roots for the Parking Session Engine
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. ParkingSession - Lifecycle of one vehicle stay, from entry capture to close

Key Concepts:
- The session enforces its own state machine; illegal moves raise
  SessionStateError
- Every state change raises a domain event, collected until the
  application layer publishes them after commit
- Fee values are only ever replaced by a whole new FeeBreakdown
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
import logging

from .models import (
    Entity, LicensePlate, SessionStatus, PaymentStatus, CloseReason,
    FeeBreakdown, DomainEvent,
    SessionOpenedEvent, SessionExitPendingEvent, SessionPaidEvent,
    SessionClosedEvent, SessionRepricedEvent, SessionCorrectedEvent,
    SessionErrorEvent
)


class SessionStateError(ValueError):
    """Raised when a session is asked to make a transition it does not allow"""
    pass


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._version: int = 1
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        """Get current aggregate version"""
        return self._version

    def _increment_version(self) -> None:
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        """Add a domain event to the list of changes"""
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    @property
    def has_changes(self) -> bool:
        return len(self._changes) > 0

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - to be overridden by subclasses"""
        pass


# ============================================================================
# PARKING SESSION AGGREGATE
# ============================================================================

ALLOWED_TRANSITIONS = {
    SessionStatus.PARKING: {
        SessionStatus.EXIT_PENDING, SessionStatus.PAID,
        SessionStatus.CLOSED, SessionStatus.ERROR,
    },
    SessionStatus.EXIT_PENDING: {
        SessionStatus.PAID, SessionStatus.CLOSED, SessionStatus.ERROR,
    },
    SessionStatus.PAID: {SessionStatus.CLOSED, SessionStatus.ERROR},
    SessionStatus.ERROR: {SessionStatus.CLOSED},
    SessionStatus.CLOSED: set(),
}


class ParkingSession(AggregateRoot):
    """
    Aggregate Root: One vehicle stay

    States: PARKING -> EXIT_PENDING -> PAID -> CLOSED, with ERROR as an
    escape state. CLOSED is terminal.
    """

    def __init__(
        self,
        plate_no: str,
        entry_at: datetime,
        entry_lane_id: Optional[str] = None,
        rate_plan_id: Optional[str] = None,
        status: SessionStatus = SessionStatus.PARKING,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.plate_no = LicensePlate(plate_no).value
        self.entry_at = entry_at
        self.entry_lane_id = entry_lane_id
        self.rate_plan_id = rate_plan_id
        self.status = status

        self.exit_lane_id: Optional[str] = None
        self.exit_at: Optional[datetime] = None
        self.raw_fee: int = 0
        self.discount_total: int = 0
        self.final_fee: int = 0
        self.fee_breakdown: Optional[FeeBreakdown] = None
        self.calculated_at: Optional[datetime] = None
        self.payment_status = PaymentStatus.NONE
        self.paid_at: Optional[datetime] = None
        self.close_reason: Optional[CloseReason] = None
        self.closed_at: Optional[datetime] = None
        self.created_at = datetime.now()
        self.updated_at = self.created_at

    @classmethod
    def open(
        cls,
        plate_no: str,
        entry_at: datetime,
        entry_lane_id: Optional[str] = None,
        rate_plan_id: Optional[str] = None
    ) -> 'ParkingSession':
        """Create a new PARKING session from an unmatched entry capture"""
        session = cls(plate_no, entry_at, entry_lane_id, rate_plan_id)
        session._add_domain_event(SessionOpenedEvent(
            session.id, session.plate_no, session.status,
            entry_lane_id=entry_lane_id,
            entry_at=entry_at.isoformat(),
            rate_plan_id=rate_plan_id,
        ))
        return session

    @classmethod
    def restore(cls, state: Dict[str, Any]) -> 'ParkingSession':
        """Rebuild a session from persisted state without raising events"""
        session = cls(
            plate_no=state['plate_no'],
            entry_at=state['entry_at'],
            entry_lane_id=state.get('entry_lane_id'),
            rate_plan_id=state.get('rate_plan_id'),
            status=state.get('status', SessionStatus.PARKING),
            id=state['id'],
        )
        for name in (
            'exit_lane_id', 'exit_at', 'raw_fee', 'discount_total', 'final_fee',
            'fee_breakdown', 'calculated_at', 'payment_status', 'paid_at',
            'close_reason', 'closed_at', 'created_at', 'updated_at',
        ):
            if name in state and state[name] is not None:
                setattr(session, name, state[name])
        session._version = state.get('version', 1)
        return session

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self.status.is_terminal

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def is_waiting_at_exit(self) -> bool:
        """Vehicle was captured at an exit lane and is held for payment"""
        return self.status == SessionStatus.EXIT_PENDING and self.exit_lane_id is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, target: SessionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise SessionStateError(
                f"Session {self.id} cannot move from {self.status} to {target}"
            )
        self._logger.info(f"Session {self.id} ({self.plate_no}): {self.status} -> {target}")
        self.status = target
        self.updated_at = datetime.now()
        self._increment_version()

    def _close(self, reason: CloseReason, closed_at: datetime) -> None:
        self._transition(SessionStatus.CLOSED)
        self.close_reason = reason
        self.closed_at = closed_at
        self._validate_invariants()
        self._add_domain_event(SessionClosedEvent(
            self.id, self.plate_no, self.status,
            close_reason=reason.value,
            final_fee=self.final_fee,
            exit_lane_id=self.exit_lane_id,
        ))

    def _record_exit(self, exit_at: datetime, exit_lane_id: Optional[str]) -> None:
        self.exit_at = exit_at
        if exit_lane_id is not None:
            self.exit_lane_id = exit_lane_id

    def _apply_breakdown(self, breakdown: FeeBreakdown, calculated_at: datetime) -> None:
        self.fee_breakdown = breakdown
        self.raw_fee = breakdown.raw_fee
        self.discount_total = breakdown.discount_total
        self.final_fee = breakdown.final_fee
        self.calculated_at = calculated_at
        self._validate_invariants()

    def close_for_membership(
        self,
        exit_at: datetime,
        exit_lane_id: Optional[str],
        membership_id: Optional[str] = None
    ) -> None:
        """
        A valid membership overrides billing: close with zero fee. Any
        earlier pricing is dropped so the session carries no breakdown that
        disagrees with the zero fee.
        """
        self._record_exit(exit_at, exit_lane_id)
        self.fee_breakdown = None
        self.raw_fee = 0
        self.discount_total = 0
        self.final_fee = 0
        self._logger.info(f"Session {self.id} covered by membership {membership_id}")
        self._close(CloseReason.MEMBERSHIP_VALID, exit_at)

    def close_after_payment(self, exit_at: datetime, exit_lane_id: Optional[str]) -> None:
        """Physical departure of an already paid session"""
        if self.status != SessionStatus.PAID:
            raise SessionStateError(f"Session {self.id} is {self.status}, not PAID")
        self._record_exit(exit_at, exit_lane_id)
        self._close(CloseReason.NORMAL_EXIT, exit_at)

    def record_exit_fee(
        self,
        exit_at: datetime,
        exit_lane_id: Optional[str],
        breakdown: FeeBreakdown,
        calculated_at: Optional[datetime] = None
    ) -> SessionStatus:
        """
        Price the exit of a PARKING session.
        A zero final fee closes the session as FREE_EXIT, anything else
        holds it in EXIT_PENDING until payment.
        """
        if self.status != SessionStatus.PARKING:
            raise SessionStateError(f"Session {self.id} is {self.status}, not PARKING")

        self._record_exit(exit_at, exit_lane_id)
        self._apply_breakdown(breakdown, calculated_at or datetime.now())

        if breakdown.final_fee == 0:
            self._close(CloseReason.FREE_EXIT, exit_at)
        else:
            self._transition(SessionStatus.EXIT_PENDING)
            self.payment_status = PaymentStatus.PENDING
            self._add_domain_event(SessionExitPendingEvent(
                self.id, self.plate_no, self.status,
                exit_lane_id=self.exit_lane_id,
                exit_at=exit_at.isoformat(),
                final_fee=self.final_fee,
                breakdown=breakdown.to_dict(),
            ))
        return self.status

    def reprice(self, breakdown: FeeBreakdown, calculated_at: Optional[datetime] = None) -> bool:
        """
        Replace the fee breakdown (discount applied or recalculation).
        Returns True when the new fee released an EXIT_PENDING session.
        """
        if self.is_closed:
            raise SessionStateError(f"Session {self.id} is closed")

        previous_fee = self.final_fee
        self._apply_breakdown(breakdown, calculated_at or datetime.now())
        self.updated_at = datetime.now()
        self._add_domain_event(SessionRepricedEvent(
            self.id, self.plate_no, self.status,
            previous_fee=previous_fee,
            final_fee=self.final_fee,
        ))

        if self.status == SessionStatus.EXIT_PENDING and self.final_fee == 0:
            self.payment_status = PaymentStatus.NONE
            self._close(CloseReason.FREE_EXIT, self.exit_at or datetime.now())
            return True
        return False

    def confirm_payment(self, amount: int, paid_at: datetime) -> None:
        """Mark the session paid; a vehicle still inside may pay ahead of exit"""
        if self.is_closed:
            raise SessionStateError(f"Session {self.id} is already closed")
        if self.is_paid:
            raise SessionStateError(f"Session {self.id} is already paid")

        self._transition(SessionStatus.PAID)
        self.payment_status = PaymentStatus.PAID
        self.paid_at = paid_at
        self._add_domain_event(SessionPaidEvent(
            self.id, self.plate_no, self.status,
            amount=amount,
            paid_at=paid_at.isoformat(),
        ))

    def force_close(self, closed_at: datetime, reason: Optional[str] = None) -> None:
        if self.is_closed:
            raise SessionStateError(f"Session {self.id} is already closed")
        close_reason = (
            CloseReason.ERROR_RECOVERY if self.status == SessionStatus.ERROR
            else CloseReason.FORCE_CLOSE
        )
        self._logger.warning(f"Force closing session {self.id}: {reason}")
        self._close(close_reason, closed_at)

    def flag_error(self, reason: str) -> None:
        self._transition(SessionStatus.ERROR)
        self._add_domain_event(SessionErrorEvent(
            self.id, self.plate_no, self.status, reason=reason,
        ))

    def correct(
        self,
        reason: str,
        plate_no: Optional[str] = None,
        entry_at: Optional[datetime] = None,
        exit_at: Optional[datetime] = None
    ) -> None:
        """Operator correction of captured data"""
        if plate_no is None and entry_at is None and exit_at is None:
            raise ValueError("At least one field must be corrected")

        changes: Dict[str, Any] = {}
        if plate_no is not None:
            self.plate_no = LicensePlate(plate_no).value
            changes['plate_no'] = self.plate_no
        if entry_at is not None:
            self.entry_at = entry_at
            changes['entry_at'] = entry_at.isoformat()
        if exit_at is not None:
            self.exit_at = exit_at
            changes['exit_at'] = exit_at.isoformat()

        self.updated_at = datetime.now()
        self._increment_version()
        self._add_domain_event(SessionCorrectedEvent(
            self.id, self.plate_no, self.status, reason=reason, changes=changes,
        ))

    def _validate_invariants(self) -> None:
        if self.final_fee < 0:
            raise SessionStateError("Final fee cannot be negative")
        if self.status == SessionStatus.CLOSED and self.close_reason is None:
            raise SessionStateError("Closed session must carry a close reason")
