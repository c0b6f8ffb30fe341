# File: parkflow/application/commands.py
"""
Command Pattern Implementation for the Parking Session Engine

Each engine operation is wrapped as a command object built from a
validated DTO, so collaborators and replay files can drive the engine with
plain `{type, data}` dictionaries.

Command Types:
1. Capture Commands - Plate captures at entry and exit lanes
2. Billing Commands - Fee queries, payments, discounts, recalculation
3. Operator Commands - Corrections, force close, error flagging, lookups
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Any, Type
import logging
import uuid

from pydantic import ValidationError

from ..domain.models import PaymentMethod
from .dtos import (
    BaseDTO, PlateCaptureDTO, FeeQueryDTO, SessionRequestDTO,
    PaymentConfirmationDTO, ApplyDiscountRequestDTO, RecalculateRequestDTO,
    SessionCorrectionDTO, ForceCloseRequestDTO, FlagErrorRequestDTO
)
from .session_service import SessionService, SessionServiceError, SessionResult


# ============================================================================
# COMMAND BASE CLASS
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    A command carries an already validated request and knows which service
    operation serves it.
    """

    request_type: Type[BaseDTO] = BaseDTO

    def __init__(self, request: BaseDTO, executed_by: Optional[str] = None):
        self.request = request
        self.command_id = str(uuid.uuid4())
        self.executed_at: Optional[datetime] = None
        self.executed_by = executed_by or "system"
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def execute(self, service: SessionService) -> Dict[str, Any]:
        """
        Execute the command using the provided service

        Returns: Result payload
        """
        pass

    def get_description(self) -> str:
        """Get human-readable command description"""
        return self.__class__.__name__.replace("Command", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "request": self.request.to_dict(by_alias=True, mode='json'),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "executed_by": self.executed_by,
        }


# ============================================================================
# CAPTURE COMMANDS
# ============================================================================

class ProcessCaptureCommand(Command):
    """Command: Feed one LPR capture through entry or exit processing"""

    request_type = PlateCaptureDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        self.logger.info(f"Processing {self.request.direction} capture of {self.request.plate_no}")
        return service.process_capture(self.request).to_dict()


# ============================================================================
# BILLING COMMANDS
# ============================================================================

class ComputeFeeCommand(Command):
    """Command: Price a stay without touching any session"""

    request_type = FeeQueryDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        breakdown = service.compute_fee(
            self.request.entry_at,
            self.request.exit_at,
            self.request.rules.to_domain(),
            [rule.to_domain() for rule in self.request.discounts],
        )
        return breakdown.to_dict()


class ConfirmPaymentCommand(Command):
    request_type = PaymentConfirmationDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        result = service.confirm_payment(
            self.request.session_id,
            self.request.amount,
            method=PaymentMethod(self.request.method),
            paid_at=self.request.paid_at,
        )
        return result.to_dict()


class ApplyDiscountCommand(Command):
    request_type = ApplyDiscountRequestDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        result = service.apply_discount(
            self.request.session_id,
            self.request.discount_rule_id,
            value_override=self.request.value_override,
            reason=self.request.reason,
            applied_by=self.request.applied_by or self.executed_by,
        )
        return result.to_dict()


class RecalculateCommand(Command):
    request_type = RecalculateRequestDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        result = service.recalculate(
            self.request.session_id,
            self.request.reason,
            rate_plan_id=self.request.rate_plan_id,
        )
        return result.to_dict()


# ============================================================================
# OPERATOR COMMANDS
# ============================================================================

class CorrectSessionCommand(Command):
    request_type = SessionCorrectionDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        result = service.correct_session(
            self.request.session_id,
            self.request.reason,
            plate_no=self.request.plate_no_corrected,
            entry_at=self.request.entry_at,
            exit_at=self.request.exit_at,
        )
        return result.to_dict()


class ForceCloseCommand(Command):
    request_type = ForceCloseRequestDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        self.logger.warning(f"Force close of session {self.request.session_id} by {self.executed_by}")
        result = service.force_close(self.request.session_id, self.request.reason, note=self.request.note)
        return result.to_dict()


class FlagErrorCommand(Command):
    request_type = FlagErrorRequestDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        return service.flag_error(self.request.session_id, self.request.reason).to_dict()


class GetSessionCommand(Command):
    request_type = SessionRequestDTO

    def execute(self, service: SessionService) -> Dict[str, Any]:
        session = service.get_session(self.request.session_id)
        return SessionResult.from_session(session).to_dict()


# ============================================================================
# COMMAND FACTORY
# ============================================================================

class CommandFactory:
    """Factory for creating commands from dictionary data"""

    command_classes: Dict[str, Type[Command]] = {
        "capture": ProcessCaptureCommand,
        "compute_fee": ComputeFeeCommand,
        "confirm_payment": ConfirmPaymentCommand,
        "apply_discount": ApplyDiscountCommand,
        "recalculate": RecalculateCommand,
        "correct_session": CorrectSessionCommand,
        "force_close": ForceCloseCommand,
        "flag_error": FlagErrorCommand,
        "get_session": GetSessionCommand,
    }

    @classmethod
    def create_command(cls, command_type: str, data: Dict[str, Any]) -> Command:
        """
        Create a command instance from type and data

        Raises:
            ValueError: Unknown command type
            ValidationError: Data does not form a valid request
        """
        command_class = cls.command_classes.get(command_type)
        if command_class is None:
            raise ValueError(f"Unknown command type: {command_type}")

        payload = dict(data or {})
        executed_by = payload.pop("executedBy", None) or payload.pop("executed_by", None)
        request = command_class.request_type.model_validate(payload)
        return command_class(request, executed_by)


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Executes commands against a session service and keeps a history of
    the ones that succeeded.

    Rejections raised by the engine (service errors, validation errors)
    become `{success: False, error}` results; anything else propagates.
    """

    def __init__(self, service: SessionService, max_history_size: int = 1000):
        self.service = service
        self.logger = logging.getLogger(self.__class__.__name__)
        self.command_history: List[Command] = []
        self.max_history_size = max_history_size

    def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Build and run a command from a `{type, data}` dictionary"""
        command_type = message.get("type")
        try:
            command = CommandFactory.create_command(command_type, message.get("data", {}))
        except ValidationError as e:
            self.logger.warning(f"Rejected {command_type} command: {e.error_count()} validation error(s)")
            return self._failure(None, command_type, e)
        except ValueError as e:
            self.logger.warning(f"Rejected command: {e}")
            return self._failure(None, command_type, e)
        return self.process(command)

    def process(self, command: Command) -> Dict[str, Any]:
        self.logger.info(f"Processing command: {command.get_description()}")
        try:
            data = command.execute(self.service)
        except (SessionServiceError, ValueError) as e:
            self.logger.warning(f"{command.get_description()} rejected: {e}")
            return self._failure(command.command_id, command.get_description(), e)

        command.executed_at = datetime.now()
        self._add_to_history(command)
        return {
            "success": True,
            "command_id": command.command_id,
            "data": data,
        }

    def process_batch(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self.handle(message) for message in messages]

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        history = self.command_history[-limit:] if limit else self.command_history
        return [cmd.to_dict() for cmd in history]

    def clear_history(self):
        self.command_history.clear()

    def _add_to_history(self, command: Command):
        self.command_history.append(command)
        if len(self.command_history) > self.max_history_size:
            self.command_history = self.command_history[-self.max_history_size:]

    @staticmethod
    def _failure(command_id: Optional[str], command_type: Optional[str], error: Exception) -> Dict[str, Any]:
        return {
            "success": False,
            "command_id": command_id,
            "command_type": command_type,
            "error": str(error),
            "error_type": error.__class__.__name__,
        }
