"""Exception hierarchy for the lending engine."""

from typing import Any, Dict, Optional


class LendingError(ValueError):
    """Base exception for all lending engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ValidationError(LendingError):
    """Raised when request fields are missing or malformed."""


class StateConflictError(LendingError):
    """Raised when an operation is invalid for the entity's current state."""


class LoanClosedError(StateConflictError):
    """Raised when a payment is recorded against a closed loan."""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} is already closed", {"loan_id": loan_id})


class JobAlreadyRunningError(StateConflictError):
    """Raised when a named job is started while another run is in progress."""

    def __init__(self, job_name: str, started_at: Optional[str] = None):
        details = {"job_name": job_name}
        if started_at:
            details["started_at"] = started_at
        super().__init__(f"Job '{job_name}' is already running", details)


class NotFoundError(LendingError):
    """Raised when a loan, payment or job execution id cannot be resolved."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id}
        )


class ExternalDependencyFailure(LendingError):
    """Raised by notification providers when a dispatch cannot be delivered."""


class JobExecutionFailure(LendingError):
    """Raised inside a batch job to mark the run as failed."""
