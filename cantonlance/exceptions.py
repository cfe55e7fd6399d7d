"""Exception hierarchy for cantonlance.

All library errors inherit from CantonlanceError, enabling:
- Consistent handling in the workflow store (failures become ActionResults)
- Machine-readable error codes for collaborators
- Structured details for the action and call logs

Families:
- Transport: the ledger answered with a non-success status, timed out, or
  was unreachable
- Decode: a single active-contract entry could not be turned into a record
- Policy: an action was refused by deliberate policy before any network call
- State: an action is not valid for the current role, context or snapshot
- Validation: caller supplied values out of range
"""
from __future__ import annotations

from typing import Any, Optional


class CantonlanceError(Exception):
    """Base exception for all cantonlance errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "POLICY_ERROR")
        details: Optional additional context
    """

    error_code: str = "CANTONLANCE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serializable form."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Transport Errors
# =============================================================================

class LedgerTransportError(CantonlanceError):
    """The ledger returned a non-success response."""

    error_code = "LEDGER_TRANSPORT_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.status_code = status_code
        self.body = body

    @classmethod
    def from_response(cls, status_code: int, body: Any) -> "LedgerTransportError":
        """Create the right transport error for an HTTP status."""
        text = body if isinstance(body, str) else str(body)
        message = f"Canton API error {status_code}: {text}"
        if status_code in (401, 403):
            return LedgerAuthenticationError(message, status_code=status_code, body=body)
        return cls(message, status_code=status_code, body=body)


class LedgerAuthenticationError(LedgerTransportError):
    """The ledger rejected the acting identity's credential."""

    error_code = "LEDGER_AUTHENTICATION_ERROR"


class LedgerTimeoutError(LedgerTransportError):
    """The ledger did not answer in time, or could not be reached."""

    error_code = "LEDGER_TIMEOUT"
    retryable = True


# =============================================================================
# Decode Errors
# =============================================================================

class DecodeError(CantonlanceError):
    """An active-contract entry had an unexpected shape."""

    error_code = "DECODE_ERROR"


# =============================================================================
# Policy Errors
# =============================================================================

class PolicyError(CantonlanceError):
    """Action refused by policy before any network call."""

    error_code = "POLICY_ERROR"


class SandboxOnlyError(PolicyError):
    """Identity allocation attempted outside a sandbox environment."""

    error_code = "SANDBOX_ONLY"

    def __init__(self, environment: str) -> None:
        super().__init__(
            "Account creation is available in Sandbox mode only. "
            "Switch to Sandbox to create new accounts.",
            details={"environment": environment},
        )
        self.environment = environment


class NoAuditorError(PolicyError):
    """No identity with the Auditor role is available."""

    error_code = "NO_AUDITOR"

    def __init__(self) -> None:
        super().__init__("No auditor identity available to receive the audit summary")


class EnvironmentUnavailableError(PolicyError):
    """Requested environment has no configuration."""

    error_code = "ENVIRONMENT_UNAVAILABLE"

    def __init__(self, environment: str) -> None:
        super().__init__(
            f"Cannot switch to {environment} — no config available",
            details={"environment": environment},
        )
        self.environment = environment


# =============================================================================
# State Errors
# =============================================================================

class StateError(CantonlanceError):
    """Action not valid for the current role, context or contract state."""

    error_code = "STATE_ERROR"


class NotConnectedError(StateError):
    """No ledger environment is connected."""

    error_code = "NOT_CONNECTED"

    def __init__(self) -> None:
        super().__init__("Not connected")


class UnknownIdentityError(StateError):
    """Identity has no registry entry or no credential in this environment."""

    error_code = "UNKNOWN_IDENTITY"

    def __init__(self, identity: str, reason: str = "unknown identity") -> None:
        super().__init__(f"{reason}: {identity}", details={"identity": identity})
        self.identity = identity


class RoleNotPermittedError(StateError):
    """The acting identity's role may not perform this action."""

    error_code = "ROLE_NOT_PERMITTED"

    def __init__(self, action: str, role: str, allowed: str) -> None:
        super().__init__(
            f"{role} may not {action} (requires {allowed})",
            details={"action": action, "role": role, "allowed": allowed},
        )
        self.action = action
        self.role = role


class InvalidTransitionError(StateError):
    """The visible contract state does not allow this transition."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, message: str, contract_ref: Optional[str] = None) -> None:
        super().__init__(message, details={"contract_ref": contract_ref} if contract_ref else None)
        self.contract_ref = contract_ref


class ActionInProgressError(StateError):
    """The same action key is already in flight."""

    error_code = "ACTION_IN_PROGRESS"

    def __init__(self, key: str) -> None:
        super().__init__(f"{key} is already in progress", details={"key": key})
        self.key = key


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(CantonlanceError):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


# =============================================================================
# Multi-step failures
# =============================================================================

class PartialAllocationError(CantonlanceError):
    """User creation failed after the ledger party was already allocated.

    The allocated party stays on the ledger without a local identity. Ledger
    operations are not rolled back.
    """

    error_code = "PARTIAL_ALLOCATION"

    def __init__(self, party_id: str, cause: Exception) -> None:
        super().__init__(
            f"Party {party_id} was allocated but user creation failed: {cause}",
            details={"party_id": party_id},
        )
        self.party_id = party_id
        self.cause = cause
