"""
cantonlance

Privacy-preserving freelance workflows on a Canton ledger: proposals,
milestone-based contracts, payments and auditor summaries, each visible only
to its stakeholders.
"""

from .call_log import ApiCall, CallLog
from .client import LedgerClient, RetryConfig, SubmissionOutcome
from .config import CantonlanceSettings, load_settings
from .environments import EnvironmentRegistry, LedgerConfig
from .exceptions import (
    ActionInProgressError,
    CantonlanceError,
    DecodeError,
    EnvironmentUnavailableError,
    InvalidTransitionError,
    LedgerAuthenticationError,
    LedgerTimeoutError,
    LedgerTransportError,
    NoAuditorError,
    NotConnectedError,
    PartialAllocationError,
    PolicyError,
    RoleNotPermittedError,
    SandboxOnlyError,
    StateError,
    UnknownIdentityError,
    ValidationError,
)
from .identities import FileIdentityStore, IdentityRegistry, InMemoryIdentityStore
from .models import (
    PRESET_PARTIES,
    AuditSummary,
    Contract,
    ContractStatus,
    Party,
    PartyCredential,
    PartyRole,
    Payment,
    Proposal,
    VisibleState,
)
from .store import ActionResult, WorkflowStore

__version__ = "0.1.0"

__all__ = [
    # Store
    "WorkflowStore",
    "ActionResult",
    # Ledger access
    "LedgerClient",
    "RetryConfig",
    "SubmissionOutcome",
    "ApiCall",
    "CallLog",
    # Environments and identities
    "EnvironmentRegistry",
    "LedgerConfig",
    "IdentityRegistry",
    "FileIdentityStore",
    "InMemoryIdentityStore",
    # Config
    "CantonlanceSettings",
    "load_settings",
    # Models
    "Party",
    "PartyCredential",
    "PartyRole",
    "PRESET_PARTIES",
    "Proposal",
    "Contract",
    "ContractStatus",
    "Payment",
    "AuditSummary",
    "VisibleState",
    # Errors
    "CantonlanceError",
    "LedgerTransportError",
    "LedgerAuthenticationError",
    "LedgerTimeoutError",
    "DecodeError",
    "PolicyError",
    "SandboxOnlyError",
    "NoAuditorError",
    "EnvironmentUnavailableError",
    "StateError",
    "NotConnectedError",
    "UnknownIdentityError",
    "RoleNotPermittedError",
    "InvalidTransitionError",
    "ActionInProgressError",
    "ValidationError",
    "PartialAllocationError",
]
