"""cantonlance models."""
from .base import CantonlanceModel, LedgerRecord
from .party import PRESET_PARTIES, ROLE_COLORS, Party, PartyCredential, PartyRole
from .records import AuditSummary, Contract, ContractStatus, Payment, Proposal, VisibleState

__all__ = [
    "CantonlanceModel",
    "LedgerRecord",
    "Party",
    "PartyCredential",
    "PartyRole",
    "PRESET_PARTIES",
    "ROLE_COLORS",
    "Proposal",
    "Contract",
    "ContractStatus",
    "Payment",
    "AuditSummary",
    "VisibleState",
]
