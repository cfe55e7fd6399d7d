"""Ledger records visible to an identity."""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field

from .base import CantonlanceModel, LedgerRecord


class ContractStatus(str, Enum):
    """Project contract status."""

    ACTIVE = "Active"
    COMPLETED = "Completed"
    DISPUTED = "Disputed"


class Proposal(LedgerRecord):
    """An unconfirmed offer from a client to a freelancer."""

    client: str
    freelancer: str
    description: str = ""
    hourly_rate: Decimal = Decimal("0")
    total_budget: Decimal = Decimal("0")
    milestones_total: int = 0


class Contract(LedgerRecord):
    """An accepted engagement with milestone and payment tracking."""

    client: str
    freelancer: str
    description: str = ""
    hourly_rate: Decimal = Decimal("0")
    total_budget: Decimal = Decimal("0")
    milestones_total: int = 0
    milestones_completed: int = 0
    amount_paid: Decimal = Decimal("0")
    # Values outside ContractStatus are kept verbatim
    status: str = ContractStatus.ACTIVE.value
    milestone_pending: bool = False

    @property
    def milestones_remaining(self) -> int:
        return max(0, self.milestones_total - self.milestones_completed)

    @property
    def is_active(self) -> bool:
        return self.status == ContractStatus.ACTIVE.value


class Payment(LedgerRecord):
    """Payment released for one approved milestone."""

    client: str
    freelancer: str
    amount: Decimal = Decimal("0")
    milestone_number: int = 0
    timestamp: str = ""
    project_description: str = ""


class AuditSummary(LedgerRecord):
    """Aggregate totals shared with an auditor, without contract detail."""

    client: str
    auditor: str
    total_contracts_count: int = 0
    total_amount_paid: Decimal = Decimal("0")
    report_period: str = ""


class VisibleState(CantonlanceModel):
    """Everything one identity can see at one ledger offset."""

    contracts: list[Contract] = Field(default_factory=list)
    proposals: list[Proposal] = Field(default_factory=list)
    payments: list[Payment] = Field(default_factory=list)
    audit_summaries: list[AuditSummary] = Field(default_factory=list)
    offset: Optional[int] = None

    def contract(self, contract_ref: str) -> Optional[Contract]:
        return next((c for c in self.contracts if c.contract_ref == contract_ref), None)

    def proposal(self, contract_ref: str) -> Optional[Proposal]:
        return next((p for p in self.proposals if p.contract_ref == contract_ref), None)

    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.payments), Decimal("0"))

    def counts(self) -> dict[str, int]:
        return {
            "contracts": len(self.contracts),
            "proposals": len(self.proposals),
            "payments": len(self.payments),
            "audit_summaries": len(self.audit_summaries),
        }

    @property
    def is_empty(self) -> bool:
        return not (self.contracts or self.proposals or self.payments or self.audit_summaries)
