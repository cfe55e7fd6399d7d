"""Decode active-contract entries into domain records.

Partial visibility is normal on a privacy ledger, so decoding is lenient:
numbers that are missing or malformed become zero, unknown templates are
ignored, and an entry that cannot be decoded at all is skipped without
failing the query.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from .commands import TEMPLATE_MODULE, Template
from .exceptions import DecodeError
from .models import AuditSummary, Contract, ContractStatus, Payment, Proposal, VisibleState

logger = logging.getLogger(__name__)


def parse_decimal(value: Any) -> Decimal:
    """Lenient numeric parse; invalid or missing values become 0."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return number if number.is_finite() else Decimal("0")


def parse_int(value: Any) -> int:
    """Lenient integer parse; fractional input is truncated."""
    number = parse_decimal(value)
    return int(number)


def parse_text(value: Any) -> str:
    return "" if value is None else str(value)


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def parse_status(value: Any) -> str:
    """Contract status; unknown values pass through unchanged."""
    # Daml enums arrive as bare strings; older encoders wrap them in a tag
    if isinstance(value, dict):
        value = value.get("tag")
    if value in (None, ""):
        return ContractStatus.ACTIVE.value
    if not isinstance(value, str):
        raise DecodeError(f"contract status is not text: {value!r}")
    try:
        return ContractStatus(value).value
    except ValueError:
        logger.debug("Keeping unrecognized contract status %r", value)
        return value


def template_name(template_id: str) -> Optional[str]:
    """Entity name of a ``<package>:<module>:<entity>`` template id."""
    parts = template_id.split(":")
    return parts[-1] if len(parts) >= 3 else None


def package_of(template_id: str) -> Optional[str]:
    """Package id of one of our templates, if ``template_id`` names one."""
    if f":{TEMPLATE_MODULE}:" not in template_id:
        return None
    package = template_id.split(":")[0]
    if not package or package.startswith("#"):
        return None
    return package


def decode_proposal(ref: str, p: dict[str, Any]) -> Proposal:
    return Proposal(
        contract_ref=ref,
        client=parse_text(p.get("client")),
        freelancer=parse_text(p.get("freelancer")),
        description=parse_text(p.get("description")),
        hourly_rate=parse_decimal(p.get("hourlyRate")),
        total_budget=parse_decimal(p.get("totalBudget")),
        milestones_total=parse_int(p.get("milestonesTotal")),
    )


def decode_contract(ref: str, p: dict[str, Any]) -> Contract:
    return Contract(
        contract_ref=ref,
        client=parse_text(p.get("client")),
        freelancer=parse_text(p.get("freelancer")),
        description=parse_text(p.get("description")),
        hourly_rate=parse_decimal(p.get("hourlyRate")),
        total_budget=parse_decimal(p.get("totalBudget")),
        milestones_total=parse_int(p.get("milestonesTotal")),
        milestones_completed=parse_int(p.get("milestonesCompleted")),
        amount_paid=parse_decimal(p.get("amountPaid")),
        status=parse_status(p.get("status")),
        milestone_pending=parse_bool(p.get("milestonePending")),
    )


def decode_payment(ref: str, p: dict[str, Any]) -> Payment:
    return Payment(
        contract_ref=ref,
        client=parse_text(p.get("client")),
        freelancer=parse_text(p.get("freelancer")),
        amount=parse_decimal(p.get("amount")),
        milestone_number=parse_int(p.get("milestoneNumber")),
        timestamp=parse_text(p.get("timestamp")),
        project_description=parse_text(p.get("projectDescription")),
    )


def decode_audit_summary(ref: str, p: dict[str, Any]) -> AuditSummary:
    return AuditSummary(
        contract_ref=ref,
        client=parse_text(p.get("client")),
        auditor=parse_text(p.get("auditor")),
        total_contracts_count=parse_int(p.get("totalContractsCount")),
        total_amount_paid=parse_decimal(p.get("totalAmountPaid")),
        report_period=parse_text(p.get("reportPeriod")),
    )


_DECODERS: dict[str, tuple[str, Callable[[str, dict[str, Any]], Any]]] = {
    Template.CONTRACT: ("contracts", decode_contract),
    Template.PROPOSAL: ("proposals", decode_proposal),
    Template.PAYMENT: ("payments", decode_payment),
    Template.AUDIT_SUMMARY: ("audit_summaries", decode_audit_summary),
}


def created_event(entry: Any) -> Optional[dict[str, Any]]:
    """The createdEvent of a v2 active-contract entry, if present."""
    if not isinstance(entry, dict):
        return None
    contract_entry = entry.get("contractEntry")
    if not isinstance(contract_entry, dict):
        return None
    active = contract_entry.get("JsActiveContract")
    if not isinstance(active, dict):
        return None
    event = active.get("createdEvent")
    return event if isinstance(event, dict) else None


@dataclass
class DecodedEntries:
    state: VisibleState
    package_id: Optional[str] = None
    skipped: list[str] = field(default_factory=list)


def decode_active_contracts(entries: list[Any], offset: Optional[int] = None) -> DecodedEntries:
    """Dispatch every entry on its template discriminator."""
    buckets: dict[str, list[Any]] = {
        "contracts": [],
        "proposals": [],
        "payments": [],
        "audit_summaries": [],
    }
    package_id: Optional[str] = None
    skipped: list[str] = []

    for entry in entries:
        event = created_event(entry)
        if event is None:
            continue

        tpl = parse_text(event.get("templateId"))
        if package_id is None:
            package_id = package_of(tpl)

        target = _DECODERS.get(template_name(tpl) or "")
        if target is None:
            continue

        bucket, decoder = target
        ref = parse_text(event.get("contractId"))
        payload = event.get("createArgument")
        if not isinstance(payload, dict):
            payload = {}
        try:
            buckets[bucket].append(decoder(ref, payload))
        except (DecodeError, PydanticValidationError) as exc:
            logger.debug("Skipping undecodable %s entry %s: %s", tpl, ref, exc)
            skipped.append(ref)

    state = VisibleState(offset=offset, **buckets)
    return DecodedEntries(state=state, package_id=package_id, skipped=skipped)
