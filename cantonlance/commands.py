"""Command construction for the Canton JSON Ledger API v2.

Daml numerics travel as strings on the wire; ``encode_numeric`` follows
the JavaScript ``String(number)`` layout the deployed frontend sends
(``"150"``, ``"150.5"``, ``"1e-7"``).
"""
from __future__ import annotations

import itertools
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence, Union

from .exceptions import ValidationError
from .models import PartyCredential

TEMPLATE_MODULE = "Freelance"

Number = Union[int, float, str, Decimal]


class Template:
    PROPOSAL = "ProjectProposal"
    CONTRACT = "ProjectContract"
    PAYMENT = "PaymentRecord"
    AUDIT_SUMMARY = "AuditSummary"


class Choice:
    ACCEPT_PROPOSAL = "AcceptProposal"
    REJECT_PROPOSAL = "RejectProposal"
    SUBMIT_MILESTONE = "SubmitMilestone"
    APPROVE_MILESTONE = "ApproveMilestone"
    REJECT_MILESTONE = "RejectMilestone"
    CANCEL_CONTRACT = "CancelContract"


class Endpoint:
    LEDGER_END = "/v2/state/ledger-end"
    ACTIVE_CONTRACTS = "/v2/state/active-contracts"
    SUBMIT_AND_WAIT = "/v2/commands/submit-and-wait"
    SUBMIT_FOR_TRANSACTION = "/v2/commands/submit-and-wait-for-transaction"
    PARTIES = "/v2/parties"
    USERS = "/v2/users"


def to_decimal(value: Number) -> Decimal:
    """Coerce a caller-supplied amount; floats go through ``str`` first."""
    if isinstance(value, bool):
        raise ValidationError(f"not a number: {value!r}")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"not a number: {value!r}") from exc
    if not number.is_finite():
        raise ValidationError(f"not a finite number: {value!r}")
    return number


def encode_numeric(value: Number) -> str:
    """Encode an amount in JavaScript ``String(number)`` layout.

    Plain notation for magnitudes in ``[1e-6, 1e21)``, exponent form outside
    it. Digits are the shortest form of the input; values that a double cannot
    hold exactly keep their full precision instead of being rounded.
    """
    number = to_decimal(value)
    if number.is_zero():
        return "0"
    sign, digit_tuple, exponent = number.normalize().as_tuple()
    digits = "".join(map(str, digit_tuple))
    k = len(digits)
    # position of the decimal point relative to the first digit
    n = k + exponent
    prefix = "-" if sign else ""
    if k <= n <= 21:
        return prefix + digits + "0" * (n - k)
    if 0 < n <= 21:
        return prefix + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return prefix + "0." + "0" * -n + digits
    mantissa = digits[0] + ("." + digits[1:] if k > 1 else "")
    return f"{prefix}{mantissa}e{'+' if n - 1 >= 0 else '-'}{abs(n - 1)}"


def template_id(name: str, package_id: Optional[str], package_name: str) -> str:
    """Qualified template id; falls back to the package-name reference."""
    if package_id:
        return f"{package_id}:{TEMPLATE_MODULE}:{name}"
    return f"#{package_name}:{TEMPLATE_MODULE}:{name}"


def create_command(template: str, arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "CreateCommand": {
            "templateId": template,
            "createArguments": arguments,
        }
    }


def exercise_command(
    template: str,
    contract_id: str,
    choice: str,
    argument: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    return {
        "ExerciseCommand": {
            "templateId": template,
            "contractId": contract_id,
            "choice": choice,
            "choiceArgument": argument or {},
        }
    }


_sequence = itertools.count(1)


@dataclass(frozen=True, slots=True)
class CommandIds:
    workflow_id: str
    command_id: str
    submission_id: str

    @classmethod
    def new(cls, workflow: str, prefix: str) -> "CommandIds":
        """Time-based ids, made unique within the process by a counter."""
        stamp = f"{int(time.time() * 1000)}-{next(_sequence)}"
        return cls(
            workflow_id=f"cantonlance-{workflow}",
            command_id=f"{prefix}-{stamp}",
            submission_id=f"{workflow}-{stamp}",
        )


def build_envelope(
    credential: PartyCredential,
    commands: Sequence[dict[str, Any]],
    ids: CommandIds,
    application_id: str,
) -> dict[str, Any]:
    """JsCommands envelope acting and reading as ``credential``'s party."""
    return {
        "commands": list(commands),
        "userId": credential.user_id,
        "workflowId": ids.workflow_id,
        "applicationId": application_id,
        "commandId": ids.command_id,
        "deduplicationPeriod": {"Empty": {}},
        "actAs": [credential.party_id],
        "readAs": [credential.party_id],
        "submissionId": ids.submission_id,
        "disclosedContracts": [],
        "domainId": "",
        "packageIdSelectionPreference": [],
    }


def extract_created_ref(response: dict[str, Any]) -> Optional[str]:
    """Contract id of the last creation in a transaction response.

    The result of an exercise is its last emitted creation, so events are
    scanned from the end.
    """
    transaction = response.get("transaction")
    if isinstance(transaction, dict):
        events = transaction.get("events") or []
        for event in reversed(events):
            if not isinstance(event, dict):
                continue
            for key in ("CreatedEvent", "created"):
                created = event.get(key)
                if isinstance(created, dict) and created.get("contractId"):
                    return str(created["contractId"])
    if response.get("contractId"):
        return str(response["contractId"])
    return None


def extract_update_id(response: dict[str, Any]) -> Optional[str]:
    transaction = response.get("transaction")
    if isinstance(transaction, dict) and transaction.get("updateId"):
        return str(transaction["updateId"])
    if response.get("updateId"):
        return str(response["updateId"])
    return None


def party_hint(display_name: str, role: str, suffix: str) -> str:
    """Derive a ledger party hint such as ``Freelancer_Sarah_Lee_a1b2``."""
    words = re.findall(r"[A-Za-z0-9]+", display_name)
    if not words:
        raise ValidationError("display name must contain letters or digits", field="display_name")
    return "_".join([role, *words, suffix])
