"""
Tests for active-contract decoding.
"""
from decimal import Decimal

import pytest

from cantonlance.decoding import (
    decode_active_contracts,
    package_of,
    parse_decimal,
    parse_int,
    parse_status,
    template_name,
)
from cantonlance.exceptions import DecodeError
from cantonlance.models import ContractStatus


def entry(template: str, contract_id: str, argument) -> dict:
    return {
        "contractEntry": {
            "JsActiveContract": {
                "createdEvent": {
                    "contractId": contract_id,
                    "templateId": template,
                    "createArgument": argument,
                }
            }
        }
    }


CONTRACT_ARGS = {
    "client": "Client::1",
    "freelancer": "Freelancer::1",
    "description": "Audit the bridge",
    "hourlyRate": "150.0",
    "totalBudget": "3000",
    "milestonesTotal": "3",
    "milestonesCompleted": 1,
    "amountPaid": "1000.5",
    "status": "Active",
    "milestonePending": True,
}


class TestLenientParsing:
    @pytest.mark.parametrize("value", [None, "", "abc", "NaN", True])
    def test_invalid_numbers_become_zero(self, value):
        assert parse_decimal(value) == Decimal("0")

    def test_integers_are_truncated(self):
        assert parse_int("3.9") == 3

    def test_status_tag_wrapper(self):
        assert parse_status({"tag": "Completed"}) == ContractStatus.COMPLETED

    def test_unknown_status_is_kept(self):
        assert parse_status("Cancelled") == "Cancelled"

    def test_non_text_status_fails(self):
        with pytest.raises(DecodeError):
            parse_status(["Active"])


class TestTemplateIds:
    def test_template_name(self):
        assert template_name("abc:Freelance:PaymentRecord") == "PaymentRecord"
        assert template_name("bogus") is None

    def test_package_of_ignores_references(self):
        assert package_of("abc:Freelance:ProjectContract") == "abc"
        assert package_of("#pkg:Freelance:ProjectContract") is None
        assert package_of("abc:Other:Thing") is None


class TestDecodeActiveContracts:
    def test_dispatches_by_entity_name(self):
        entries = [
            entry("p1:Freelance:ProjectContract", "c1", CONTRACT_ARGS),
            entry("p1:Freelance:ProjectProposal", "p1", {"client": "C", "freelancer": "F", "milestonesTotal": 2}),
            entry(
                "p1:Freelance:PaymentRecord",
                "pay1",
                {"client": "C", "freelancer": "F", "amount": "500", "milestoneNumber": 1},
            ),
            entry(
                "p1:Freelance:AuditSummary",
                "a1",
                {"client": "C", "auditor": "A", "totalContractsCount": 2, "totalAmountPaid": "750.25"},
            ),
        ]

        decoded = decode_active_contracts(entries, offset=12)
        state = decoded.state

        assert decoded.package_id == "p1"
        assert state.offset == 12
        assert state.counts() == {"contracts": 1, "proposals": 1, "payments": 1, "audit_summaries": 1}

        contract = state.contracts[0]
        assert contract.contract_ref == "c1"
        assert contract.hourly_rate == Decimal("150.0")
        assert contract.milestones_total == 3
        assert contract.amount_paid == Decimal("1000.5")
        assert contract.milestone_pending is True
        assert contract.milestones_remaining == 2
        assert state.audit_summaries[0].total_amount_paid == Decimal("750.25")

    def test_name_must_match_exactly(self):
        entries = [entry("p1:Freelance:ProjectContractV2", "c1", CONTRACT_ARGS)]
        assert decode_active_contracts(entries).state.is_empty

    def test_unknown_templates_are_ignored(self):
        entries = [entry("p1:Splice:Amulet", "x", {"owner": "me"})]
        decoded = decode_active_contracts(entries)
        assert decoded.state.is_empty
        assert decoded.skipped == []

    def test_every_recognized_entry_is_counted(self):
        entries = [
            {
                "contractEntry": {
                    "JsActiveContract": {
                        "createdEvent": {"contractId": "bare", "templateId": "p1:Freelance:ProjectContract"}
                    }
                }
            },
            entry("p1:Freelance:ProjectContract", "cancelled", {**CONTRACT_ARGS, "status": "Cancelled"}),
            entry("p1:Freelance:ProjectContract", "text", "not-an-object"),
            entry("p1:Freelance:PaymentRecord", "pay", {"client": "C", "freelancer": "F", "amount": "10"}),
        ]

        decoded = decode_active_contracts(entries)

        assert decoded.state.counts() == {"contracts": 3, "proposals": 0, "payments": 1, "audit_summaries": 0}
        assert decoded.skipped == []
        bare, cancelled, _ = decoded.state.contracts
        assert bare.client == ""
        assert bare.status == ContractStatus.ACTIVE.value
        assert cancelled.status == "Cancelled"
        assert not cancelled.is_active

    def test_undecodable_entry_is_skipped_without_failing(self):
        entries = [
            entry("p1:Freelance:ProjectContract", "bad", {**CONTRACT_ARGS, "status": {"tag": 7}}),
            entry("p1:Freelance:ProjectContract", "good", CONTRACT_ARGS),
            {"contractEntry": {"JsIncompleteAssigned": {}}},
        ]
        decoded = decode_active_contracts(entries)
        assert [c.contract_ref for c in decoded.state.contracts] == ["good"]
        assert decoded.skipped == ["bad"]

    def test_missing_numbers_decode_as_zero(self):
        args = {"client": "C", "freelancer": "F"}
        state = decode_active_contracts([entry("p1:Freelance:ProjectContract", "c", args)]).state
        contract = state.contracts[0]
        assert contract.total_budget == Decimal("0")
        assert contract.milestones_completed == 0
        assert contract.status == ContractStatus.ACTIVE.value
