"""
Pytest configuration and fixtures for cantonlance tests.

``FakeLedger`` is a small in-memory stand-in for a Canton participant's JSON
API. It enforces stakeholder visibility the way the real ledger does, so
privacy scenarios can be exercised end to end through the real client.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

import httpx
import pytest

from cantonlance.call_log import CallLog
from cantonlance.client import LedgerClient, RetryConfig
from cantonlance.config import CantonlanceSettings
from cantonlance.environments import EnvironmentRegistry, LedgerConfig
from cantonlance.identities import IdentityRegistry, InMemoryIdentityStore
from cantonlance.models import Party
from cantonlance.store import WorkflowStore

PACKAGE_ID = "4f1c2a9be0d7"
DAR_PACKAGE = "cantonlance-freelance"
FINGERPRINT = "1220abc"

PRESET_LEDGER_NAMES = {
    "client": "Client_EthFoundation",
    "freelancerA": "FreelancerA_Nidhi",
    "freelancerB": "FreelancerB_Akash",
    "auditor": "Auditor_Eve",
}


def ledger_party(identity: str) -> str:
    return f"{PRESET_LEDGER_NAMES[identity]}::{FINGERPRINT}"


def config_payload(mode: str = "local", url: str = "http://localhost:7575") -> dict[str, Any]:
    return {
        "mode": mode,
        "ledgerApiUrl": url,
        "darPackageId": DAR_PACKAGE,
        "deployedAt": "2026-01-15T10:00:00Z",
        "parties": {
            identity: {
                "partyId": ledger_party(identity),
                "userId": f"{identity}-user",
                "token": f"token-{identity}" if mode == "devnet" else "",
            }
            for identity in PRESET_LEDGER_NAMES
        },
    }


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


def _num(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


class LedgerRejection(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class FakeContract:
    contract_id: str
    template: str
    arguments: dict[str, Any]
    stakeholders: set[str]


@dataclass
class FakeLedger:
    """In-memory Canton participant speaking the JSON Ledger API v2."""

    package_id: str = PACKAGE_ID
    offset: int = 0
    contracts: dict[str, FakeContract] = field(default_factory=dict)
    requests: list[tuple[str, str, Any]] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    submissions: list[dict[str, Any]] = field(default_factory=list)
    parties: list[str] = field(default_factory=list)
    users: dict[str, dict[str, Any]] = field(default_factory=dict)
    path_prefix: str = ""
    fail_user_creation: bool = False
    fail_queries: bool = False
    extra_entries: list[dict[str, Any]] = field(default_factory=list)
    _counter: int = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def template_id(self, name: str) -> str:
        return f"{self.package_id}:Freelance:{name}"

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p, _ in self.requests if m == method and p == path)

    def of_template(self, name: str) -> list[FakeContract]:
        return [c for c in self.contracts.values() if c.template == name]

    # ------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        # Gateways mount the API under a prefix; routing uses the bare /v2 path
        if self.path_prefix and path.startswith(self.path_prefix):
            path = path[len(self.path_prefix) :]
        self.urls.append(str(request.url))
        self.requests.append((request.method, path, body))
        try:
            if self.fail_queries and path.startswith("/v2/state/"):
                raise LedgerRejection(500, "participant unavailable")
            if request.method == "GET" and path == "/v2/state/ledger-end":
                return httpx.Response(200, json={"offset": self.offset})
            if request.method == "POST" and path == "/v2/state/active-contracts":
                return httpx.Response(200, json=self._active_contracts(body))
            if request.method == "POST" and path == "/v2/commands/submit-and-wait-for-transaction":
                update_id, events = self._submit(body["commands"])
                return httpx.Response(200, json={"transaction": {"updateId": update_id, "events": events}})
            if request.method == "POST" and path == "/v2/commands/submit-and-wait":
                update_id, _ = self._submit(body)
                return httpx.Response(200, json={"updateId": update_id, "completionOffset": self.offset})
            if request.method == "POST" and path == "/v2/parties":
                party = f"{body['partyIdHint']}::{FINGERPRINT}"
                self.parties.append(party)
                return httpx.Response(200, json={"partyDetails": {"party": party, "isLocalParty": True}})
            if request.method == "POST" and path == "/v2/users":
                if self.fail_user_creation:
                    raise LedgerRejection(500, "user management unavailable")
                self.users[body["user"]["id"]] = body
                return httpx.Response(200, json={"user": body["user"]})
        except LedgerRejection as exc:
            return httpx.Response(exc.status, json={"code": "REJECTED", "cause": str(exc)})
        return httpx.Response(404, json={"code": "NOT_FOUND", "cause": path})

    def _active_contracts(self, body: dict[str, Any]) -> list[dict[str, Any]]:
        (party,) = body["filter"]["filtersByParty"].keys()
        entries = [
            {
                "contractEntry": {
                    "JsActiveContract": {
                        "createdEvent": {
                            "contractId": c.contract_id,
                            "templateId": self.template_id(c.template),
                            "createArgument": c.arguments,
                        },
                        "synchronizerId": "sync::fake",
                    }
                }
            }
            for c in self.contracts.values()
            if party in c.stakeholders
        ]
        return entries + list(self.extra_entries)

    # ------------------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter:04d}"

    def _create(self, template: str, arguments: dict[str, Any], stakeholders: set[str]) -> dict[str, Any]:
        contract = FakeContract(self._next_id("00cid"), template, arguments, stakeholders)
        self.contracts[contract.contract_id] = contract
        return {
            "CreatedEvent": {
                "contractId": contract.contract_id,
                "templateId": self.template_id(template),
                "createArgument": arguments,
            }
        }

    def _archive(self, contract: FakeContract) -> dict[str, Any]:
        del self.contracts[contract.contract_id]
        return {"ArchivedEvent": {"contractId": contract.contract_id, "templateId": self.template_id(contract.template)}}

    def _submit(self, envelope: dict[str, Any]) -> tuple[str, list[dict[str, Any]]]:
        self.submissions.append(envelope)
        actor = envelope["actAs"][0]
        events: list[dict[str, Any]] = []
        for command in envelope["commands"]:
            if "CreateCommand" in command:
                events.append(self._create_command(actor, command["CreateCommand"]))
            else:
                events.extend(self._exercise(actor, command["ExerciseCommand"]))
        self.offset += 1
        return self._next_id("upd-"), events

    def _create_command(self, actor: str, command: dict[str, Any]) -> dict[str, Any]:
        template = command["templateId"].split(":")[-1]
        args = dict(command["createArguments"])
        if args.get("client") != actor:
            raise LedgerRejection(400, "missing authorization from client")
        if template == "ProjectProposal":
            return self._create(template, args, {args["client"], args["freelancer"]})
        if template == "AuditSummary":
            return self._create(template, args, {args["client"], args["auditor"]})
        raise LedgerRejection(400, f"cannot create {template} directly")

    def _exercise(self, actor: str, command: dict[str, Any]) -> list[dict[str, Any]]:
        contract = self.contracts.get(command["contractId"])
        if contract is None or actor not in contract.stakeholders:
            raise LedgerRejection(404, f"contract {command['contractId']} not found")
        args = contract.arguments
        choice = command["choice"]

        def controller(role: str) -> None:
            if args[role] != actor:
                raise LedgerRejection(400, f"{choice} must be exercised by the {role}")

        if choice == "AcceptProposal":
            controller("freelancer")
            terms = {k: args[k] for k in ("client", "freelancer", "description", "hourlyRate", "totalBudget", "milestonesTotal")}
            return [
                self._archive(contract),
                self._create(
                    "ProjectContract",
                    {**terms, "milestonesCompleted": 0, "amountPaid": "0", "status": "Active", "milestonePending": False},
                    set(contract.stakeholders),
                ),
            ]
        if choice == "RejectProposal":
            controller("freelancer")
            return [self._archive(contract)]
        if choice == "SubmitMilestone":
            controller("freelancer")
            if args["status"] != "Active" or args["milestonePending"] or args["milestonesCompleted"] >= args["milestonesTotal"]:
                raise LedgerRejection(400, "milestone cannot be submitted")
            return [self._archive(contract), self._create("ProjectContract", {**args, "milestonePending": True}, set(contract.stakeholders))]
        if choice == "ApproveMilestone":
            controller("client")
            if not args["milestonePending"]:
                raise LedgerRejection(400, "no milestone pending")
            payment = _dec(command["choiceArgument"]["milestonePayment"])
            completed = args["milestonesCompleted"] + 1
            status = "Completed" if completed == args["milestonesTotal"] else "Active"
            paid = _dec(args["amountPaid"]) + payment
            return [
                self._archive(contract),
                self._create(
                    "PaymentRecord",
                    {
                        "client": args["client"],
                        "freelancer": args["freelancer"],
                        "amount": _num(payment),
                        "milestoneNumber": completed,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                        "projectDescription": args["description"],
                    },
                    set(contract.stakeholders),
                ),
                self._create(
                    "ProjectContract",
                    {**args, "milestonesCompleted": completed, "amountPaid": _num(paid), "status": status, "milestonePending": False},
                    set(contract.stakeholders),
                ),
            ]
        if choice == "RejectMilestone":
            controller("client")
            if not args["milestonePending"]:
                raise LedgerRejection(400, "no milestone pending")
            return [self._archive(contract), self._create("ProjectContract", {**args, "milestonePending": False}, set(contract.stakeholders))]
        if choice == "CancelContract":
            controller("client")
            return [self._archive(contract)]
        raise LedgerRejection(400, f"unknown choice {choice}")


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> CantonlanceSettings:
    return CantonlanceSettings(
        _env_file=None,
        config_dir=tmp_path / "public",
        state_dir=tmp_path / "state",
        max_retries=0,
    )


@pytest.fixture
def local_config() -> LedgerConfig:
    return LedgerConfig.model_validate(config_payload("local"))


@pytest.fixture
def devnet_config() -> LedgerConfig:
    return LedgerConfig.model_validate(config_payload("devnet", "https://devnet.example.com/api/json-api"))


@pytest.fixture
def no_retry() -> RetryConfig:
    return RetryConfig(max_retries=0)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def devnet_ledger() -> FakeLedger:
    return FakeLedger(package_id="9d8e7f6a5b4c", path_prefix="/api/json-api")


@pytest.fixture
async def fake_client(local_config, ledger, settings):
    client = LedgerClient(local_config, transport=ledger.transport, settings=settings)
    yield client
    await client.close()


@pytest.fixture
def environments(local_config, devnet_config) -> EnvironmentRegistry:
    return EnvironmentRegistry({"local": local_config, "devnet": devnet_config})


@pytest.fixture
def identity_store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
async def make_store(environments, identity_store, ledger, devnet_ledger, settings):
    """Build a store whose clients talk to the fake ledgers."""
    stores: list[WorkflowStore] = []
    ledgers = {"local": ledger, "devnet": devnet_ledger}

    def factory(config: LedgerConfig, call_log: CallLog) -> LedgerClient:
        fake = ledgers["local" if config.is_sandbox else "devnet"]
        return LedgerClient(config, call_log=call_log, transport=fake.transport, settings=settings)

    def build(
        registry: Optional[EnvironmentRegistry] = None,
        presets: Optional[Iterable[Party]] = None,
    ) -> WorkflowStore:
        registry = registry or environments
        identities = (
            IdentityRegistry(registry, identity_store)
            if presets is None
            else IdentityRegistry(registry, identity_store, presets=presets)
        )
        store = WorkflowStore(
            registry,
            identities,
            factory,
            settings=settings,
        )
        stores.append(store)
        return store

    yield build
    for store in stores:
        await store.close()


@pytest.fixture
async def store(make_store) -> WorkflowStore:
    store = make_store()
    result = await store.connect("local")
    assert result.ok, result.message
    return store
