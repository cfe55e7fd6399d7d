"""Workflow store: the stateful coordinator behind the UI.

Holds the active identity and environment, the last visible-state snapshot
for that viewpoint, the keys of actions in flight and a human-readable
action log. The snapshot is only ever replaced by a fresh ledger query; the
store never edits it locally.

Every operation returns an ActionResult instead of raising for ledger,
policy or state failures.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from .call_log import ApiCall, CallLog
from .client import LedgerClient, SubmissionOutcome, validate_proposal_terms
from .commands import Number, encode_numeric, to_decimal
from .config import CantonlanceSettings, load_settings
from .environments import EnvironmentRegistry, LedgerConfig
from .exceptions import (
    ActionInProgressError,
    CantonlanceError,
    EnvironmentUnavailableError,
    InvalidTransitionError,
    NoAuditorError,
    NotConnectedError,
    RoleNotPermittedError,
    UnknownIdentityError,
    ValidationError,
)
from .identities import FileIdentityStore, IdentityRegistry
from .models import AuditSummary, Contract, Party, PartyRole, Payment, Proposal, VisibleState

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[LedgerConfig, CallLog], LedgerClient]

DEFAULT_IDENTITY = "client"


@dataclass(slots=True)
class ActionResult(Generic[T]):
    """Outcome of one store operation."""

    key: str
    ok: bool
    message: str
    value: Optional[T] = None
    error: Optional[CantonlanceError] = None
    stale: bool = False

    @classmethod
    def success(cls, key: str, message: str, value: Optional[T] = None) -> "ActionResult[T]":
        return cls(key=key, ok=True, message=message, value=value)

    @classmethod
    def failure(cls, key: str, message: str, error: Optional[CantonlanceError] = None) -> "ActionResult[T]":
        return cls(key=key, ok=False, message=message, error=error)

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True, slots=True)
class ContextToken:
    """Which viewpoint a query was issued for."""

    environment: Optional[str]
    identity: str
    generation: int


@dataclass(slots=True)
class _Done(Generic[T]):
    value: T
    notice: str
    detail: str


def current_quarter(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now.year}-Q{(now.month - 1) // 3 + 1}"


class WorkflowStore:
    """Coordinates ledger workflows for one session.

    Args:
        environments: Available ledger environments
        identities: Identity registry (presets + dynamic identities)
        client_factory: Builds a LedgerClient for an environment; the store
            passes its own call log so the log survives environment switches
        settings: Runtime settings
        initial_identity: Identity to view as after connecting
    """

    def __init__(
        self,
        environments: EnvironmentRegistry,
        identities: IdentityRegistry,
        client_factory: Optional[ClientFactory] = None,
        *,
        settings: Optional[CantonlanceSettings] = None,
        initial_identity: str = DEFAULT_IDENTITY,
    ) -> None:
        self._settings = settings or load_settings()
        self._environments = environments
        self._identities = identities
        self._client_factory = client_factory or self._default_client_factory
        self._call_log = CallLog(self._settings.call_log_size)
        self._client: Optional[LedgerClient] = None
        self._clients: List[LedgerClient] = []
        self._active_identity = initial_identity
        self._generation = 0
        self._snapshot = VisibleState()
        self._in_flight: set[str] = set()
        self._refreshing = 0
        self._action_log: Deque[str] = deque(maxlen=self._settings.action_log_size)

    @classmethod
    def from_settings(cls, settings: Optional[CantonlanceSettings] = None) -> "WorkflowStore":
        """Wire a store from discovered configs and the on-disk identity store."""
        settings = settings or load_settings()
        environments = EnvironmentRegistry.discover(settings=settings)
        identities = IdentityRegistry(environments, FileIdentityStore(settings.state_dir))
        return cls(environments, identities, settings=settings)

    def _default_client_factory(self, config: LedgerConfig, call_log: CallLog) -> LedgerClient:
        return LedgerClient(config, call_log=call_log, settings=self._settings)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Optional[LedgerClient]:
        return self._client

    @property
    def environments(self) -> EnvironmentRegistry:
        return self._environments

    @property
    def identities(self) -> IdentityRegistry:
        return self._identities

    @property
    def active_environment(self) -> Optional[str]:
        return self._environments.active_key

    @property
    def environment_config(self) -> Optional[LedgerConfig]:
        return self._environments.active

    @property
    def active_identity_id(self) -> str:
        return self._active_identity

    @property
    def active_identity(self) -> Optional[Party]:
        return self._identities.get(self._active_identity)

    @property
    def snapshot(self) -> VisibleState:
        return self._snapshot

    @property
    def visible_contracts(self) -> List[Contract]:
        return list(self._snapshot.contracts)

    @property
    def visible_proposals(self) -> List[Proposal]:
        return list(self._snapshot.proposals)

    @property
    def visible_payments(self) -> List[Payment]:
        return list(self._snapshot.payments)

    @property
    def visible_audit_summaries(self) -> List[AuditSummary]:
        return list(self._snapshot.audit_summaries)

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def is_busy(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def is_loading(self) -> bool:
        return bool(self._in_flight) or self._refreshing > 0

    @property
    def action_log(self) -> List[str]:
        """Human-readable log, newest first."""
        return list(self._action_log)

    def api_calls(self) -> List[ApiCall]:
        return self._call_log.entries()

    @property
    def context_token(self) -> ContextToken:
        return ContextToken(self.active_environment, self._active_identity, self._generation)

    def _log(self, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        self._action_log.appendleft(f"[{stamp}] {message}")
        logger.info(message)

    def _invalidate(self) -> None:
        """Drop the snapshot for a viewpoint that is no longer current."""
        self._generation += 1
        self._snapshot = VisibleState()

    # ------------------------------------------------------------------
    # Environment and identity context
    # ------------------------------------------------------------------

    def _enter_environment(self, key: str) -> LedgerConfig:
        config = self._environments.activate(key)
        client = self._client_factory(config, self._call_log)
        # Dynamic credentials must be registered before any query runs
        self._identities.activate(key, client)
        self._client = client
        self._clients.append(client)

        if not client.has_credential(self._active_identity):
            fallback = next(
                (p.id for p in self._identities.all() if client.has_credential(p.id)),
                self._active_identity,
            )
            if fallback != self._active_identity:
                self._log(f"{self._active_identity} is not available in {key}; viewing as {fallback}")
                self._active_identity = fallback

        self._invalidate()
        return config

    @staticmethod
    def _with_refresh(key: str, message: str, refreshed: ActionResult[VisibleState]) -> ActionResult[VisibleState]:
        """Context change result; only successful if the new view loaded."""
        if not refreshed.ok and refreshed.error is not None:
            message = f"{message}, but the query failed: {refreshed.error}"
        return ActionResult(
            key=key,
            ok=refreshed.ok,
            message=message,
            value=refreshed.value,
            error=refreshed.error,
            stale=refreshed.stale,
        )

    async def connect(self, environment: Optional[str] = None) -> ActionResult[VisibleState]:
        """Connect to ``environment`` (local preferred) and load the first snapshot."""
        key = environment or self._environments.default_key()
        if key is None or not self._environments.is_available(key):
            error = EnvironmentUnavailableError(key or "any")
            if key is None:
                self._log("No ledger config found. Run setup-local.sh or deploy-devnet.sh")
            else:
                self._log(error.message)
            return ActionResult.failure("connect", error.message, error)

        config = self._enter_environment(key)
        self._log(f"Connected to {config.label} at {config.ledger_api_url}")
        others = [k for k in self._environments.keys() if k != key]
        for other in others:
            self._log(f"{self._environments.require(other).label} also available — use the environment switcher")

        return self._with_refresh("connect", f"Connected to {config.label}", await self.refresh())

    async def switch_environment(self, environment: str) -> ActionResult[VisibleState]:
        """Swap the whole ledger context; the old snapshot is cleared at once."""
        if not self._environments.is_available(environment):
            error = EnvironmentUnavailableError(environment)
            self._log(error.message)
            return ActionResult.failure("switchEnvironment", error.message, error)

        config = self._enter_environment(environment)
        self._log(f"Switched to {config.label} at {config.ledger_api_url}")
        return self._with_refresh("switchEnvironment", f"Switched to {config.label}", await self.refresh())

    async def switch_identity(self, identity: str) -> ActionResult[VisibleState]:
        """View the ledger as ``identity``."""
        party = self._identities.get(identity)
        if party is None:
            error = UnknownIdentityError(identity)
            return ActionResult.failure("switchIdentity", error.message, error)
        if self._client is not None and not self._client.has_credential(identity):
            error = UnknownIdentityError(identity, "no credential in this environment")
            return ActionResult.failure("switchIdentity", error.message, error)

        self._active_identity = identity
        self._invalidate()
        self._log(f"Viewing ledger as {party.display_name}")
        return self._with_refresh("switchIdentity", f"Now viewing as {party.display_name}", await self.refresh())

    async def refresh(self) -> ActionResult[VisibleState]:
        """Re-query the active identity's view and replace the snapshot.

        A result that arrives after the identity, environment or generation
        changed is discarded.
        """
        if self._client is None:
            error = NotConnectedError()
            return ActionResult.failure("refresh", error.message, error)

        token = self.context_token
        client = self._client
        self._refreshing += 1
        try:
            state = await client.query_visible_state(token.identity)
        except CantonlanceError as exc:
            if token != self.context_token:
                logger.debug("Ignoring failed refresh for superseded context %s", token)
                return ActionResult(key="refresh", ok=False, message="superseded", error=exc, stale=True)
            self._log(f"Query error: {exc}")
            return ActionResult.failure("refresh", f"Query error: {exc}", exc)
        finally:
            self._refreshing -= 1

        if token != self.context_token:
            logger.debug("Discarding stale snapshot for %s", token)
            return ActionResult(key="refresh", ok=False, message="superseded", stale=True)

        self._snapshot = state
        return ActionResult.success("refresh", "refreshed", state)

    # ------------------------------------------------------------------
    # Operation runner
    # ------------------------------------------------------------------

    async def _run(
        self,
        key: str,
        action: Callable[[LedgerClient], Awaitable[_Done[T]]],
        failure_prefix: str,
        *,
        refresh: bool = True,
    ) -> ActionResult[T]:
        if key in self._in_flight:
            error = ActionInProgressError(key)
            return ActionResult.failure(key, error.message, error)
        if self._client is None:
            error = NotConnectedError()
            self._log(error.message)
            return ActionResult.failure(key, error.message, error)

        client = self._client
        self._in_flight.add(key)
        try:
            try:
                done = await action(client)
            except CantonlanceError as exc:
                self._log(f"Error: {exc}")
                logger.warning("%s failed: %s", key, exc.to_dict())
                return ActionResult.failure(key, f"{failure_prefix}: {exc}", exc)

            self._log(done.detail)
            if refresh:
                await self.refresh()
            return ActionResult.success(key, done.notice, done.value)
        finally:
            self._in_flight.discard(key)

    def _acting(self, action: str, *roles: PartyRole) -> Party:
        party = self._identities.require(self._active_identity)
        allowed = {role.value for role in roles}
        if party.role not in allowed:
            raise RoleNotPermittedError(action, party.role, " or ".join(sorted(allowed)))
        return party

    def _visible_contract(self, contract_ref: str) -> Optional[Contract]:
        return self._snapshot.contract(contract_ref)

    # ------------------------------------------------------------------
    # Workflow transitions
    # ------------------------------------------------------------------

    async def propose(
        self,
        freelancer: str,
        description: str,
        hourly_rate: Number,
        total_budget: Number,
        milestones_total: int,
    ) -> ActionResult[SubmissionOutcome]:
        """Client offers a project to a freelancer."""

        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("propose", PartyRole.CLIENT)
            target = self._identities.require(freelancer)
            if target.role != PartyRole.FREELANCER.value:
                raise RoleNotPermittedError("receive proposals", target.role, PartyRole.FREELANCER.value)
            if not description.strip():
                raise ValidationError("description is required", field="description")
            validate_proposal_terms(hourly_rate, total_budget, milestones_total)

            outcome = await client.propose(
                self._active_identity,
                client.party_id(freelancer),
                description.strip(),
                hourly_rate,
                total_budget,
                milestones_total,
                freelancer_label=freelancer,
            )
            return _Done(outcome, f"Proposal sent to {target.short_name}", outcome.api_call.description)

        return await self._run("createProposal", action, "Error creating proposal")

    async def accept_proposal(self, proposal_ref: str) -> ActionResult[SubmissionOutcome]:
        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("accept proposals", PartyRole.FREELANCER)
            outcome = await client.accept_proposal(self._active_identity, proposal_ref)
            return _Done(outcome, "Proposal accepted — contract is active", outcome.api_call.description)

        return await self._run(f"acceptProposal:{proposal_ref}", action, "Error accepting proposal")

    async def reject_proposal(self, proposal_ref: str) -> ActionResult[SubmissionOutcome]:
        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("reject proposals", PartyRole.FREELANCER)
            outcome = await client.reject_proposal(self._active_identity, proposal_ref)
            return _Done(outcome, "Proposal rejected", outcome.api_call.description)

        return await self._run(f"rejectProposal:{proposal_ref}", action, "Error rejecting proposal")

    async def submit_milestone(self, contract_ref: str) -> ActionResult[SubmissionOutcome]:
        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("submit milestones", PartyRole.FREELANCER)
            contract = self._visible_contract(contract_ref)
            if contract is not None:
                if not contract.is_active:
                    raise InvalidTransitionError(f"Contract is {contract.status}", contract_ref)
                if contract.milestone_pending:
                    raise InvalidTransitionError("A milestone is already awaiting approval", contract_ref)
                if contract.milestones_remaining == 0:
                    raise InvalidTransitionError("All milestones are complete", contract_ref)
            outcome = await client.submit_milestone(self._active_identity, contract_ref)
            return _Done(outcome, "Milestone submitted successfully", outcome.api_call.description)

        return await self._run(f"submitMilestone:{contract_ref}", action, "Error submitting milestone")

    def _require_pending(self, contract_ref: str) -> None:
        contract = self._visible_contract(contract_ref)
        if contract is not None and not contract.milestone_pending:
            raise InvalidTransitionError("No milestone is awaiting approval", contract_ref)

    async def approve_milestone(self, contract_ref: str, payment: Number) -> ActionResult[SubmissionOutcome]:
        """Client approves the submitted milestone and pays ``payment``."""

        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("approve milestones", PartyRole.CLIENT)
            amount = to_decimal(payment)
            if amount <= 0:
                raise ValidationError("milestone payment must be positive", field="payment")
            self._require_pending(contract_ref)
            outcome = await client.approve_milestone(self._active_identity, contract_ref, amount)
            return _Done(
                outcome,
                f"Milestone approved — ${encode_numeric(amount)} paid",
                outcome.api_call.description,
            )

        return await self._run(f"approveMilestone:{contract_ref}", action, "Error approving milestone")

    async def reject_milestone(self, contract_ref: str) -> ActionResult[SubmissionOutcome]:
        """Send the submitted milestone back; completed count is unchanged."""

        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("reject milestones", PartyRole.CLIENT)
            self._require_pending(contract_ref)
            outcome = await client.reject_milestone(self._active_identity, contract_ref)
            return _Done(outcome, "Milestone sent back for rework", outcome.api_call.description)

        return await self._run(f"rejectMilestone:{contract_ref}", action, "Error rejecting milestone")

    async def cancel_contract(self, contract_ref: str) -> ActionResult[SubmissionOutcome]:
        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("cancel contracts", PartyRole.CLIENT)
            contract = self._visible_contract(contract_ref)
            if contract is not None and not contract.is_active:
                raise InvalidTransitionError(f"Contract is {contract.status}", contract_ref)
            outcome = await client.cancel_contract(self._active_identity, contract_ref)
            return _Done(outcome, "Contract cancelled", outcome.api_call.description)

        return await self._run(f"cancelContract:{contract_ref}", action, "Error cancelling contract")

    async def generate_audit(self, report_period: Optional[str] = None) -> ActionResult[SubmissionOutcome]:
        """Share totals from the client's current view with the first auditor."""

        async def action(client: LedgerClient) -> _Done[SubmissionOutcome]:
            self._acting("generate audits", PartyRole.CLIENT)
            auditor = self._identities.first_with_role(PartyRole.AUDITOR)
            if auditor is None:
                raise NoAuditorError()
            outcome = await client.create_audit_summary(
                self._active_identity,
                client.party_id(auditor.id),
                len(self._snapshot.contracts),
                self._snapshot.total_paid(),
                report_period or current_quarter(),
            )
            return _Done(outcome, f"Audit summary generated for {auditor.short_name}", outcome.api_call.description)

        return await self._run("generateAudit", action, "Error generating audit")

    async def create_identity(self, display_name: str, role: PartyRole | str) -> ActionResult[Party]:
        """Allocate a new sandbox identity."""

        async def action(client: LedgerClient) -> _Done[Party]:
            party = await self._identities.allocate(display_name, role)
            return _Done(party, f"Account created: {party.display_name}", f"Created {party.role} account {party.id}")

        return await self._run("createAccount", action, "Error creating account", refresh=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close every client this store created."""
        for client in self._clients:
            await client.close()
        self._clients.clear()
        self._client = None

    async def __aenter__(self) -> "WorkflowStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def describe(self) -> Dict[str, object]:
        """Plain summary for collaborators that poll the store."""
        identity = self.active_identity
        return {
            "environment": self.active_environment,
            "identity": identity.id if identity else self._active_identity,
            "connected": self.is_connected,
            "loading": self.is_loading,
            "in_flight": sorted(self._in_flight),
            "counts": self._snapshot.counts(),
        }
