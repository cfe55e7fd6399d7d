"""
Canton JSON Ledger API v2 client.

Talks to a Canton participant node for one environment (local sandbox or
DevNet). The participant only ever returns contracts the requesting party is
a stakeholder of, so no client-side filtering happens here.

Example usage:
    ```python
    from cantonlance import LedgerClient, EnvironmentRegistry

    environments = EnvironmentRegistry.discover()
    async with LedgerClient(environments.require("local")) as client:
        state = await client.query_visible_state("client")
        print(len(state.contracts))
    ```
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from .call_log import ApiCall, CallLog
from .commands import (
    Choice,
    CommandIds,
    Endpoint,
    Number,
    Template,
    build_envelope,
    create_command,
    encode_numeric,
    exercise_command,
    extract_created_ref,
    extract_update_id,
    template_id,
    to_decimal,
)
from .config import CantonlanceSettings, load_settings
from .decoding import decode_active_contracts
from .environments import LedgerConfig
from .exceptions import (
    CantonlanceError,
    DecodeError,
    LedgerTimeoutError,
    LedgerTransportError,
    UnknownIdentityError,
    ValidationError,
)
from .logging import log_request, log_response
from .models import PartyCredential, VisibleState

logger = logging.getLogger(__name__)

ADMIN = "admin"
MAX_MILESTONES = 20


@dataclass
class RetryConfig:
    """Retry policy for timeouts, unreachable nodes and gateway errors."""

    max_retries: int = 2
    initial_delay: float = 0.5
    backoff_multiplier: float = 2.0
    retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({502, 503, 504})
    )


@dataclass(slots=True)
class SubmissionOutcome:
    """Result of one command submission."""

    api_call: ApiCall
    contract_ref: Optional[str] = None
    update_id: Optional[str] = None


def validate_proposal_terms(
    hourly_rate: Number,
    total_budget: Number,
    milestones_total: int,
) -> tuple[Decimal, Decimal, int]:
    rate = to_decimal(hourly_rate)
    budget = to_decimal(total_budget)
    if rate <= 0:
        raise ValidationError("hourly rate must be positive", field="hourly_rate")
    if budget <= 0:
        raise ValidationError("total budget must be positive", field="total_budget")
    if isinstance(milestones_total, bool) or not isinstance(milestones_total, int):
        raise ValidationError("milestones must be a whole number", field="milestones_total")
    if not 1 <= milestones_total <= MAX_MILESTONES:
        raise ValidationError(
            f"milestones must be between 1 and {MAX_MILESTONES}", field="milestones_total"
        )
    return rate, budget, milestones_total


class LedgerClient:
    """
    Ledger API client for a single environment.

    Provides:
    - query_visible_state: the active contracts one identity can see
    - one submission method per workflow intent
    - party/user allocation for sandbox identities
    - a rolling log of every call (``api_calls``)

    Args:
        config: Environment configuration (endpoint, credentials, package)
        call_log: Shared call log; a private one is created when omitted
        retry: Retry policy for transient transport failures
        timeout: Per-request timeout in seconds
        application_id: Application id sent with every command
        transport: Optional httpx transport (used by tests and proxies)
    """

    def __init__(
        self,
        config: LedgerConfig,
        *,
        call_log: Optional[CallLog] = None,
        retry: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
        application_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[CantonlanceSettings] = None,
    ) -> None:
        settings = settings or load_settings()
        self._config = config
        self._base_url = config.ledger_api_url.rstrip("/")
        self._call_log = call_log if call_log is not None else CallLog(settings.call_log_size)
        self._retry = retry or RetryConfig(max_retries=settings.max_retries)
        self._timeout = timeout or settings.request_timeout
        self._application_id = application_id or settings.application_id
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._package_id: Optional[str] = config.package_id
        self._credentials: Dict[str, PartyCredential] = dict(config.parties)

    # ------------------------------------------------------------------
    # Properties and credentials
    # ------------------------------------------------------------------

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def call_log(self) -> CallLog:
        return self._call_log

    @property
    def package_id(self) -> Optional[str]:
        return self._package_id

    def api_calls(self) -> List[ApiCall]:
        """Logged calls, most recent first."""
        return self._call_log.entries()

    def register_credential(self, identity: str, credential: PartyCredential) -> None:
        """Make ``identity`` usable for queries and submissions."""
        self._credentials[identity] = credential
        logger.debug("Registered credential for %s as %s", identity, credential.party_id)

    def has_credential(self, identity: str) -> bool:
        return identity in self._credentials

    def credential(self, identity: str) -> PartyCredential:
        try:
            return self._credentials[identity]
        except KeyError:
            raise UnknownIdentityError(identity, "no credential in this environment") from None

    def credentials(self) -> Dict[str, PartyCredential]:
        return dict(self._credentials)

    def party_id(self, identity: str) -> str:
        return self.credential(identity).party_id

    def template(self, name: str) -> str:
        return template_id(name, self._package_id, self._config.dar_package_id)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "cantonlance-python/0.1.0",
                },
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    def _auth_headers(self, identity: Optional[str]) -> Dict[str, str]:
        # Sandbox runs without auth; colons in sandbox tokens upset its HTTP layer
        if self._config.is_sandbox or identity is None:
            return {}
        token = self.credential(identity).token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
        identity: Optional[str] = None,
    ) -> Any:
        """Make an HTTP request with retry on transient failures."""
        client = await self._get_client()
        headers = self._auth_headers(identity)
        log_request(logger, method, f"{self._base_url}{endpoint}", headers, body, party=identity)

        delay = self._retry.initial_delay
        attempts = self._retry.max_retries + 1

        for attempt in range(attempts):
            started = time.monotonic()
            try:
                response = await client.request(method, endpoint, json=body, headers=headers)
            except httpx.TimeoutException as exc:
                if attempt < attempts - 1:
                    await asyncio.sleep(delay)
                    delay *= self._retry.backoff_multiplier
                    continue
                log_response(logger, 0, error=str(exc))
                raise LedgerTimeoutError(
                    f"{method} {endpoint} timed out after {attempts} attempt(s)"
                ) from exc
            except httpx.TransportError as exc:
                if attempt < attempts - 1:
                    await asyncio.sleep(delay)
                    delay *= self._retry.backoff_multiplier
                    continue
                log_response(logger, 0, error=str(exc))
                raise LedgerTimeoutError(
                    f"{method} {endpoint} failed after {attempts} attempt(s): {exc}"
                ) from exc

            if response.status_code in self._retry.retryable_status_codes and attempt < attempts - 1:
                await asyncio.sleep(delay)
                delay *= self._retry.backoff_multiplier
                continue

            duration_ms = (time.monotonic() - started) * 1000
            if not response.is_success:
                log_response(logger, response.status_code, response.text, duration_ms)
                raise LedgerTransportError.from_response(response.status_code, response.text)

            if not response.content:
                log_response(logger, response.status_code, None, duration_ms)
                return {}
            try:
                data = response.json()
            except ValueError as exc:
                raise DecodeError(f"{endpoint} returned invalid JSON") from exc
            log_response(logger, response.status_code, data, duration_ms)
            return data

        raise LedgerTransportError(f"{method} {endpoint}: retries exhausted")

    def _record(
        self,
        party: str,
        method: str,
        endpoint: str,
        request_body: Optional[Any],
        response_body: Any,
        response_count: int,
        description: str,
        ok: bool = True,
    ) -> ApiCall:
        return self._call_log.record(
            ApiCall(
                party=party,
                method=method,
                endpoint=endpoint,
                request_body=request_body,
                response_body=response_body,
                response_count=response_count,
                description=description,
                ok=ok,
            )
        )

    def _record_failure(
        self,
        party: str,
        method: str,
        endpoint: str,
        request_body: Optional[Any],
        exc: Exception,
        description: str,
    ) -> None:
        response_body: Dict[str, Any] = {
            "error": str(exc),
            "source": "Canton JSON Ledger API v2",
        }
        if isinstance(exc, LedgerTransportError) and exc.status_code is not None:
            response_body["status"] = exc.status_code
            response_body["body"] = exc.body
        self._record(
            party, method, endpoint, request_body, response_body, 0,
            f"{description} failed: {str(exc)[:80]}", ok=False,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def ledger_end(self, identity: str) -> int:
        """Current ledger end offset, the snapshot marker for queries."""
        result = await self._request("GET", Endpoint.LEDGER_END, None, identity)
        try:
            return int(result["offset"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"unexpected ledger-end response: {result!r}") from exc

    @staticmethod
    def active_contracts_request(party_id: str, offset: int) -> Dict[str, Any]:
        """Wildcard filter: everything this party is entitled to see."""
        return {
            "filter": {
                "filtersByParty": {
                    party_id: {
                        "cumulative": [
                            {
                                "identifierFilter": {
                                    "WildcardFilter": {
                                        "value": {"includeCreatedEventBlob": False},
                                    },
                                },
                            },
                        ],
                    },
                },
            },
            "verbose": True,
            "activeAtOffset": offset,
        }

    async def query_visible_state(self, identity: str) -> VisibleState:
        """Query the active contracts visible to ``identity``.

        Each identity sees only contracts it is a signatory or observer of;
        the ledger enforces this.
        """
        party_id = self.party_id(identity)
        label = self._config.short_label
        request_body: Optional[Dict[str, Any]] = None

        try:
            offset = await self.ledger_end(identity)
            request_body = self.active_contracts_request(party_id, offset)
            response = await self._request("POST", Endpoint.ACTIVE_CONTRACTS, request_body, identity)
        except CantonlanceError as exc:
            self._record_failure(
                identity, "POST", Endpoint.ACTIVE_CONTRACTS, request_body, exc,
                f"[{label}] Query as {identity}",
            )
            raise

        entries = response if isinstance(response, list) else []
        decoded = decode_active_contracts(entries, offset)

        if decoded.package_id and not self._package_id:
            self._package_id = decoded.package_id
            logger.info("Resolved package ID: %s", self._package_id)

        state = decoded.state
        self._record(
            identity,
            "POST",
            Endpoint.ACTIVE_CONTRACTS,
            request_body,
            {
                "totalContracts": len(entries),
                "projectContracts": len(state.contracts),
                "projectProposals": len(state.proposals),
                "paymentRecords": len(state.payments),
                "auditSummaries": len(state.audit_summaries),
                "skipped": len(decoded.skipped),
                "source": f"Canton JSON Ledger API v2 ({label})",
                "note": f"Authenticated as {party_id} — response contains ONLY contracts visible to this party",
            },
            len(entries),
            f"[{label}] Query contracts visible to {identity} ({len(entries)} results)",
        )
        return state

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def _submit(
        self,
        identity: str,
        commands: List[Dict[str, Any]],
        ids: CommandIds,
        description: str,
        *,
        for_transaction: bool,
        note: Optional[Dict[str, Any]] = None,
    ) -> SubmissionOutcome:
        credential = self.credential(identity)
        envelope = build_envelope(credential, commands, ids, self._application_id)
        if for_transaction:
            endpoint = Endpoint.SUBMIT_FOR_TRANSACTION
            body: Dict[str, Any] = {"commands": envelope}
        else:
            endpoint = Endpoint.SUBMIT_AND_WAIT
            body = envelope

        try:
            response = await self._request("POST", endpoint, body, identity)
        except CantonlanceError as exc:
            self._record_failure(identity, "POST", endpoint, body, exc, description)
            raise

        response = response if isinstance(response, dict) else {}
        update_id = extract_update_id(response)
        contract_ref = extract_created_ref(response) if for_transaction else None
        if for_transaction and contract_ref is None and update_id:
            contract_ref = f"pending-{update_id}"

        api_call = self._record(
            identity, "POST", endpoint, body, {**response, **(note or {})}, 1, description,
        )
        return SubmissionOutcome(api_call=api_call, contract_ref=contract_ref, update_id=update_id)

    async def propose(
        self,
        identity: str,
        freelancer_party: str,
        description: str,
        hourly_rate: Number,
        total_budget: Number,
        milestones_total: int,
        freelancer_label: Optional[str] = None,
    ) -> SubmissionOutcome:
        """Client creates a ProjectProposal addressed to a freelancer."""
        rate, budget, milestones = validate_proposal_terms(hourly_rate, total_budget, milestones_total)
        commands = [
            create_command(
                self.template(Template.PROPOSAL),
                {
                    "client": self.party_id(identity),
                    "freelancer": freelancer_party,
                    "description": description,
                    "hourlyRate": encode_numeric(rate),
                    "totalBudget": encode_numeric(budget),
                    "milestonesTotal": milestones,
                },
            )
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("proposal", "create-proposal"),
            f"{identity} created proposal for {freelancer_label or freelancer_party}",
            for_transaction=True,
        )

    async def accept_proposal(self, identity: str, proposal_ref: str) -> SubmissionOutcome:
        """Freelancer accepts; the ledger replaces the proposal with a ProjectContract."""
        commands = [
            exercise_command(self.template(Template.PROPOSAL), proposal_ref, Choice.ACCEPT_PROPOSAL)
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("accept", "accept-proposal"),
            f"{identity} accepted proposal → ProjectContract created",
            for_transaction=True,
            note={"note": "Only the client and this freelancer can see the resulting contract."},
        )

    async def reject_proposal(self, identity: str, proposal_ref: str) -> SubmissionOutcome:
        commands = [
            exercise_command(self.template(Template.PROPOSAL), proposal_ref, Choice.REJECT_PROPOSAL)
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("reject", "reject-proposal"),
            f"{identity} rejected proposal {proposal_ref[:16]}...",
            for_transaction=False,
        )

    async def submit_milestone(self, identity: str, contract_ref: str) -> SubmissionOutcome:
        commands = [
            exercise_command(self.template(Template.CONTRACT), contract_ref, Choice.SUBMIT_MILESTONE)
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("milestone", "submit-milestone"),
            f"{identity} submitted milestone on {contract_ref[:16]}...",
            for_transaction=True,
        )

    async def approve_milestone(
        self,
        identity: str,
        contract_ref: str,
        payment: Number,
    ) -> SubmissionOutcome:
        """Client approves the pending milestone and releases ``payment``."""
        amount = to_decimal(payment)
        if amount <= 0:
            raise ValidationError("milestone payment must be positive", field="payment")
        encoded = encode_numeric(amount)
        commands = [
            exercise_command(
                self.template(Template.CONTRACT),
                contract_ref,
                Choice.APPROVE_MILESTONE,
                {"milestonePayment": encoded},
            )
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("approve", "approve-milestone"),
            f"{identity} approved milestone — ${encoded} payment",
            for_transaction=True,
        )

    async def reject_milestone(self, identity: str, contract_ref: str) -> SubmissionOutcome:
        """Client sends the pending milestone back for rework."""
        commands = [
            exercise_command(self.template(Template.CONTRACT), contract_ref, Choice.REJECT_MILESTONE)
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("reject-milestone", "reject-milestone"),
            f"{identity} rejected milestone on {contract_ref[:16]}...",
            for_transaction=True,
        )

    async def cancel_contract(self, identity: str, contract_ref: str) -> SubmissionOutcome:
        commands = [
            exercise_command(self.template(Template.CONTRACT), contract_ref, Choice.CANCEL_CONTRACT)
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("cancel", "cancel-contract"),
            f"{identity} cancelled contract {contract_ref[:16]}...",
            for_transaction=False,
        )

    async def create_audit_summary(
        self,
        identity: str,
        auditor_party: str,
        total_contracts_count: int,
        total_amount_paid: Number,
        report_period: str,
    ) -> SubmissionOutcome:
        """Client shares aggregate totals with an auditor."""
        client_party = self.party_id(identity)
        commands = [
            create_command(
                self.template(Template.AUDIT_SUMMARY),
                {
                    "client": client_party,
                    "auditor": auditor_party,
                    "totalContractsCount": total_contracts_count,
                    "totalAmountPaid": encode_numeric(total_amount_paid),
                    "reportPeriod": report_period,
                },
            )
        ]
        return await self._submit(
            identity,
            commands,
            CommandIds.new("audit", "audit-summary"),
            "Audit summary created — visible to client + auditor only",
            for_transaction=False,
            note={
                "distributedTo": [client_party, auditor_party],
                "note": "Auditor can see aggregate totals only. No individual contracts or payments.",
            },
        )

    # ------------------------------------------------------------------
    # Identity allocation (sandbox)
    # ------------------------------------------------------------------

    async def allocate_party(self, hint: str) -> str:
        """Allocate a new party; returns its ledger-native id."""
        body = {"partyIdHint": hint, "identityProviderId": ""}
        description = f"Allocate party {hint}"
        try:
            response = await self._request("POST", Endpoint.PARTIES, body, None)
            details = response.get("partyDetails") if isinstance(response, dict) else None
            if not isinstance(details, dict) or not details.get("party"):
                raise DecodeError(f"party allocation returned no party id: {response!r}")
        except CantonlanceError as exc:
            self._record_failure(ADMIN, "POST", Endpoint.PARTIES, body, exc, description)
            raise

        party_id = str(details["party"])
        self._record(ADMIN, "POST", Endpoint.PARTIES, body, response, 1, f"Allocated party {party_id}")
        return party_id

    async def create_user(self, user_id: str, party_id: str) -> Dict[str, Any]:
        """Create a ledger user that can act and read as ``party_id``."""
        body = {
            "user": {
                "id": user_id,
                "primaryParty": party_id,
                "isDeactivated": False,
                "identityProviderId": "",
            },
            "rights": [
                {"kind": {"CanActAs": {"value": {"party": party_id}}}},
                {"kind": {"CanReadAs": {"value": {"party": party_id}}}},
            ],
        }
        description = f"Create user {user_id}"
        try:
            response = await self._request("POST", Endpoint.USERS, body, None)
        except CantonlanceError as exc:
            self._record_failure(ADMIN, "POST", Endpoint.USERS, body, exc, description)
            raise

        self._record(
            ADMIN, "POST", Endpoint.USERS, body, response, 1,
            f"Created user {user_id} with act/read rights for {party_id}",
        )
        return response if isinstance(response, dict) else {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
