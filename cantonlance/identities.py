"""Identity registry: preset demo parties plus sandbox-allocated ones.

Dynamic identities are stored per environment, because a party allocated on
the local sandbox means nothing on DevNet.
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from .client import LedgerClient
from .commands import party_hint
from .environments import EnvironmentRegistry
from .exceptions import (
    CantonlanceError,
    NotConnectedError,
    PartialAllocationError,
    SandboxOnlyError,
    UnknownIdentityError,
    ValidationError,
)
from .models import PRESET_PARTIES, ROLE_COLORS, CantonlanceModel, Party, PartyCredential, PartyRole

logger = logging.getLogger(__name__)


class DynamicIdentity(CantonlanceModel):
    """A runtime-allocated party together with its credential."""

    party: Party
    credential: PartyCredential


class IdentityStore(Protocol):
    """Persistence for dynamic identities, one list per environment."""

    def load(self, environment: str) -> List[DynamicIdentity]: ...

    def save(self, environment: str, identities: Sequence[DynamicIdentity]) -> None: ...


class InMemoryIdentityStore:
    def __init__(self) -> None:
        self._data: Dict[str, List[DynamicIdentity]] = {}

    def load(self, environment: str) -> List[DynamicIdentity]:
        return list(self._data.get(environment, []))

    def save(self, environment: str, identities: Sequence[DynamicIdentity]) -> None:
        self._data[environment] = list(identities)


class FileIdentityStore:
    """JSON file per environment, written whole on every change."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    def path_for(self, environment: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_-]", "_", environment)
        return self._directory / f"identities-{safe}.json"

    def load(self, environment: str) -> List[DynamicIdentity]:
        path = self.path_for(environment)
        if not path.exists():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read identities from %s: %s", path, exc)
            return []

        identities: List[DynamicIdentity] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                identities.append(DynamicIdentity.model_validate(item))
            except PydanticValidationError:
                logger.warning("Skipping malformed identity entry in %s", path)
        return identities

    def save(self, environment: str, identities: Sequence[DynamicIdentity]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(environment)
        payload = [identity.model_dump(mode="json", by_alias=True) for identity in identities]

        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".identities-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def initials(display_name: str) -> str:
    words = re.findall(r"[A-Za-z0-9]+", display_name)
    return "".join(word[0] for word in words[:2]).upper() or "?"


class IdentityRegistry:
    """Authoritative map from identity id to Party for the active environment."""

    def __init__(
        self,
        environments: EnvironmentRegistry,
        store: Optional[IdentityStore] = None,
        presets: Iterable[Party] = PRESET_PARTIES,
    ) -> None:
        self._environments = environments
        self._store: IdentityStore = store if store is not None else InMemoryIdentityStore()
        self._presets: Dict[str, Party] = {p.id: p for p in presets}
        self._dynamic: Dict[str, DynamicIdentity] = {}
        self._environment: Optional[str] = None
        self._client: Optional[LedgerClient] = None

    @property
    def environment(self) -> Optional[str]:
        return self._environment

    @property
    def client(self) -> Optional[LedgerClient]:
        return self._client

    def activate(self, environment: str, client: LedgerClient) -> None:
        """Load this environment's dynamic identities into ``client``."""
        dynamic: Dict[str, DynamicIdentity] = {}
        for entry in self._store.load(environment):
            identity = entry.party.id
            if identity in self._presets or identity in dynamic:
                logger.warning("Ignoring duplicate identity %s in %s store", identity, environment)
                continue
            dynamic[identity] = entry
            client.register_credential(identity, entry.credential)

        self._environment = environment
        self._client = client
        self._dynamic = dynamic
        logger.info("Loaded %d dynamic identities for %s", len(dynamic), environment)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def all(self) -> List[Party]:
        return [*self._presets.values(), *(d.party for d in self._dynamic.values())]

    def dynamic(self) -> List[Party]:
        return [d.party for d in self._dynamic.values()]

    def get(self, identity: str) -> Optional[Party]:
        if identity in self._presets:
            return self._presets[identity]
        entry = self._dynamic.get(identity)
        return entry.party if entry else None

    def require(self, identity: str) -> Party:
        party = self.get(identity)
        if party is None:
            raise UnknownIdentityError(identity)
        return party

    def with_role(self, role: PartyRole | str) -> List[Party]:
        role_value = PartyRole(role).value
        return [p for p in self.all() if p.role == role_value]

    def has_credential(self, identity: str) -> bool:
        return self._client is not None and self._client.has_credential(identity)

    def first_with_role(
        self,
        role: PartyRole | str,
        *,
        require_credential: bool = True,
    ) -> Optional[Party]:
        for party in self.with_role(role):
            if not require_credential or self.has_credential(party.id):
                return party
        return None

    def resolve_ledger_party(self, ledger_party_id: str) -> Optional[Party]:
        """Map a ledger-native party id back to a Party.

        A registered credential for the exact id wins; otherwise the hint in
        front of ``::`` must equal a party's ``raw_ledger_name`` exactly, so
        ``Foo::x`` never resolves to ``FooBar``.
        """
        if self._client is not None:
            for identity, credential in self._client.credentials().items():
                if credential.party_id == ledger_party_id:
                    party = self.get(identity)
                    if party is not None:
                        return party

        prefix = ledger_party_id.split("::", 1)[0]
        for party in self.all():
            if party.raw_ledger_name == prefix:
                return party
        return None

    def display_name_for(self, ledger_party_id: str) -> str:
        party = self.resolve_ledger_party(ledger_party_id)
        return party.display_name if party else ledger_party_id.split("::", 1)[0]

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def allocate(self, display_name: str, role: PartyRole | str) -> Party:
        """Allocate a party and user on the sandbox ledger and register it.

        Party allocation and user creation are separate ledger operations. If
        user creation fails the allocated party remains on the ledger with no
        local identity, and PartialAllocationError is raised.
        """
        name = display_name.strip()
        if not name:
            raise ValidationError("display name is required", field="display_name")
        try:
            role_value = PartyRole(role).value
        except ValueError:
            raise ValidationError(f"unknown role {role!r}", field="role") from None

        if self._client is None or self._environment is None:
            raise NotConnectedError()
        if not self._environments.is_sandbox(self._environment):
            raise SandboxOnlyError(self._environment)

        client = self._client
        suffix = uuid4().hex[:6]
        hint = party_hint(name, role_value, suffix)
        identity = hint.lower().replace("_", "-")

        party_id = await client.allocate_party(hint)
        try:
            await client.create_user(identity, party_id)
        except CantonlanceError as exc:
            logger.error("Party %s is orphaned: user creation failed: %s", party_id, exc)
            raise PartialAllocationError(party_id, exc) from exc

        credential = PartyCredential(party_id=party_id, user_id=identity, token="")
        client.register_credential(identity, credential)

        words = re.findall(r"[A-Za-z0-9]+", name)
        party = Party(
            id=identity,
            raw_ledger_name=hint,
            display_name=name,
            short_name=words[0] if words else name,
            avatar=initials(name),
            role=role_value,
            color=ROLE_COLORS[role_value],
            is_preset=False,
        )
        self._dynamic[identity] = DynamicIdentity(party=party, credential=credential)
        self._persist()
        logger.info("Allocated %s identity %s as %s", role_value, identity, party_id)
        return party

    def _persist(self) -> None:
        if self._environment is None:
            return
        try:
            self._store.save(self._environment, list(self._dynamic.values()))
        except OSError:
            # The identity is live on the ledger and in memory; only the cache is behind
            logger.exception("Could not persist identities for %s", self._environment)
