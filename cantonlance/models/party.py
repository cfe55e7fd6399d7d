"""Party (identity) models."""
from __future__ import annotations

from enum import Enum

from pydantic import ConfigDict, Field

from .base import CantonlanceModel


class PartyRole(str, Enum):
    """Role category; drives workflow eligibility."""

    CLIENT = "Client"
    FREELANCER = "Freelancer"
    AUDITOR = "Auditor"


ROLE_COLORS: dict[str, str] = {
    PartyRole.CLIENT.value: "#0d6efd",
    PartyRole.FREELANCER.value: "#198754",
    PartyRole.AUDITOR.value: "#dc3545",
}


class Party(CantonlanceModel):
    """A principal able to act on the ledger.

    ``raw_ledger_name`` is the hint part of the ledger-native identifier
    (``<raw_ledger_name>::<fingerprint>``).
    """

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
        frozen=True,
    )

    id: str
    raw_ledger_name: str
    display_name: str
    short_name: str
    avatar: str
    role: PartyRole
    color: str
    is_preset: bool = False


class PartyCredential(CantonlanceModel):
    """How one identity authenticates against one environment."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    party_id: str = Field(alias="partyId")
    user_id: str = Field(alias="userId")
    token: str = ""


PRESET_PARTIES: tuple[Party, ...] = (
    Party(
        id="client",
        raw_ledger_name="Client_EthFoundation",
        display_name="Ethereum Foundation (Client)",
        short_name="Ethereum Foundation",
        avatar="EF",
        role=PartyRole.CLIENT,
        color="#0d6efd",
        is_preset=True,
    ),
    Party(
        id="freelancerA",
        raw_ledger_name="FreelancerA_Nidhi",
        display_name="Nidhi (Freelancer)",
        short_name="Nidhi",
        avatar="N",
        role=PartyRole.FREELANCER,
        color="#198754",
        is_preset=True,
    ),
    Party(
        id="freelancerB",
        raw_ledger_name="FreelancerB_Akash",
        display_name="Akash (Freelancer)",
        short_name="Akash",
        avatar="A",
        role=PartyRole.FREELANCER,
        color="#6f42c1",
        is_preset=True,
    ),
    Party(
        id="auditor",
        raw_ledger_name="Auditor_Eve",
        display_name="Eve (Auditor)",
        short_name="Eve",
        avatar="E",
        role=PartyRole.AUDITOR,
        color="#dc3545",
        is_preset=True,
    ),
)
