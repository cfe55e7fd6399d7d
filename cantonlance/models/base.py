"""Base model for cantonlance records."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class CantonlanceModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CantonlanceModel":
        """Create model from dictionary."""
        return cls.model_validate(data)


class LedgerRecord(CantonlanceModel):
    """Immutable record decoded from the ledger's active-contract set."""

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
        frozen=True,
    )

    contract_ref: str
