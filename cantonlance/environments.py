"""Ledger environments (local sandbox, Canton DevNet) and their configuration.

Configuration files are written by the deployment scripts and probed from
well-known names. A missing or unreadable file only means the environment is
unavailable; it is never an error.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from pydantic import Field
from pydantic import ValidationError as PydanticValidationError

from .config import CantonlanceSettings, load_settings
from .exceptions import EnvironmentUnavailableError
from .models import CantonlanceModel, PartyCredential

logger = logging.getLogger(__name__)


class EnvironmentMode(str, Enum):
    LOCAL = "local"
    DEVNET = "devnet"


LOCAL = "local"
DEVNET = "devnet"

# key -> (file name, modes accepted from that file); probed in this order
ENVIRONMENT_FILES: Dict[str, tuple[str, frozenset[str]]] = {
    LOCAL: ("local-config.json", frozenset({EnvironmentMode.LOCAL.value, EnvironmentMode.DEVNET.value})),
    DEVNET: ("devnet-config.json", frozenset({EnvironmentMode.DEVNET.value})),
}


class LedgerConfig(CantonlanceModel):
    """Connection parameters for one ledger environment."""

    mode: EnvironmentMode
    ledger_api_url: str = Field(alias="ledgerApiUrl")
    parties: Dict[str, PartyCredential] = Field(default_factory=dict)
    dar_package_id: str = Field(default="", alias="darPackageId")
    deployed_at: str = Field(default="", alias="deployedAt")
    package_id: Optional[str] = Field(default=None, alias="packageId")

    @property
    def is_sandbox(self) -> bool:
        return self.mode == EnvironmentMode.LOCAL

    @property
    def label(self) -> str:
        return "Local Sandbox" if self.is_sandbox else "Canton DevNet"

    @property
    def short_label(self) -> str:
        return "SANDBOX" if self.is_sandbox else "DEVNET"


def load_config_file(path: Path, accepted_modes: Iterable[str]) -> Optional[LedgerConfig]:
    """Read one environment file; None when absent, unreadable or unsuitable."""
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        config = LedgerConfig.model_validate(raw)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read ledger config %s: %s", path, exc)
        return None
    except PydanticValidationError as exc:
        logger.warning("Ignoring invalid ledger config %s: %s", path, exc.error_count())
        return None

    if config.mode not in set(accepted_modes):
        logger.info("Ignoring %s: mode %s not accepted here", path, config.mode)
        return None
    return config


class EnvironmentRegistry:
    """Holds the reachable environments and which one is active.

    Performs no ledger calls.
    """

    def __init__(self, configs: Optional[Mapping[str, LedgerConfig]] = None) -> None:
        self._configs: Dict[str, LedgerConfig] = dict(configs or {})
        self._active: Optional[str] = None

    @classmethod
    def discover(
        cls,
        config_dir: Optional[Path] = None,
        settings: Optional[CantonlanceSettings] = None,
    ) -> "EnvironmentRegistry":
        """Probe the well-known config files in ``config_dir``."""
        settings = settings or load_settings()
        directory = Path(config_dir) if config_dir else settings.config_dir
        configs: Dict[str, LedgerConfig] = {}
        for key, (file_name, modes) in ENVIRONMENT_FILES.items():
            config = load_config_file(directory / file_name, modes)
            if config is not None:
                configs[key] = config
                logger.info("Found %s config at %s", key, directory / file_name)
        if not configs:
            logger.warning("No ledger config found in %s", directory)
        return cls(configs)

    def register(self, key: str, config: LedgerConfig) -> None:
        self._configs[key] = config

    def available_environments(self) -> Dict[str, LedgerConfig]:
        return dict(self._configs)

    def keys(self) -> list[str]:
        return list(self._configs)

    def get(self, key: str) -> Optional[LedgerConfig]:
        return self._configs.get(key)

    def require(self, key: str) -> LedgerConfig:
        config = self._configs.get(key)
        if config is None:
            raise EnvironmentUnavailableError(key)
        return config

    def is_available(self, key: str) -> bool:
        return key in self._configs

    def is_sandbox(self, key: Optional[str]) -> bool:
        config = self._configs.get(key) if key else None
        return bool(config and config.is_sandbox)

    def default_key(self) -> Optional[str]:
        """Local is preferred when both environments are present."""
        for key in (LOCAL, DEVNET):
            if key in self._configs:
                return key
        return next(iter(self._configs), None)

    @property
    def active_key(self) -> Optional[str]:
        return self._active

    @property
    def active(self) -> Optional[LedgerConfig]:
        return self._configs.get(self._active) if self._active else None

    def activate(self, key: str) -> LedgerConfig:
        config = self.require(key)
        self._active = key
        return config
