"""Engine configuration with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


HOME_ENV = "BATCHCALL_HOME"
ALLOW_REENTRANCY_ENV = "BATCHCALL_ALLOW_REENTRANCY"
FRAMED_ENCODING_ENV = "BATCHCALL_FRAMED_ENCODING"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def default_home() -> Path:
    return Path.home() / ".batchcall"


@dataclass
class EngineConfig:
    """Configuration for a BatchCallEngine and its local host state."""

    home: Path = field(default_factory=default_home)
    allow_reentrancy: bool = False
    # Length-prefixed payloads; signer and engine must agree on this.
    framed_encoding: bool = False

    @property
    def state_path(self) -> Path:
        return self.home / "state.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def secrets_dir(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets"

    @property
    def audit_key_path(self) -> Path:
        return self.secrets_dir / "audit_hmac.key"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        env = os.environ if environ is None else environ
        home_override = env.get(HOME_ENV)
        return cls(
            home=Path(home_override).expanduser() if home_override else default_home(),
            allow_reentrancy=_parse_flag(env.get(ALLOW_REENTRANCY_ENV), ALLOW_REENTRANCY_ENV),
            framed_encoding=_parse_flag(env.get(FRAMED_ENCODING_ENV), FRAMED_ENCODING_ENV),
        )


def _parse_flag(value: Optional[str], name: str) -> bool:
    if value is None:
        return False
    normalized = value.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {value!r}")
