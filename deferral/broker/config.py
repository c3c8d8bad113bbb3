"""Configuration for broker behavior."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Mapping, Optional

ENV_PREFIX = "DEFERRAL_"
_TRUTHY = ("1", "true", "yes")
# Field types that can be set from the environment
_ENV_TYPES = ("bool", "int", "float", "str", "ExitPolicy")


class ExitPolicy(str, Enum):
    """When a record with several calls is ready to resume.

    ALL_SETTLED waits until every call has succeeded, failed or timed out.
    ANY_TIMEOUT resumes as soon as one call times out; the remaining calls
    are marked timed out.
    """

    ALL_SETTLED = "all_settled"
    ANY_TIMEOUT = "any_timeout"


@dataclass
class BrokerConfig:
    """Limits and policy for a SuspensionBroker."""

    # Registration limits
    max_calls_per_record: int = 3
    max_pending_records: int = 1000

    # Record deadline in seconds
    default_timeout: float = 120.0
    max_timeout: float = 120.0

    # Resume policy
    exit_policy: ExitPolicy = ExitPolicy.ALL_SETTLED
    max_chain_depth: int = 3

    # Finished results kept for late result() callers
    retain_results: int = 256

    def __post_init__(self) -> None:
        if not isinstance(self.exit_policy, ExitPolicy):
            self.exit_policy = ExitPolicy(self.exit_policy)
        if self.max_calls_per_record < 1:
            raise ValueError("max_calls_per_record must be at least 1")
        if self.max_chain_depth < 1:
            raise ValueError("max_chain_depth must be at least 1")
        if self.default_timeout <= 0 or self.max_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.default_timeout > self.max_timeout:
            raise ValueError("default_timeout must not exceed max_timeout")

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> BrokerConfig:
        """Build a config from DEFERRAL_* environment variables.

        Keyword overrides win over the environment, which wins over defaults.
        e.g. DEFERRAL_MAX_CHAIN_DEPTH=5, DEFERRAL_EXIT_POLICY=any_timeout
        """
        return cls(**values_from_env(cls, environ, overrides))


def values_from_env(
    config_cls: type, environ: Optional[Mapping[str, str]], overrides: Mapping[str, Any]
) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for f in fields(config_cls):
        if f.name in overrides:
            values[f.name] = overrides[f.name]
            continue
        raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
        if raw is None or str(f.type) not in _ENV_TYPES:
            continue
        values[f.name] = _coerce(f.type, raw, f.name)
    return values


def _coerce(type_name: Any, raw: str, name: str) -> Any:
    # Annotations are strings under `from __future__ import annotations`
    type_name = str(type_name)
    try:
        if type_name == "bool":
            return raw.strip().lower() in _TRUTHY
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    if type_name == "ExitPolicy":
        return ExitPolicy(raw.strip().lower())
    return raw
