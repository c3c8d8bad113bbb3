"""Configuration for outbound call execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..broker.config import values_from_env


@dataclass
class ExecutorConfig:
    """Settings for HttpCallExecutor.

    Per-call deadlines come from CallDescriptor.timeout and fall back to
    default_call_timeout. Retries are never performed here.
    """

    default_call_timeout: float = 30.0
    connect_timeout: float = 10.0
    max_in_flight: int = 16
    max_response_bytes: int = 1_000_000
    follow_redirects: bool = False
    base_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        if self.default_call_timeout <= 0:
            raise ValueError("default_call_timeout must be positive")

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> ExecutorConfig:
        """Build a config from DEFERRAL_* environment variables.

        e.g. DEFERRAL_MAX_IN_FLIGHT=32, DEFERRAL_FOLLOW_REDIRECTS=yes
        """
        return cls(**values_from_env(cls, environ, overrides))
