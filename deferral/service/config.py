"""Configuration for the framed deferral service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..broker.config import values_from_env
from ..protocol.transport import DEFAULT_MAX_FRAME_SIZE


@dataclass
class ServiceConfig:
    host: str = "127.0.0.1"
    # 0 binds an ephemeral port; DeferralServer.port reports the real one
    port: int = 0
    use_msgpack: bool = True
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    # Upper bound for await_result requests that carry no timeout
    default_result_timeout: float = 300.0

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any
    ) -> ServiceConfig:
        """Build a config from DEFERRAL_* environment variables.

        e.g. DEFERRAL_HOST=0.0.0.0, DEFERRAL_PORT=7411, DEFERRAL_USE_MSGPACK=no
        """
        return cls(**values_from_env(cls, environ, overrides))
