"""
Validated tunables for the server and both load harnesses.

Values usually arrive through the typer CLI (which also binds the environment
variables listed in :mod:`localization_ab.cli`); the models below only hold and
validate them.
"""

from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, Field, PositiveFloat, PositiveInt

ModeName = Literal["normal", "saturation"]

KIB = 1024
MIB = 1024 * KIB


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(3000, ge=0, le=65535)
    payload_dir: str = "payloads"

    # Slow-client protection: each bound is independent.
    read_timeout: PositiveFloat = Field(5.0, description="Seconds to receive a full request body")
    write_timeout: PositiveFloat = Field(10.0, description="Seconds to transmit a full response")
    idle_timeout: PositiveFloat = Field(30.0, description="Keep-alive idle seconds before reclaim")
    max_connections: PositiveInt = Field(10_000, description="Concurrent connection ceiling")
    max_body_size: PositiveInt = Field(1 * MIB, description="Largest accepted request body")

    log_level: str = "info"


class LoadTestConfig(BaseModel):
    server_url: str = "http://localhost:3000"
    fast_clients: int = Field(10, ge=0)
    slow_clients: int = Field(5, ge=0)
    requests_per_client: PositiveInt = 100
    slow_download_speed: PositiveInt = Field(1 * KIB, description="Simulated bytes/sec for slow clients")
    duration: PositiveFloat = 30.0
    hog_test: bool = False

    warmup: float = Field(2.0, ge=0, description="Head start given to slow clients in hog mode")
    fast_pause: float = Field(0.05, ge=0)
    slow_pause: float = Field(0.1, ge=0)
    fast_timeout: PositiveFloat = 10.0
    slow_timeout: PositiveFloat = 60.0

    @classmethod
    def for_mode(cls, mode: ModeName, **overrides: Any) -> "LoadTestConfig":
        """Apply the *mode* preset, then any explicit (non-``None``) *overrides*."""
        values: Dict[str, Any] = dict(MODE_PRESETS[mode])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


MODE_PRESETS: Dict[str, Dict[str, Any]] = {
    # every client reads at full speed
    "normal": {"slow_clients": 0},
    # many ~2s downloads of a 1 MiB payload occupy connections before fast clients start
    "saturation": {
        "hog_test": True,
        "slow_clients": 50,
        "fast_clients": 10,
        "slow_download_speed": 500 * KIB,
    },
}


class AllocationTestConfig(BaseModel):
    server_url: str = "http://localhost:3000"
    users: PositiveInt = 100
    requests_per_user: PositiveInt = 5
    concurrency: PositiveInt = 10
    output: str = "allocation_test_results.md"
    timeout: PositiveFloat = 10.0
