"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - RPC endpoint + credential injection (never hardcoded in the engine)
  - Backfill, live stream, watch target and observability sections
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from builderwatch.engine.models import TargetKind, WatchTarget


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

BPF_UPGRADEABLE_LOADER = "BPFLoaderUpgradeab1e11111111111111111111111"
SQUADS_V4_PROGRAM = "SMPLecH2AezpSws9asubG7v6gde66S5S6p7J93rAnp7"


class RpcConfig(BaseModel):
    http_url: str = "https://api.mainnet-beta.solana.com"
    ws_url: str = "wss://api.mainnet-beta.solana.com"
    api_key: str = ""
    api_key_mode: Literal["query", "header"] = "query"
    commitment: str = "confirmed"
    stream_commitment: str = "finalized"
    timeout_secs: float = 15.0
    requests_per_second: float = 8.0
    max_burst: int = 10


class BackfillConfig(BaseModel):
    signature_limit: int = 1000
    batch_size: int = 20
    batch_delay_ms: int = 250
    lookback_days: int = 14  # 0 disables the window filter

    @field_validator("batch_size", "signature_limit")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class StreamConfig(BaseModel):
    reconnect_min_secs: float = 1.0
    reconnect_max_secs: float = 60.0
    ack_timeout_secs: float = 10.0


class WatchTargetConfig(BaseModel):
    address: str
    kind: TargetKind
    label: str = ""

    def to_target(self) -> WatchTarget:
        return WatchTarget(
            address=self.address,
            kind=self.kind,
            label=self.label or self.kind.value.title(),
        )


def _default_targets() -> list[WatchTargetConfig]:
    return [
        WatchTargetConfig(address=BPF_UPGRADEABLE_LOADER, kind=TargetKind.DEPLOY, label="Program"),
        WatchTargetConfig(address=SQUADS_V4_PROGRAM, kind=TargetKind.MULTISIG, label="Squad"),
    ]


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"


class BuilderWatchConfig(BaseModel):
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    targets: list[WatchTargetConfig] = Field(default_factory=_default_targets)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def watch_targets(self) -> list[WatchTarget]:
        return [t.to_target() for t in self.targets]


_ENV_OVERRIDES = {
    "BUILDERWATCH_RPC_URL": "http_url",
    "BUILDERWATCH_WS_URL": "ws_url",
    "BUILDERWATCH_API_KEY": "api_key",
}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    rpc = dict(raw.get("rpc") or {})
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            rpc[field_name] = value
    if rpc:
        raw["rpc"] = rpc
    return raw


def load_config(path: str | Path | None = None) -> BuilderWatchConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return BuilderWatchConfig(**_apply_env_overrides(raw))
