"""
Linkstate Configuration — single source of truth for all settings.

Reads from environment variables with sensible defaults.
No config files, no YAML, no complexity. Just env vars.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class ChannelConfig:
    """Collaborator endpoints and channel timing."""

    api_url: str = "http://localhost:5000"
    realtime_url: str = "ws://localhost:5000/ws"
    poll_interval: float = 10.0  # seconds between session snapshots
    request_timeout: float = 10.0
    # Reconnection (0 attempts = retry forever)
    reconnect_attempts: int = 0
    reconnect_delay: float = 1.0  # seconds, doubles each attempt
    reconnect_max_delay: float = 30.0

    @classmethod
    def from_env(cls) -> ChannelConfig:
        return cls(
            api_url=os.getenv("LINKSTATE_API_URL", "http://localhost:5000"),
            realtime_url=os.getenv(
                "LINKSTATE_REALTIME_URL", "ws://localhost:5000/ws"
            ),
            poll_interval=float(os.getenv("LINKSTATE_POLL_INTERVAL", "10.0")),
            request_timeout=float(os.getenv("LINKSTATE_REQUEST_TIMEOUT", "10.0")),
            reconnect_attempts=int(os.getenv("LINKSTATE_RECONNECT_ATTEMPTS", "0")),
            reconnect_delay=float(os.getenv("LINKSTATE_RECONNECT_DELAY", "1.0")),
            reconnect_max_delay=float(
                os.getenv("LINKSTATE_RECONNECT_MAX_DELAY", "30.0")
            ),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Reconciliation engine settings."""

    # Window after a realtime transition in which a poll may not regress
    # state. None = same as the poll interval.
    grace_window: float | None = None
    timestamp_granularity: float = 1.0  # seconds per dedup bucket
    dedup_tolerance: float = 2.0  # max timestamp skew for optimistic matches
    inbound_queue_limit: int = 1000
    history_on_connect: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        grace = os.getenv("LINKSTATE_GRACE_WINDOW")
        return cls(
            grace_window=float(grace) if grace else None,
            timestamp_granularity=float(
                os.getenv("LINKSTATE_TIMESTAMP_GRANULARITY", "1.0")
            ),
            dedup_tolerance=float(os.getenv("LINKSTATE_DEDUP_TOLERANCE", "2.0")),
            inbound_queue_limit=int(
                os.getenv("LINKSTATE_INBOUND_QUEUE_LIMIT", "1000")
            ),
            history_on_connect=os.getenv(
                "LINKSTATE_HISTORY_ON_CONNECT", "true"
            ).lower()
            in ("1", "true", "yes"),
        )


@dataclass(frozen=True)
class LinkstateConfig:
    """Root configuration, loaded once from the environment."""

    channels: ChannelConfig = field(default_factory=ChannelConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    @property
    def grace_window(self) -> float:
        """Effective grace window in seconds."""
        if self.engine.grace_window is not None:
            return self.engine.grace_window
        return self.channels.poll_interval

    @classmethod
    def from_env(cls) -> LinkstateConfig:
        return cls(
            channels=ChannelConfig.from_env(),
            engine=EngineConfig.from_env(),
        )


# Singleton: import this wherever you need config
config = LinkstateConfig.from_env()
