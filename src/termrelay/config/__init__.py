"""Configuration — Pydantic models for termrelay settings."""

from __future__ import annotations

import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """HTTP/WebSocket listener configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)


class SessionConfig(BaseModel):
    """Per-session relay behaviour."""

    scrollback_bytes: int = Field(
        default=100 * 1024, description="Scrollback window per session, in bytes"
    )
    idle_timeout: float = Field(
        default=30.0, description="Seconds without output before running -> idle"
    )
    status_interval: float = Field(
        default=5.0, description="Seconds between status sweeps"
    )
    list_cache_ttl: float = Field(
        default=5.0, description="Seconds a computed session list may be reused"
    )
    initial_input_delay: float = Field(
        default=1.5,
        description="Delay before the initial message is typed into a new session",
    )
    observer_queue_size: int = Field(
        default=1024,
        description=(
            "Frames buffered per observer. An observer that falls this far "
            "behind is disconnected and must reconnect to replay scrollback."
        ),
    )
    default_working_dir: str | None = Field(
        default=None, description="Working directory when none is given ($HOME)"
    )


class BackendConfig(BaseModel):
    """tmux backend configuration."""

    tmux: str = Field(default="tmux", description="tmux executable")
    session_prefix: str = Field(default="ws-")
    program: list[str] = Field(
        default_factory=lambda: ["claude", "--dangerously-skip-permissions"],
        description="Interactive program supervised inside each tmux session",
    )
    resume_args: list[str] = Field(
        default_factory=lambda: ["--continue"],
        description="Appended to the program when respawning a lost session",
    )
    cols: int = Field(default=200)
    rows: int = Field(default=50)
    spawn_settle_delay: float = Field(
        default=0.3,
        description="Wait between detached create and attach (tmux startup race)",
    )
    command_timeout: float = Field(
        default=5.0, description="Timeout for one-shot tmux commands"
    )


class ClientConfig(BaseModel):
    """Client-side reconnection policy."""

    reconnect_initial: float = Field(default=2.0)
    reconnect_multiplier: float = Field(default=1.5)
    reconnect_max: float = Field(default=30.0)


class RelayConfig(BaseModel):
    """Top-level termrelay configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    catalog_path: str = Field(
        default="~/.termrelay/sessions.json",
        description="JSON file holding persisted session metadata",
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> RelayConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMRELAY_HOST              - Listen address
            TERMRELAY_PORT              - Listen port
            TERMRELAY_SCROLLBACK_BYTES  - Scrollback window per session
            TERMRELAY_IDLE_TIMEOUT      - Seconds of silence before idle
            TERMRELAY_PROGRAM           - Supervised program (shell-style words)
            TERMRELAY_TMUX              - tmux executable
            TERMRELAY_CATALOG           - Catalog JSON path
            TERMRELAY_WORKDIR           - Default working directory
        """
        # .env values take precedence over stale shell exports
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            import json

            with open(config_path) as f:
                config_data = json.load(f)

        server = config_data.get("server", {})
        session = config_data.get("session", {})
        backend = config_data.get("backend", {})

        env_host = os.environ.get("TERMRELAY_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("TERMRELAY_PORT")
        if env_port:
            server["port"] = int(env_port)

        env_scrollback = os.environ.get("TERMRELAY_SCROLLBACK_BYTES")
        if env_scrollback:
            session["scrollback_bytes"] = int(env_scrollback)

        env_idle = os.environ.get("TERMRELAY_IDLE_TIMEOUT")
        if env_idle:
            session["idle_timeout"] = float(env_idle)

        env_workdir = os.environ.get("TERMRELAY_WORKDIR")
        if env_workdir:
            session["default_working_dir"] = env_workdir

        env_program = os.environ.get("TERMRELAY_PROGRAM")
        if env_program:
            import shlex

            backend["program"] = shlex.split(env_program)

        env_tmux = os.environ.get("TERMRELAY_TMUX")
        if env_tmux:
            backend["tmux"] = env_tmux

        env_catalog = os.environ.get("TERMRELAY_CATALOG")
        if env_catalog:
            config_data["catalog_path"] = env_catalog

        if server:
            config_data["server"] = server
        if session:
            config_data["session"] = session
        if backend:
            config_data["backend"] = backend

        return cls.model_validate(config_data)
