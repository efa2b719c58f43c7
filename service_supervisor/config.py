"""Configuration management for the service supervisor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

BUNDLED_CONFIG_PATH = Path(__file__).with_name("config.yaml")

ProbeType = Literal["container", "http", "command", "tcp", "disk", "memory"]


class ServiceConfig(BaseModel):
    """The managed service instance."""
    name: str = Field(default="discourse", description="Service name used in alerts")
    container: str = Field(default="discourse_app", description="Container name of the service")
    docker_socket_path: str = Field(default="/var/run/docker.sock", description="Docker Engine API socket")


class ProbeConfig(BaseModel):
    """One health probe. Which fields apply depends on `type`."""
    name: str = Field(description="Unique probe name")
    type: ProbeType = Field(description="Probe variant")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, description="Overrides policy.probe_timeout_seconds")

    # container
    container: Optional[str] = Field(default=None, description="Defaults to service.container")

    # http
    url: Optional[str] = Field(default=None)
    allowed_status_codes: Optional[list[int]] = Field(default=None)
    body_pattern: Optional[str] = Field(default=None, description="Regex the response body must match")

    # command
    command: list[str] = Field(default_factory=list)
    expect_output: Optional[str] = Field(default=None, description="Regex the command output must match")

    # tcp
    host: Optional[str] = Field(default=None)
    port: Optional[int] = Field(default=None, ge=1, le=65535)

    # disk / memory; warning_percent also bounds container CPU and memory
    path: str = Field(default="/", description="Filesystem path for disk probes")
    warning_percent: Optional[float] = Field(default=None, ge=0, le=100)
    critical_percent: Optional[float] = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _check_required_fields(self) -> "ProbeConfig":
        if self.type == "http" and not self.url:
            raise ValueError(f"probe {self.name!r}: http probes require url")
        if self.type == "command" and not self.command:
            raise ValueError(f"probe {self.name!r}: command probes require command")
        if self.type == "tcp" and (not self.host or self.port is None):
            raise ValueError(f"probe {self.name!r}: tcp probes require host and port")
        return self


class PolicyConfig(BaseModel):
    """Remediation policy and tick timing."""
    cooldown_seconds: float = Field(default=300.0, ge=0, description="Minimum time between restart attempts")
    max_attempts: int = Field(default=3, ge=0, description="Restart attempts before escalating")
    settle_seconds: float = Field(default=30.0, ge=0, description="Delay before post-restart verification")
    probe_timeout_seconds: float = Field(default=10.0, gt=0, description="Per-probe timeout")
    tick_timeout_seconds: float = Field(default=60.0, gt=0, description="Ceiling for one probe run")


class RemediationConfig(BaseModel):
    """External restart action."""
    enabled: bool = Field(default=True)
    restart_command: list[str] = Field(
        default_factory=lambda: ["/usr/local/bin/discourse/restart-discourse.sh", "restart"],
        description="Preferred restart command, used when its executable exists",
    )
    fallback_commands: list[list[str]] = Field(
        default_factory=lambda: [["docker", "compose", "down"], ["docker", "compose", "up", "-d"]],
        description="Run in order when restart_command is unavailable",
    )
    fallback_pause_seconds: float = Field(default=10.0, ge=0, description="Pause between fallback commands")
    working_dir: Optional[str] = Field(default="/var/discourse", description="cwd for restart commands")
    command_timeout_seconds: float = Field(default=600.0, gt=0)


class DiagnosticsConfig(BaseModel):
    """Diagnostics snapshots captured on critical health."""
    enabled: bool = Field(default=True)
    directory: str = Field(default="/var/lib/discourse-monitor/diagnostics")
    keep_count: int = Field(default=5, ge=0, description="Always keep this many newest snapshots")
    max_age_seconds: float = Field(default=86400.0, ge=0, description="Keep snapshots younger than this")
    log_tail_lines: int = Field(default=50, ge=1)
    max_section_bytes: int = Field(default=64_000, ge=256)
    command_timeout_seconds: float = Field(default=15.0, gt=0)
    process_filter: str = Field(default="docker|discourse|nginx", description="Regex for the process list")
    connectivity_url: str = Field(default="http://localhost")
    disk_paths: list[str] = Field(default_factory=lambda: ["/", "/var"])


class NotificationsConfig(BaseModel):
    """Alert sinks. Unset sinks are disabled."""
    alert_log: Optional[str] = Field(default="/var/log/discourse-alerts.log")
    webhook_url: Optional[str] = Field(default=None)
    webhook_timeout_seconds: float = Field(default=10.0, gt=0)
    telegram_bot_token: Optional[str] = Field(default=None)
    telegram_chat_id: Optional[str] = Field(default=None)
    retry_delay_seconds: float = Field(default=2.0, ge=0)


class StateConfig(BaseModel):
    path: str = Field(default="/var/lib/discourse-monitor/state.json")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: Literal["console", "json"] = Field(default="console")
    file: Optional[str] = Field(default=None, description="Append log lines here instead of stdout")


def default_probes() -> list[ProbeConfig]:
    return [
        ProbeConfig(name="container", type="container"),
        ProbeConfig(name="connectivity", type="http", url="http://localhost", timeout_seconds=5.0),
        ProbeConfig(
            name="health_endpoint",
            type="http",
            url="http://localhost/srv/status",
            body_pattern="ok|healthy|running",
        ),
        ProbeConfig(
            name="database",
            type="command",
            command=[
                "docker", "exec", "discourse_app", "rails", "runner",
                "ActiveRecord::Base.connection.execute('SELECT 1')",
            ],
            timeout_seconds=30.0,
        ),
        ProbeConfig(
            name="redis",
            type="command",
            command=["docker", "exec", "discourse_app", "redis-cli", "ping"],
            expect_output="PONG",
        ),
        ProbeConfig(name="disk", type="disk", path="/var", warning_percent=80.0, critical_percent=90.0),
        ProbeConfig(name="memory", type="memory", warning_percent=85.0, critical_percent=95.0),
    ]


class SupervisorConfig(BaseModel):
    """Main configuration for the supervisor."""
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    probes: list[ProbeConfig] = Field(default_factory=default_probes)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _unique_probe_names(self) -> "SupervisorConfig":
        seen: set[str] = set()
        for probe in self.probes:
            if probe.name in seen:
                raise ValueError(f"duplicate probe name: {probe.name!r}")
            seen.add(probe.name)
        return self


def _apply_env_overrides(config_data: dict[str, Any]) -> None:
    env_overrides = {
        ("logging", "level"): os.getenv("LOG_LEVEL"),
        ("state", "path"): os.getenv("SUPERVISOR_STATE_PATH"),
        ("notifications", "webhook_url"): os.getenv("SUPERVISOR_WEBHOOK_URL"),
        ("notifications", "telegram_bot_token"): os.getenv("TELEGRAM_BOT_TOKEN"),
        ("notifications", "telegram_chat_id"): os.getenv("TELEGRAM_CHAT_ID"),
    }
    for (section, key), value in env_overrides.items():
        if value is None or not value.strip():
            continue
        target = config_data.get(section)
        if not isinstance(target, dict):
            target = {}
            config_data[section] = target
        target[key] = value.strip()


def load_config(config_path: Optional[str | Path] = None) -> SupervisorConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("SUPERVISOR_CONFIG") or BUNDLED_CONFIG_PATH

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Config YAML must be a mapping")
        config_data = loaded

    _apply_env_overrides(config_data)
    return SupervisorConfig(**config_data)
