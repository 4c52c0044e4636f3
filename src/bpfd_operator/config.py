"""Configuration and environment for the operator and node agent."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Controller settings loaded from environment and .env."""

    model_config = SettingsConfigDict(
        env_prefix="BPFD_OPERATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Kubernetes
    kubeconfig: Path | None = Field(
        default=None,
        description="Path to kubeconfig; in-cluster config is tried first",
    )
    context: str | None = Field(default=None, description="Kubernetes context to use")
    node_name: str | None = Field(
        default=None,
        description="Node the agent runs on (usually injected from spec.nodeName)",
    )

    # bpfd daemon
    daemon_address: str = Field(
        default="unix:///run/bpfd/bpfd.sock",
        description="gRPC target of the node-local bpfd daemon",
    )
    daemon_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Deadline for a single daemon RPC",
    )

    # Controller behavior
    workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Concurrent reconcile workers per controller",
    )
    retry_duration_operator_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Requeue interval for the cluster operator after conflicts or while waiting on teardown",
    )
    retry_duration_agent_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Requeue interval for the node agent after daemon failures",
    )
    watch_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Server-side timeout of a single watch stream before it is reopened",
    )


def get_settings() -> Settings:
    """Return validated settings instance."""
    return Settings()
