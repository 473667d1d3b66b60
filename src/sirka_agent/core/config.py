"""Configuration management for the Sirka site agent."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Agent configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    host: str = Field("0.0.0.0", description="Server host")
    agent_port: int = Field(3001, description="Server port")

    # Runtime selection: auto-detect, force docker or force system nginx
    runtime: str = Field("auto", description="auto, docker or system")

    # Site storage
    deploy_path: str = Field("/var/www/sites", description="Root directory holding one directory per site")
    activation_policy: str = Field("atomic_swap", description="Default activation policy")
    site_owner: Optional[str] = Field(None, description="user[:group] to chown deployed files to")

    # Docker backend
    docker_network: str = Field("sirka-network", description="Network shared by site containers")
    container_prefix: str = Field("sirka-", description="Name prefix for containers and fragments")
    container_image: str = Field("nginx:alpine", description="Image serving each site")

    # System nginx backend
    nginx_config_path: str = Field("/etc/nginx/sites-available", description="Where fragments are written")
    nginx_sites_enabled: str = Field("/etc/nginx/sites-enabled", description="Where fragments are linked")
    nginx_service: str = Field("nginx", description="systemd unit name")
    use_sudo: bool = Field(True, description="Retry privileged commands with sudo -n")
    command_timeout_seconds: float = Field(60.0, description="Timeout for external commands")

    # Platform / security
    platform_url: Optional[str] = Field(None, description="Platform base URL used for token verification")
    agent_token: Optional[str] = Field(None, description="Static token accepted when no platform is configured")
    token_cache_ttl_seconds: float = Field(300.0, description="Token verification cache TTL")

    # Artifact limits
    fetch_timeout_seconds: float = Field(300.0, description="Total timeout for artifact downloads")
    max_artifact_size_mb: int = Field(100, description="Maximum archive size")
    max_extracted_size_mb: int = Field(500, description="Maximum total uncompressed size")

    # Audit
    audit_log_path: str = Field("logs/audit.log", description="JSON-lines audit log")

    # Observability
    log_level: str = Field("INFO")
    log_format: str = Field("json")
    metrics_enabled: bool = Field(True)

    @field_validator("runtime")
    @classmethod
    def validate_runtime(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("auto", "docker", "system"):
            raise ValueError(f"Invalid RUNTIME value: {v}")
        return v

    @field_validator("activation_policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        v = v.strip().lower().replace("-", "_")
        if v not in ("atomic_swap", "full_replace"):
            raise ValueError(f"Invalid activation policy: {v}")
        return v

    @property
    def max_artifact_size_bytes(self) -> int:
        return self.max_artifact_size_mb * 1024 * 1024

    @property
    def max_extracted_size_bytes(self) -> int:
        return self.max_extracted_size_mb * 1024 * 1024
