"""
Configuration management for authbridge.

Non-secret configuration loaded from a YAML file, secrets from environment variables.
"""

import os
import re
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "~/.config/authbridge/config.yaml"
DEFAULT_REDIRECT_URI = "authbridge://auth/callback"


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(os.environ.get("AUTHBRIDGE_CONFIG_FILE", DEFAULT_CONFIG_PATH)).expanduser()
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


# --- Provider Configuration Models ---


class ProtocolFamily(StrEnum):
    """Supported identity protocol families."""

    AUTH_CODE = "auth_code"
    OIDC = "oidc"
    SAML = "saml"


class ProviderEndpoints(BaseModel):
    """Endpoints for a single identity provider.

    OAuth/OIDC providers use the authorization/token/userinfo endpoints.
    SAML providers use entry_point, sp_entity_id and acs_url.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    authorization_url: str = Field(default="", description="OAuth2 authorization endpoint")
    token_url: str = Field(default="", description="OAuth2 token endpoint")
    userinfo_url: str = Field(default="", description="Userinfo endpoint (bearer GET)")
    issuer_url: str = Field(
        default="", description="OIDC issuer URL; used for discovery when endpoints are empty"
    )
    jwks_url: str = Field(default="", description="JWKS URL for id_token validation")
    entry_point: str = Field(default="", description="SAML IdP SSO URL")
    sp_entity_id: str = Field(default="", description="SAML service provider entity ID (Issuer)")
    acs_url: str = Field(default="", description="SAML assertion consumer service URL")
    idp_cert: str = Field(
        default="",
        description="SAML IdP signing certificate. Stored for future use; assertions are "
        "NOT verified against it.",
    )


class ProviderConfig(BaseModel):
    """Configuration for a single identity provider.

    Frozen once built. Reconfiguration produces a new instance.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(description="Unique provider id (e.g., 'github', 'azure-ad')")
    display_name: str = Field(
        default="", description="Human-readable label for login UI (falls back to id)"
    )
    protocol_family: ProtocolFamily = Field(default=ProtocolFamily.AUTH_CODE)
    enabled: bool = Field(default=True)
    client_id: str = Field(default="", description="OAuth2 client ID")
    client_secret: SecretStr = Field(
        default=SecretStr(""), description="OAuth2 client secret (from env)"
    )
    endpoints: ProviderEndpoints = Field(default_factory=ProviderEndpoints)
    scopes: tuple[str, ...] = Field(default=())
    redirect_target: str = Field(
        default="", description="Redirect URI registered with the IdP (falls back to redirect_uri)"
    )
    uses_pkce: bool = Field(default=False)
    callback_patterns: tuple[str, ...] = Field(
        default=(),
        description="Regexes identifying this provider's callback URLs, tried in registry order",
    )
    keywords: tuple[str, ...] = Field(
        default=(),
        description="Plain substrings used only to label otherwise unattributed callbacks",
    )

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("provider id must not be blank")
        return value

    @field_validator("callback_patterns")
    @classmethod
    def _patterns_compile(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid callback pattern {pattern!r}: {e}") from e
        return value

    @property
    def label(self) -> str:
        return self.display_name or self.id

    @property
    def is_confidential(self) -> bool:
        """True when a client secret is configured."""
        return bool(self.client_secret.get_secret_value())


# --- Host Integration Models ---


class SurfaceConfig(BaseModel):
    """Secondary login surface presentation."""

    width: int = Field(default=600)
    height: int = Field(default=700)
    title_template: str = Field(default="Sign in with {provider}")


class AmbientConfig(BaseModel):
    """Ambient callback interception on the main browsing surface."""

    enabled: bool = Field(default=True)
    loopback_only: bool = Field(
        default=True,
        description="Only act on parameter-heuristic callbacks aimed at loopback hosts. "
        "Pattern-matched callbacks are always handled.",
    )
    wait_timeout_seconds: float = Field(default=300.0)


# --- Storage Configuration Models ---


class StorageBackend(StrEnum):
    """Supported credential storage backends."""

    MEMORY = "memory"
    FILESYSTEM = "filesystem"
    REDIS = "redis"


class FilesystemConfig(BaseModel):
    """Local filesystem credential storage configuration."""

    root_dir: str = Field(
        default="~/.local/share/authbridge/credentials",
        description="Directory holding one encrypted file per credential record",
    )
    key_file: str = Field(
        default="~/.local/share/authbridge/credentials.key",
        description="Fernet key file, created with mode 0600 when no key is configured",
    )


class RedisConfig(BaseModel):
    """Redis credential storage configuration."""

    url: RedisDsn = Field(default="redis://localhost:6379")
    key_prefix: str = Field(default="ab:cred:")


class StorageConfig(BaseModel):
    """Credential storage configuration."""

    backend: StorageBackend = Field(
        default=StorageBackend.FILESYSTEM,
        description="Storage backend: memory, filesystem, or redis",
    )
    filesystem: FilesystemConfig = Field(default_factory=FilesystemConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)


# --- Main Settings ---


class Settings(BaseSettings):
    """Main authbridge settings."""

    model_config = SettingsConfigDict(
        env_prefix="AUTHBRIDGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True, description="JSON logging when embedded")

    # Flows
    redirect_uri: str = Field(default=DEFAULT_REDIRECT_URI)
    pending_timeout_seconds: float = Field(
        default=300.0, description="Deadline for a callback to arrive after a flow starts"
    )
    http_timeout_seconds: float = Field(default=10.0)

    # Providers
    include_default_providers: bool = Field(default=True)
    providers: list[ProviderConfig] = Field(default_factory=list)

    surface: SurfaceConfig = Field(default_factory=SurfaceConfig)
    ambient: AmbientConfig = Field(default_factory=AmbientConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Encryption
    credential_encryption_key: str = Field(
        default="",
        description="Fernet key for credentials at rest, independent of any other app key. "
        "Generate with: python -m authbridge.cli.keygen",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
