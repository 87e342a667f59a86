"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.

Configuration is static for the lifetime of the process.  An invalid
configuration (no scan locations, inverted thresholds, unknown tier) raises
at construction time and the CLI refuses to start.
"""
from __future__ import annotations

from typing import Dict, List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run.  A plain comma-separated
    value like ``/etc/ssl/app,/etc/ssl/api`` is not valid JSON and raises
    SettingsError before the list validators can handle it.  This mixin
    catches that ValueError and returns the raw string so the
    field_validator receives it and can split on commas as intended.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Inventory ──────────────────────────────────────────────────────────
    SCAN_LOCATIONS: List[str] = []
    SCAN_PATTERNS: List[str] = ["*.pem", "*.crt"]
    SCAN_INTERVAL_SECONDS: int = 300
    SCAN_READ_TIMEOUT_SECONDS: float = 10.0
    FINGERPRINT_DIGEST: Literal["sha1", "sha256", "sha384", "sha512"] = "sha256"

    # ── Classification ─────────────────────────────────────────────────────
    WARNING_DAYS: int = 30
    CRITICAL_DAYS: int = 7
    RENEW_AT_TIER: Literal["WARNING", "CRITICAL", "EXPIRED"] = "CRITICAL"

    # ── Vault PKI backend ──────────────────────────────────────────────────
    VAULT_ADDR: str = "http://127.0.0.1:8200"
    VAULT_TOKEN: str = ""
    VAULT_NAMESPACE: str = ""
    VAULT_PKI_MOUNT: str = "pki"
    VAULT_TIMEOUT_SECONDS: float = 10.0
    VAULT_CA_BUNDLE: str = ""      # Path to CA bundle; empty = system default
    VAULT_INSECURE: bool = False   # Skip TLS verification (never use in production)

    # ── Renewal ────────────────────────────────────────────────────────────
    PKI_DEFAULT_ROLE: str = ""
    PKI_ROLE_BY_DOMAIN: Dict[str, str] = {}   # domain suffix → role
    PKI_ROLE_TTLS: Dict[str, str] = {}        # role → ttl
    DEFAULT_TTL: str = "720h"
    RENEWAL_WORKERS: int = 4
    RENEWAL_HISTORY_SIZE: int = 100
    REVOKE_SUPERSEDED: bool = False

    # ── Metrics endpoint ───────────────────────────────────────────────────
    METRICS_HOST: str = "0.0.0.0"
    METRICS_PORT: int = 9469
    METRICS_PATH: str = "/metrics"

    # ── Process ────────────────────────────────────────────────────────────
    SHUTDOWN_GRACE_SECONDS: float = 30.0
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("SCAN_LOCATIONS", "SCAN_PATTERNS", mode="before")
    @classmethod
    def parse_csv(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v  # type: ignore[return-value]

    @field_validator("RENEW_AT_TIER", "LOG_LEVEL", mode="before")
    @classmethod
    def upper_case(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @field_validator("METRICS_PATH")
    @classmethod
    def validate_metrics_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("METRICS_PATH must start with '/'")
        return v

    @field_validator("SCAN_INTERVAL_SECONDS", "RENEWAL_WORKERS", "RENEWAL_HISTORY_SIZE")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_locations(self) -> "Settings":
        if not self.SCAN_LOCATIONS:
            raise ValueError("SCAN_LOCATIONS must name at least one file or directory")
        return self

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        if self.CRITICAL_DAYS < 0:
            raise ValueError("CRITICAL_DAYS must be >= 0")
        if self.WARNING_DAYS <= self.CRITICAL_DAYS:
            raise ValueError(
                f"WARNING_DAYS ({self.WARNING_DAYS}) must be greater than "
                f"CRITICAL_DAYS ({self.CRITICAL_DAYS})"
            )
        return self

    def role_for(self, common_name: str) -> str:
        """Pick the PKI role for *common_name*: longest matching domain suffix wins."""
        name = common_name.lower().rstrip(".")
        best, best_len = self.PKI_DEFAULT_ROLE, -1
        for suffix, role in self.PKI_ROLE_BY_DOMAIN.items():
            s = suffix.lower().lstrip("*").lstrip(".")
            if (name == s or name.endswith("." + s)) and len(s) > best_len:
                best, best_len = role, len(s)
        return best

    def ttl_for(self, role: str) -> str:
        return self.PKI_ROLE_TTLS.get(role, self.DEFAULT_TTL)

