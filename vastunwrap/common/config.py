"""
Configuration management for vastunwrap.

Supports loading from environment variables and YAML files.
Every section field can be set either through its bare environment name
(``MAX_DEPTH``, ``BID_ENDPOINT_ALLOWLIST`` ...) or through the prefixed,
nested form ``VASTUNWRAP_<SECTION>__<FIELD>``.
"""

from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class ServerSettings(BaseSettings):
    """Uvicorn / HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1
    reload: bool = False


# ---------------------------------------------------------------------------
# Wrapper resolution
# ---------------------------------------------------------------------------

class ResolverSettings(BaseSettings):
    """VAST wrapper-chain resolution and tracker merge configuration."""

    # Maximum number of wrapper hops followed before giving up
    max_depth: int = 8

    # Deadline for a single ad-tag fetch (including its redirects)
    timeout_ms: int = 2500

    # Cumulative budget for a whole wrapper chain
    chain_timeout_ms: int = 10000

    # Resolved document cache
    cache_ttl_ms: int = 60000
    cache_sweep_interval_ms: int = 0    # 0 = lazy expiry only

    # Collapse duplicate impression pixels when merging (off keeps them for auditing)
    imp_dedup: bool = False

    # User-Agent sent when fetching ad tags
    downstream_ua: str = "VAST-Resolver/1.0"

    # nurl query parameters that may carry an equivalent wrapper URL (comma-separated)
    derive_params: str = "vasturl,vast_url,adtaguri,wrapper_url"

    # Template rebuilt from nurl query parameters, e.g.
    # "https://ssb.example.com/vast?siteid={siteid}&pgid={pgid}"
    derive_template: str = ""

    # Resolve the bids of one response concurrently
    parallel_bids: bool = True

    @property
    def derive_param_names(self) -> list[str]:
        return [p.strip() for p in self.derive_params.split(",") if p.strip()]

    @field_validator("max_depth")
    @classmethod
    def validate_max_depth(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_depth must be >= 0, got {v}")
        return v


# ---------------------------------------------------------------------------
# Upstream bidding endpoint
# ---------------------------------------------------------------------------

class UpstreamSettings(BaseSettings):
    """Upstream bid endpoint forwarding and fetch limits."""

    upstream_timeout_ms: int = 8000

    # Hard ceiling on any response body read by the secure fetcher
    max_body_bytes: int = 1_500_000

    max_redirects: int = 3

    # Comma-separated hostnames (optionally host:port); empty = any public host
    bid_endpoint_allowlist: str = ""

    # Operator-configured fallback endpoint
    default_bid_endpoint: str = Field(
        "",
        validation_alias=AliasChoices("default_bid_endpoint", "equativ_bid_url"),
    )

    # Forwarded when the caller sends no User-Agent
    user_agent: str = "VAST-Unwrapper/1.0"

    @property
    def allowlist(self) -> list[str] | None:
        entries = [
            s.strip().lower()
            for s in self.bid_endpoint_allowlist.split(",")
            if s.strip()
        ]
        return entries or None


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "console"] = "json"


class MonitoringSettings(BaseSettings):
    """Prometheus / monitoring configuration."""

    enabled: bool = True


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="VASTUNWRAP_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "vastunwrap"
    app_version: str = "0.1.0"
    debug: bool = Field(False, validation_alias=AliasChoices("debug", "vastunwrap_debug"))
    env: Literal["dev", "prod", "test"] = "dev"

    # Nested settings
    server: ServerSettings = Field(default_factory=ServerSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        if v not in ("dev", "prod", "test"):
            raise ValueError(f"Invalid environment: {v}")
        return v

    @property
    def is_production(self) -> bool:
        return self.env == "prod"


# ---------------------------------------------------------------------------
# YAML Loader
# ---------------------------------------------------------------------------

def load_yaml_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def merge_configs(base: dict, override: dict) -> dict:
    """Deep-merge two configuration dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value
    return result


_SECTION_CLASSES: dict[str, type[BaseSettings]] = {
    "server": ServerSettings,
    "resolver": ResolverSettings,
    "upstream": UpstreamSettings,
    "logging": LoggingSettings,
    "monitoring": MonitoringSettings,
}

# Sections whose fields are also read from their bare names (MAX_DEPTH, ...)
_BARE_ENV_SECTIONS = ("resolver", "upstream")


def env_names(field_name: str, field: FieldInfo) -> list[str]:
    """Environment names of a field: its own name, then any alias choices."""
    names = [field_name]
    alias = field.validation_alias
    if isinstance(alias, AliasChoices):
        names += [choice for choice in alias.choices if isinstance(choice, str)]
    elif isinstance(alias, str):
        names.append(alias)
    return [name.upper() for name in dict.fromkeys(names)]


def env_override(field_name: str, field: FieldInfo, environ: Mapping[str, str]) -> str | None:
    """First environment value set for the field, if any."""
    for name in env_names(field_name, field):
        if name in environ:
            return environ[name]
    return None


@lru_cache
def get_settings() -> Settings:
    """
    Get application settings.

    Loads from:
    1. configs/base.yaml (base configuration)
    2. configs/{env}.yaml (environment-specific overrides)
    3. Environment variables (highest priority)
    """
    import os

    env = os.getenv("VASTUNWRAP_ENV", "dev")

    config_dir = Path(os.getenv("VASTUNWRAP_CONFIG_DIR", Path(__file__).parent.parent.parent / "configs"))

    base_config = load_yaml_config(config_dir / "base.yaml")
    env_config = load_yaml_config(config_dir / f"{env}.yaml")
    merged = merge_configs(base_config, env_config)

    flat_config: dict = {}
    if "app" in merged:
        flat_config["app_name"] = merged["app"].get("name", "vastunwrap")
        flat_config["app_version"] = merged["app"].get("version", "0.1.0")
        if "debug" in merged["app"]:
            flat_config["debug"] = merged["app"]["debug"]

    # pydantic-settings gives init kwargs priority over env vars, so every
    # environment name is merged over the YAML values by hand.
    debug = env_override("debug", Settings.model_fields["debug"], os.environ)
    if debug is not None:
        flat_config["debug"] = debug

    flat_config["env"] = env

    for section_key, settings_cls in _SECTION_CLASSES.items():
        section_data = dict(merged.get(section_key, {}))

        if section_key in _BARE_ENV_SECTIONS:
            for field_name, field in settings_cls.model_fields.items():
                bare = env_override(field_name, field, os.environ)
                if bare is not None:
                    section_data[field_name] = bare

        prefix = f"VASTUNWRAP_{section_key.upper()}__"
        for env_key, env_value in os.environ.items():
            if env_key.startswith(prefix):
                section_data[env_key[len(prefix):].lower()] = env_value

        flat_config[section_key] = settings_cls(**section_data)

    return Settings(**flat_config)
