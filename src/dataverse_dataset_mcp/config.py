# Dataverse Dataset MCP Server
# File: config.py
# Version: v1

"""Configuration loading for the Dataverse Dataset MCP Server."""

from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_LOOKUP_FIELD_FORMAT = "_{attribute}_value"


def _parse_bool_env(name: str, default: bool = False) -> bool:
    """Parse a boolean-like environment variable.

    Accepts 1/0, true/false, yes/no, on/off (case-insensitive).
    """
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(
    name: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    """Parse an int environment variable with clamping and safe fallback."""
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        value = int(default)
    else:
        try:
            value = int(str(raw).strip())
        except ValueError:
            value = int(default)

    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value

    return value


def _parse_str_env(name: str) -> str | None:
    """Return a stripped string env var, or None when unset or blank."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


@dataclass
class DataverseConfig:
    """Configuration values required to talk to a Dataverse environment.

    ``publisher_prefix``, ``page_table`` and ``target_table`` are optional
    hints: the prefix narrows relationship and form scans, the two table
    names let callers skip entity-pair discovery when already known.
    """

    environment_url: str | None
    oauth_token_url: str | None
    client_id: str | None
    client_secret: str | None
    mock_mode: bool

    verify_tls: bool = True
    api_version: str = "9.2"
    timeout_seconds: int = 30

    # paging guardrails
    max_page_size: int = 5000
    default_page_size: int = 50

    # discovery cache (relationships / forms only, never views or records)
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 0

    publisher_prefix: str | None = None
    page_table: str | None = None
    target_table: str | None = None
    lookup_field_format: str = DEFAULT_LOOKUP_FIELD_FORMAT

    @property
    def api_base_url(self) -> str | None:
        if not self.environment_url:
            return None
        return f"{self.environment_url.rstrip('/')}/api/data/v{self.api_version}"

    @classmethod
    def from_env(cls) -> "DataverseConfig":
        """Create configuration from environment variables."""
        lookup_field_format = (
            _parse_str_env("DATAVERSE_LOOKUP_FIELD_FORMAT") or DEFAULT_LOOKUP_FIELD_FORMAT
        )
        if "{attribute}" not in lookup_field_format:
            lookup_field_format = DEFAULT_LOOKUP_FIELD_FORMAT

        return cls(
            environment_url=_parse_str_env("DATAVERSE_URL"),
            oauth_token_url=_parse_str_env("DATAVERSE_OAUTH_TOKEN_URL"),
            client_id=_parse_str_env("DATAVERSE_CLIENT_ID"),
            client_secret=_parse_str_env("DATAVERSE_CLIENT_SECRET"),
            mock_mode=_parse_bool_env("DATAVERSE_MOCK_MODE", default=False),
            verify_tls=_parse_bool_env("DATAVERSE_VERIFY_TLS", default=True),
            api_version=_parse_str_env("DATAVERSE_API_VERSION") or "9.2",
            timeout_seconds=_parse_int_env(
                "DATAVERSE_TIMEOUT_SECONDS", default=30, min_value=1, max_value=600
            ),
            max_page_size=_parse_int_env(
                "DATAVERSE_MAX_PAGE_SIZE", default=5000, min_value=1, max_value=5000
            ),
            default_page_size=_parse_int_env(
                "DATAVERSE_DEFAULT_PAGE_SIZE", default=50, min_value=1, max_value=5000
            ),
            cache_ttl_seconds=_parse_int_env(
                "DATAVERSE_CACHE_TTL_SECONDS", default=300, min_value=0, max_value=86400
            ),
            cache_max_entries=_parse_int_env(
                "DATAVERSE_CACHE_MAX_ENTRIES", default=0, min_value=0, max_value=100000
            ),
            publisher_prefix=_parse_str_env("DATAVERSE_PUBLISHER_PREFIX"),
            page_table=_parse_str_env("DATAVERSE_PAGE_TABLE"),
            target_table=_parse_str_env("DATAVERSE_TARGET_TABLE"),
            lookup_field_format=lookup_field_format,
        )
