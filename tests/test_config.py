# Dataverse Dataset MCP Server
# File: tests/test_config.py
# Version: v1

from __future__ import annotations

from dataverse_dataset_mcp.config import DEFAULT_LOOKUP_FIELD_FORMAT, DataverseConfig


def test_defaults_when_environment_is_empty(monkeypatch) -> None:
    for name in (
        "DATAVERSE_URL",
        "DATAVERSE_MOCK_MODE",
        "DATAVERSE_MAX_PAGE_SIZE",
        "DATAVERSE_API_VERSION",
        "DATAVERSE_LOOKUP_FIELD_FORMAT",
        "DATAVERSE_PUBLISHER_PREFIX",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = DataverseConfig.from_env()

    assert cfg.environment_url is None
    assert cfg.api_base_url is None
    assert cfg.mock_mode is False
    assert cfg.max_page_size == 5000
    assert cfg.api_version == "9.2"
    assert cfg.lookup_field_format == DEFAULT_LOOKUP_FIELD_FORMAT
    assert cfg.publisher_prefix is None


def test_values_are_read_and_clamped(monkeypatch) -> None:
    monkeypatch.setenv("DATAVERSE_URL", "https://contoso.crm.dynamics.com/")
    monkeypatch.setenv("DATAVERSE_MOCK_MODE", "yes")
    monkeypatch.setenv("DATAVERSE_MAX_PAGE_SIZE", "99999")
    monkeypatch.setenv("DATAVERSE_CACHE_TTL_SECONDS", "not-a-number")
    monkeypatch.setenv("DATAVERSE_PUBLISHER_PREFIX", "  contoso ")

    cfg = DataverseConfig.from_env()

    assert cfg.api_base_url == "https://contoso.crm.dynamics.com/api/data/v9.2"
    assert cfg.mock_mode is True
    assert cfg.max_page_size == 5000
    assert cfg.cache_ttl_seconds == 300
    assert cfg.publisher_prefix == "contoso"


def test_lookup_field_format_without_placeholder_falls_back(monkeypatch) -> None:
    monkeypatch.setenv("DATAVERSE_LOOKUP_FIELD_FORMAT", "lookup_value")
    assert DataverseConfig.from_env().lookup_field_format == DEFAULT_LOOKUP_FIELD_FORMAT

    monkeypatch.setenv("DATAVERSE_LOOKUP_FIELD_FORMAT", "{attribute}_id")
    assert DataverseConfig.from_env().lookup_field_format == "{attribute}_id"
