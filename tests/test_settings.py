import json

import pytest

from pricing_agent.config import AppSettings, load_reference_tables, load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_api_key(client):
    res = await client.get("/settings")
    assert res.status_code == 200
    data = res.json()
    assert data["settings"]["llm_api_key"] == "********"
    assert data["settings"]["llm_deployment"] == "test-model"


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"llm_endpoint": "http://config"}))
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "http://env")
    monkeypatch.delenv("PRICING_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.llm_endpoint == "http://config"


def test_env_override_when_pricing_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"llm_endpoint": "http://config"}))
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "http://env")
    monkeypatch.setenv("PRICING_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.llm_endpoint == "http://env"


def test_numeric_env_values_are_coerced(tmp_path, monkeypatch):
    monkeypatch.setenv("MAX_TOOL_ROUNDS", "4")
    monkeypatch.setenv("TURN_TIMEOUT_S", "45.5")
    monkeypatch.setenv("PRICING_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.max_tool_rounds == 4
    assert settings.turn_timeout_s == 45.5


@pytest.mark.parametrize(
    "endpoint, expected",
    [
        ("https://myres.openai.azure.com", "https://myres.openai.azure.com/openai/v1"),
        ("https://myres.openai.azure.com/", "https://myres.openai.azure.com/openai/v1"),
        ("http://localhost:1234/v1", "http://localhost:1234/v1"),
        ("", ""),
    ],
)
def test_llm_base_url(endpoint, expected):
    assert AppSettings(llm_endpoint=endpoint).llm_base_url() == expected


def test_reference_tables_file_overlays_inline_tables(tmp_path):
    path = tmp_path / "tables.json"
    path.write_text(json.dumps({"Regions": {"eastus": "East US"}}))
    settings = AppSettings(
        reference_tables={"Regions": {"westus": "West US"}, "Units": {"h": "hour"}},
        reference_tables_path=str(path),
    )
    assert load_reference_tables(settings) == {"Regions": {"eastus": "East US"}, "Units": {"h": "hour"}}
