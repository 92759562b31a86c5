from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from pricing_agent.config import AppSettings
from pricing_agent.main import create_app
from tests.fakes import FakeCatalog, FakeLLMClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        llm_endpoint="http://llm.test",
        llm_api_key="test-key",
        llm_deployment="test-model",
        catalog_base_url="http://prices.test/api/retail/prices",
        turn_timeout_s=5.0,
        keepalive_interval_s=5.0,
        answer_chunk_chars=0,
        instructions_path=str(tmp_path / "instructions.txt"),
        reference_tables_path=str(tmp_path / "tables.json"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: Optional[FakeLLMClient] = None,
        catalog: Optional[FakeCatalog] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeLLMClient()
        catalog_client = catalog or FakeCatalog()
        app = create_app(settings, llm_client=llm_client, catalog_client=catalog_client)
        return app, llm_client, catalog_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, llm_client, catalog_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_catalog = catalog_client  # type: ignore[attr-defined]
            yield http_client
