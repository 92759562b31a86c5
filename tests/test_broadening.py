import pytest

from pricing_agent.broadening import broaden, lookup_with_broadening
from pricing_agent.errors import CatalogTimeoutError
from tests.fakes import FakeCatalog, catalog_item


def _chain(filter_text):
    steps = []
    current = filter_text
    while True:
        current = broaden(current)
        steps.append(current)
        if current is None:
            return steps


def test_broadens_meter_keywords_then_drops_product():
    query = (
        "armRegionName eq 'eastus2' and contains(tolower(productName), 'openai') "
        "and contains(tolower(meterName), 'gpt') and contains(tolower(meterName), '5') "
        "and contains(tolower(meterName), 'mini')"
    )
    assert _chain(query) == [
        "armRegionName eq 'eastus2' and contains(tolower(productName), 'openai') and contains(tolower(meterName), 'gpt') and contains(tolower(meterName), '5')",
        "armRegionName eq 'eastus2' and contains(tolower(productName), 'openai') and contains(tolower(meterName), 'gpt')",
        "armRegionName eq 'eastus2' and contains(tolower(meterName), 'gpt')",
        None,
    ]


def test_broadens_vm_size_without_product():
    query = (
        "armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s') "
        "and contains(tolower(meterName), 'v5') and contains(tolower(meterName), 'spot')"
    )
    assert _chain(query) == [
        "armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s') and contains(tolower(meterName), 'v5')",
        "armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s')",
        None,
    ]


def test_single_meter_keyword_with_product_drops_product():
    query = (
        "armRegionName eq 'westus' and contains(tolower(productName), 'storage') "
        "and contains(tolower(meterName), 'premium')"
    )
    assert _chain(query) == [
        "armRegionName eq 'westus' and contains(tolower(meterName), 'premium')",
        None,
    ]


def test_product_only_keywords_drop_last_product():
    query = "contains(tolower(productName), 'azure') and contains(tolower(productName), 'redis')"
    assert broaden(query) == "contains(tolower(productName), 'azure')"
    assert broaden("contains(tolower(productName), 'azure')") is None


def test_region_and_other_clauses_survive_broadening():
    query = (
        "armRegionName eq 'eastus' and serviceName eq 'virtual machines' "
        "and contains(tolower(meterName), 'd8s') and contains(tolower(meterName), 'v4')"
    )
    broader = broaden(query)
    assert broader == (
        "armRegionName eq 'eastus' and serviceName eq 'virtual machines' "
        "and contains(tolower(meterName), 'd8s')"
    )


def test_top_level_or_cannot_be_broadened():
    query = "contains(tolower(meterName), 'd8s') or contains(tolower(meterName), 'v4')"
    assert broaden(query) is None


def test_region_only_filter_cannot_be_broadened():
    assert broaden("armRegionName eq 'eastus'") is None


@pytest.mark.asyncio
async def test_lookup_retries_until_records_found():
    narrow = "armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s') and contains(tolower(meterName), 'v9')"
    wide = "armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s')"
    catalog = FakeCatalog(results={wide: [catalog_item("Standard_D8s_v4", 0.384)]})
    steps = []

    async def emit(event_type, payload):
        steps.append((event_type, payload["message"]))

    result = await lookup_with_broadening(catalog, narrow, max_attempts=3, emit=emit)

    assert catalog.calls == [narrow, wide]
    assert result.filter_used == wide
    assert result.original_filter == narrow
    assert result.attempts == 2
    assert result.count == 1
    assert steps == [("step", "No results for d8s v9 in eastus; broadening to d8s in eastus")]


@pytest.mark.asyncio
async def test_lookup_stops_at_attempt_limit():
    query = (
        "armRegionName eq 'eastus' and contains(tolower(meterName), 'a') "
        "and contains(tolower(meterName), 'b') and contains(tolower(meterName), 'c') "
        "and contains(tolower(meterName), 'd')"
    )
    catalog = FakeCatalog()
    result = await lookup_with_broadening(catalog, query, max_attempts=3)
    assert len(catalog.calls) == 3
    assert result.attempts == 3
    assert result.count == 0
    assert result.filter_used == catalog.calls[-1]


@pytest.mark.asyncio
async def test_lookup_stops_when_nothing_left_to_drop():
    query = "armRegionName eq 'eastus' and contains(tolower(meterName), 'zzz')"
    catalog = FakeCatalog()
    result = await lookup_with_broadening(catalog, query, max_attempts=5)
    assert catalog.calls == [query]
    assert result.attempts == 1
    assert result.records == []


@pytest.mark.asyncio
async def test_lookup_propagates_catalog_errors():
    query = "armRegionName eq 'eastus'"
    catalog = FakeCatalog(failures={query: CatalogTimeoutError("slow")})
    with pytest.raises(CatalogTimeoutError):
        await lookup_with_broadening(catalog, query)
