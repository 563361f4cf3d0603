"""Tests for the geo resolution pipeline (phc.geoip)."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from phc.geoip import (
    GEO_FIELDS,
    GeoResolver,
    IpApiLookup,
    MaxMindLookup,
    normalize_geo,
)
from phc.models import GeoInfo
from phc.store import GEO_NAMESPACE, SqliteStore, init_db

_SUCCESS = {
    "status": "success",
    "country": "United States",
    "countryCode": "US",
    "isp": "ExampleISP",
    "org": "Example Org",
    "as": "AS64500 Example",
    "city": "Austin",
}


def _geo_store() -> SqliteStore:
    return SqliteStore(init_db(":memory:"), GEO_NAMESPACE)


def _fake_lookup(payload: dict | None = None, exc: Exception | None = None) -> MagicMock:
    lookup = MagicMock()
    lookup.lookup = AsyncMock(return_value=payload, side_effect=exc)
    return lookup


class BrokenStore:
    """Cache store whose every operation fails."""

    async def get(self, key: str) -> str | None:
        raise RuntimeError("cache down")

    async def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        raise RuntimeError("cache down")


# ---------------------------------------------------------------------------
# normalize_geo
# ---------------------------------------------------------------------------


class TestNormalizeGeo:
    """Payload -> GeoInfo normalization."""

    def test_success_payload(self) -> None:
        assert normalize_geo(_SUCCESS) == GeoInfo(
            country="US", isp="ExampleISP", asn="AS64500 Example", city="Austin"
        )

    def test_country_name_prefix_when_code_missing(self) -> None:
        payload = {"status": "success", "country": "Germany"}
        assert normalize_geo(payload).country == "Ge"

    def test_org_used_when_isp_missing(self) -> None:
        payload = {"status": "success", "countryCode": "FR", "org": "OVH SAS"}
        assert normalize_geo(payload).isp == "OVH SAS"

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            {},
            {"status": "fail", "message": "private range"},
            {"countryCode": "US"},
            ["success"],
        ],
    )
    def test_non_success_yields_none(self, payload: object) -> None:
        assert normalize_geo(payload) is None  # type: ignore[arg-type]

    @pytest.mark.parametrize(
        "payload",
        [
            {"status": "success", "country": 12},
            {"status": "success", "countryCode": ["US"]},
            {"status": "success", "countryCode": "US", "isp": 7},
            {"status": "success", "countryCode": "US", "city": {"name": "Austin"}},
        ],
    )
    def test_wrong_typed_fields_yield_none(self, payload: dict) -> None:
        assert normalize_geo(payload) is None


# ---------------------------------------------------------------------------
# IpApiLookup
# ---------------------------------------------------------------------------


class TestIpApiLookup:
    """HTTP lookups against an ip-api compatible service."""

    @pytest.mark.asyncio
    async def test_requests_ip_with_fields(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_SUCCESS)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            payload = await IpApiLookup(client, "http://geo.test/json/").lookup("1.2.3.4")

        assert payload == _SUCCESS
        assert seen[0].url.path == "/json/1.2.3.4"
        assert seen[0].url.params["fields"] == GEO_FIELDS

    @pytest.mark.asyncio
    async def test_http_error_status_returns_none(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(429))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await IpApiLookup(client).lookup("1.2.3.4") is None

    @pytest.mark.asyncio
    async def test_non_object_body_returns_none(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[1]))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await IpApiLookup(client).lookup("1.2.3.4") is None


# ---------------------------------------------------------------------------
# MaxMindLookup
# ---------------------------------------------------------------------------


def _fake_city_response() -> SimpleNamespace:
    """Build a minimal object mimicking ``geoip2.models.City``."""
    return SimpleNamespace(
        city=SimpleNamespace(name="Frankfurt"),
        country=SimpleNamespace(name="Germany", iso_code="DE"),
    )


def _fake_asn_response() -> SimpleNamespace:
    """Build a minimal object mimicking ``geoip2.models.ASN``."""
    return SimpleNamespace(
        autonomous_system_number=24940,
        autonomous_system_organization="Hetzner Online GmbH",
    )


class TestMaxMindLookup:
    """Local GeoLite2 lookups in the ip-api payload shape."""

    @pytest.mark.asyncio
    async def test_no_paths_reports_failure(self) -> None:
        lookup = MaxMindLookup(city_db_path=None, asn_db_path=None)
        assert await lookup.lookup("1.2.3.4") == {"status": "fail"}
        lookup.close()

    @pytest.mark.asyncio
    async def test_missing_file_does_not_raise(self) -> None:
        lookup = MaxMindLookup(
            city_db_path="/nonexistent/City.mmdb",
            asn_db_path="/nonexistent/ASN.mmdb",
        )
        assert normalize_geo(await lookup.lookup("1.2.3.4")) is None
        lookup.close()

    @pytest.mark.asyncio
    @patch("phc.geoip.geoip2.database.Reader")
    async def test_combines_city_and_asn(self, mock_reader_cls: MagicMock) -> None:
        mock_instance = MagicMock()
        mock_instance.city.return_value = _fake_city_response()
        mock_instance.asn.return_value = _fake_asn_response()
        mock_reader_cls.return_value = mock_instance

        lookup = MaxMindLookup(city_db_path="/fake/City.mmdb", asn_db_path="/fake/ASN.mmdb")
        geo = normalize_geo(await lookup.lookup("1.2.3.4"))

        assert geo == GeoInfo(
            country="DE",
            isp="Hetzner Online GmbH",
            asn="AS24940 Hetzner Online GmbH",
            city="Frankfurt",
        )
        lookup.close()
        assert mock_instance.close.call_count == 2

    @pytest.mark.asyncio
    @patch("phc.geoip.geoip2.database.Reader")
    async def test_address_not_found(self, mock_reader_cls: MagicMock) -> None:
        import geoip2.errors

        mock_instance = MagicMock()
        mock_instance.city.side_effect = geoip2.errors.AddressNotFoundError("not found")
        mock_reader_cls.return_value = mock_instance

        lookup = MaxMindLookup(city_db_path="/fake/City.mmdb")
        assert await lookup.lookup("192.168.1.1") == {"status": "fail"}


# ---------------------------------------------------------------------------
# GeoResolver
# ---------------------------------------------------------------------------


class TestGeoResolver:
    """Cache-first resolution with best-effort write-back."""

    @pytest.mark.asyncio
    async def test_lookup_result_is_cached_under_both_keys(self) -> None:
        store = _geo_store()
        resolver = GeoResolver(_fake_lookup(_SUCCESS), cache=store)

        geo = await resolver.resolve("1.2.3.4", "1.2.3.4:8080")

        assert geo is not None and geo.country == "US"
        assert json.loads(await store.get("1.2.3.4:8080"))["country"] == "US"
        assert json.loads(await store.get("1.2.3.4"))["isp"] == "ExampleISP"

    @pytest.mark.asyncio
    async def test_second_resolution_uses_cache(self) -> None:
        lookup = _fake_lookup(_SUCCESS)
        resolver = GeoResolver(lookup, cache=_geo_store())

        first = await resolver.resolve("1.2.3.4", "1.2.3.4:8080")
        second = await resolver.resolve("1.2.3.4", "1.2.3.4:8080")

        assert first == second
        lookup.lookup.assert_awaited_once_with("1.2.3.4")

    @pytest.mark.asyncio
    async def test_bare_ip_entry_serves_other_ports(self) -> None:
        lookup = _fake_lookup(_SUCCESS)
        resolver = GeoResolver(lookup, cache=_geo_store())

        await resolver.resolve("1.2.3.4", "1.2.3.4:8080")
        geo = await resolver.resolve("1.2.3.4", "1.2.3.4:3128")

        assert geo is not None and geo.country == "US"
        assert lookup.lookup.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_written_with_ttl(self) -> None:
        cache = MagicMock()
        cache.get = AsyncMock(return_value=None)
        cache.put = AsyncMock()
        resolver = GeoResolver(_fake_lookup(_SUCCESS), cache=cache, ttl_seconds=86400)

        await resolver.resolve("1.2.3.4", "1.2.3.4:8080")

        keys = [call.args[0] for call in cache.put.await_args_list]
        assert keys == ["1.2.3.4:8080", "1.2.3.4"]
        for call in cache.put.await_args_list:
            assert call.kwargs["ttl_seconds"] == 86400

    @pytest.mark.asyncio
    async def test_unparseable_cache_entry_is_a_miss(self) -> None:
        store = _geo_store()
        await store.put("1.2.3.4:8080", "{not json")
        lookup = _fake_lookup(_SUCCESS)

        geo = await GeoResolver(lookup, cache=store).resolve("1.2.3.4", "1.2.3.4:8080")

        assert geo is not None and geo.country == "US"
        lookup.lookup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_wrong_typed_cache_entry_is_a_miss(self) -> None:
        store = _geo_store()
        await store.put("1.2.3.4:8080", json.dumps({"country": 5}))
        await store.put("1.2.3.4", json.dumps({"country": "DE", "isp": "Hetzner"}))
        lookup = _fake_lookup(_SUCCESS)

        geo = await GeoResolver(lookup, cache=store).resolve("1.2.3.4", "1.2.3.4:8080")

        assert geo == GeoInfo(country="DE", isp="Hetzner")
        lookup.lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_typed_payload_yields_none(self) -> None:
        store = _geo_store()
        lookup = _fake_lookup({"status": "success", "country": 12})

        geo = await GeoResolver(lookup, cache=store).resolve("1.2.3.4", "1.2.3.4:8080")

        assert geo is None
        assert await store.get("1.2.3.4") is None

    @pytest.mark.asyncio
    async def test_non_success_status_yields_none(self) -> None:
        store = _geo_store()
        resolver = GeoResolver(_fake_lookup({"status": "fail"}), cache=store)

        assert await resolver.resolve("10.0.0.1", "10.0.0.1:9999") is None
        assert await store.get("10.0.0.1") is None

    @pytest.mark.asyncio
    async def test_network_failure_yields_none(self) -> None:
        lookup = _fake_lookup(exc=httpx.ConnectError("unreachable"))
        resolver = GeoResolver(lookup, cache=_geo_store())

        assert await resolver.resolve("10.0.0.1", "10.0.0.1:9999") is None

    @pytest.mark.asyncio
    async def test_malformed_json_yields_none(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, content=b"<html>")
        )
        async with httpx.AsyncClient(transport=transport) as client:
            resolver = GeoResolver(IpApiLookup(client))
            assert await resolver.resolve("1.2.3.4", "1.2.3.4:80") is None

    @pytest.mark.asyncio
    async def test_broken_cache_is_ignored(self) -> None:
        resolver = GeoResolver(_fake_lookup(_SUCCESS), cache=BrokenStore())

        geo = await resolver.resolve("1.2.3.4", "1.2.3.4:8080")

        assert geo is not None and geo.isp == "ExampleISP"

    @pytest.mark.asyncio
    async def test_no_lookup_and_no_cache(self) -> None:
        assert await GeoResolver(None).resolve("1.2.3.4", "1.2.3.4:80") is None
