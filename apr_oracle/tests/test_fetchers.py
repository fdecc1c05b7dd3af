"""Unit tests for the APR fetchers."""

import asyncio

import httpx
import pytest

from apr_oracle.src.fetchers import (
    BaseFetcher,
    FetcherHTTPError,
    FetcherMalformedError,
    FetchErrorKind,
    LidoLastAprFetcher,
    LidoSmaAprFetcher,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)


def install_transport(handler) -> None:
    BaseFetcher.set_shared_client(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture(autouse=True)
def reset_shared_client():
    yield
    BaseFetcher.set_shared_client(None)


def json_handler(body, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    return handler


class TestRegistry:
    """Test fetcher registration."""

    def test_lido_fetchers_registered(self) -> None:
        """Both Lido fetchers should be available."""
        assert get_available_fetchers() == ["lido-last", "lido-sma"]

    def test_get_fetcher_passes_kwargs(self) -> None:
        """Constructor arguments should reach the instance."""
        fetcher = get_fetcher("lido-sma", base_url="http://provider/", timeout=3.0)
        assert isinstance(fetcher, LidoSmaAprFetcher)
        assert fetcher.url == "http://provider/v1/protocol/steth/apr/sma"
        assert fetcher.timeout == 3.0

    def test_unknown_fetcher(self) -> None:
        """Unknown names should list what is available."""
        with pytest.raises(ValueError, match="Available: lido-last, lido-sma"):
            get_fetcher("nope")

    def test_register_requires_name(self) -> None:
        """A fetcher without a name cannot be registered."""

        class Nameless(BaseFetcher):
            def _extract(self, data):
                return data

        with pytest.raises(ValueError, match="must define a 'name'"):
            register_fetcher(Nameless)


class TestLidoFetch:
    """Test successful fetches."""

    def test_last_apr_percent_to_ratio(self) -> None:
        """Percent APR should be converted to a ratio."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json={"data": {"apr": 3.1}, "meta": {"symbol": "stETH"}})

        install_transport(handler)
        result = asyncio.run(LidoLastAprFetcher().fetch())

        assert result.success
        assert result.source == "lido-last"
        assert result.value == pytest.approx(0.031)
        assert seen == ["/v1/protocol/steth/apr/last"]

    def test_sma_apr(self) -> None:
        """SMA value should be read from data.smaApr."""
        install_transport(json_handler({"data": {"smaApr": 2.95, "aprs": [{"apr": 3.0}]}}))
        result = asyncio.run(LidoSmaAprFetcher().fetch())

        assert result.success
        assert result.value == pytest.approx(0.0295)

    def test_ratio_unit(self) -> None:
        """percent_scale=1 should leave the value untouched."""
        install_transport(json_handler({"data": {"apr": 0.031}}))
        result = asyncio.run(LidoLastAprFetcher(percent_scale=1.0).fetch())
        assert result.value == 0.031

    def test_integer_value_accepted(self) -> None:
        """Integral JSON numbers are valid readings."""
        install_transport(json_handler({"data": {"apr": 4}}))
        result = asyncio.run(LidoLastAprFetcher().fetch())
        assert result.value == pytest.approx(0.04)


class TestLidoFetchFailures:
    """Test error classification."""

    def test_server_error_is_transient(self) -> None:
        """HTTP 503 should be a transient failure."""
        install_transport(json_handler({"error": "down"}, status_code=503))
        result = asyncio.run(LidoLastAprFetcher().fetch())

        assert not result.success
        assert isinstance(result.error, FetcherHTTPError)
        assert result.error.status_code == 503
        assert result.error.kind is FetchErrorKind.TRANSIENT

    def test_rate_limit_is_transient(self) -> None:
        """HTTP 429 should be a transient failure."""
        install_transport(json_handler({}, status_code=429))
        result = asyncio.run(LidoLastAprFetcher().fetch())
        assert result.error.is_transient

    def test_not_found_is_malformed(self) -> None:
        """HTTP 404 points at an API change."""
        install_transport(json_handler({}, status_code=404))
        result = asyncio.run(LidoLastAprFetcher().fetch())
        assert result.error.kind is FetchErrorKind.MALFORMED

    def test_timeout_is_transient(self) -> None:
        """Transport timeouts should be transient."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        install_transport(handler)
        result = asyncio.run(LidoLastAprFetcher().fetch())

        assert not result.success
        assert result.error.is_transient
        assert "timeout" in str(result.error).lower()

    def test_connect_error_is_transient(self) -> None:
        """Connection failures should be transient."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        install_transport(handler)
        result = asyncio.run(LidoLastAprFetcher().fetch())
        assert result.error.is_transient

    def test_invalid_json(self) -> None:
        """A non-JSON body is malformed."""
        install_transport(lambda request: httpx.Response(200, text="<html>oops</html>"))
        result = asyncio.run(LidoLastAprFetcher().fetch())
        assert isinstance(result.error, FetcherMalformedError)

    @pytest.mark.parametrize(
        "body",
        [
            {"data": {}},
            {"apr": 3.1},
            {"data": None},
            [],
        ],
    )
    def test_missing_keys(self, body) -> None:
        """Shape deviations are malformed."""
        install_transport(json_handler(body))
        result = asyncio.run(LidoLastAprFetcher().fetch())

        assert not result.success
        assert result.error.kind is FetchErrorKind.MALFORMED

    @pytest.mark.parametrize("value", ["3.1", None, True, -0.5])
    def test_bad_values(self, value) -> None:
        """Non-numeric, boolean and negative values are malformed."""
        install_transport(json_handler({"data": {"apr": value}}))
        result = asyncio.run(LidoLastAprFetcher().fetch())

        assert not result.success
        assert isinstance(result.error, FetcherMalformedError)

    def test_zero_rejected_by_default(self) -> None:
        """An exact zero is treated as a provider default, not a reading."""
        install_transport(json_handler({"data": {"apr": 0}}))
        result = asyncio.run(LidoLastAprFetcher().fetch())

        assert not result.success
        assert "Zero APR" in str(result.error)

    def test_zero_allowed_when_configured(self) -> None:
        """allow_zero makes 0.0 a legitimate reading."""
        install_transport(json_handler({"data": {"apr": 0.0}}))
        result = asyncio.run(LidoLastAprFetcher(allow_zero=True).fetch())

        assert result.success
        assert result.value == 0.0
