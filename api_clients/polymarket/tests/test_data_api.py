"""
Tests for the Polymarket Data, Gamma and CLOB read clients.
"""

import pytest
from unittest.mock import AsyncMock, patch

from api_clients.base import OrderSide
from api_clients.polymarket import PolymarketAPIClient
from api_clients.polymarket.clob import CLOBAPIClient
from api_clients.polymarket.data_api import DataAPIClient, parse_position, trade_timestamp_ms
from api_clients.polymarket.gamma import GammaAPIClient, GeoblockResult, parse_clob_token_ids


WALLET = "0x" + "a" * 40
COND = "0x" + "c" * 64


class TestDataAPIClient:
    """Tests for DataAPIClient."""

    @pytest.fixture
    def data_client(self):
        """Create Data API client."""
        return DataAPIClient()

    @pytest.mark.asyncio
    async def test_fetch_trades(self, data_client):
        """Test the trades query and envelope unwrapping."""
        rows = [{"transactionHash": "0x1"}, {"transactionHash": "0x2"}]
        with patch.object(data_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"data": rows}

            result = await data_client.fetch_trades(WALLET, limit=100, offset=200)

            assert result == rows
            mock_request.assert_called_once_with(
                "GET",
                "/trades",
                params={"user": WALLET, "limit": 100, "offset": 200, "takerOnly": "false"},
            )

    @pytest.mark.asyncio
    async def test_fetch_trades_unexpected_payload(self, data_client):
        with patch.object(data_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = "oops"
            assert await data_client.fetch_trades(WALLET) == []

    @pytest.mark.asyncio
    async def test_fetch_positions_for_market(self, data_client):
        mock_response = [
            {
                "conditionId": COND,
                "outcomeIndex": 1,
                "size": "12.5",
                "cashPnl": -3.0,
                "title": "Will BTC hit 100k?",
                "asset": "222",
            }
        ]
        with patch.object(data_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = mock_response

            [position] = await data_client.fetch_positions(WALLET, COND)

            assert position.condition_id == COND
            assert position.outcome_index == 1
            assert position.size == 12.5
            assert position.cash_pnl == -3.0
            assert position.asset == "222"
            assert mock_request.call_args.kwargs["params"]["market"] == COND

    @pytest.mark.asyncio
    async def test_closed_positions_paginate_until_since(self, data_client):
        """Test that paging stops once a position older than ``since_ms`` appears."""
        pages = [
            [{"conditionId": "a", "timestamp": 1_700_000_300}, {"conditionId": "b", "timestamp": 1_700_000_200}],
            [{"conditionId": "c", "timestamp": 1_700_000_100}, {"conditionId": "d", "timestamp": 1_600_000_000}],
            [{"conditionId": "e", "timestamp": 1_500_000_000}],
        ]
        with patch.object(data_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = pages

            result = await data_client.fetch_closed_positions(
                WALLET, since_ms=1_700_000_000_000, page_size=2, max_pages=5
            )

            assert [p.condition_id for p in result] == ["a", "b", "c", "d"]
            assert mock_request.call_count == 2
            assert mock_request.call_args.kwargs["params"]["offset"] == 2

    @pytest.mark.asyncio
    async def test_closed_positions_single_page_without_since(self, data_client):
        with patch.object(data_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = [{"conditionId": "a"}, {"conditionId": "b"}]
            result = await data_client.fetch_closed_positions(WALLET, page_size=2)
            assert len(result) == 2
            assert mock_request.call_count == 1

    def test_parse_position_alternate_fields(self):
        position = parse_position(
            {"condition_id": "x", "outcome_index": "0", "realized_pnl": "4.5", "total_bought": 9, "endDate": "2024-01-01T00:00:00Z"}
        )
        assert position.condition_id == "x"
        assert position.outcome_index == 0
        assert position.realized_pnl == 4.5
        assert position.total_bought == 9.0
        assert position.timestamp_ms == 1_704_067_200_000

    def test_trade_timestamp(self):
        assert trade_timestamp_ms({"timestamp": 1_700_000_000}) == 1_700_000_000_000
        assert trade_timestamp_ms({}) is None


class TestGammaAPIClient:
    """Tests for GammaAPIClient."""

    @pytest.fixture
    def gamma_client(self):
        return GammaAPIClient()

    def test_parse_clob_token_ids(self):
        assert parse_clob_token_ids('["1", "2"]') == ["1", "2"]
        assert parse_clob_token_ids(["1", 2]) == ["1", "2"]
        assert parse_clob_token_ids("1, 2") == ["1", "2"]
        assert parse_clob_token_ids("  ") == []
        assert parse_clob_token_ids(None) == []

    @pytest.mark.asyncio
    async def test_market_by_condition(self, gamma_client):
        market = {"conditionId": COND, "clobTokenIds": '["111", "222"]'}
        with patch.object(gamma_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = [market]

            assert await gamma_client.get_market_by_condition(COND) == market
            assert await gamma_client.get_token_ids(COND) == ["111", "222"]
            assert mock_request.call_args.kwargs["params"]["condition_ids"] == COND

    @pytest.mark.asyncio
    async def test_unknown_market(self, gamma_client):
        with patch.object(gamma_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"markets": []}
            assert await gamma_client.get_market_by_condition(COND) is None
            assert await gamma_client.get_token_ids(COND) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"blocked": True, "reason": "US"}, GeoblockResult(blocked=True, reason="US")),
            ({"geoBlocked": False}, GeoblockResult(blocked=False)),
            (True, GeoblockResult(blocked=True)),
            ("unexpected", GeoblockResult(blocked=False)),
        ],
    )
    async def test_check_geoblock(self, gamma_client, payload, expected):
        with patch.object(gamma_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = payload
            assert await gamma_client.check_geoblock() == expected


class TestCLOBAPIClient:
    """Tests for the public CLOB endpoints."""

    @pytest.fixture
    def clob_client(self):
        return CLOBAPIClient()

    @pytest.mark.asyncio
    async def test_order_book(self, clob_client):
        payload = {
            "asset_id": "222",
            "bids": [{"price": "0.48", "size": "10"}],
            "asks": [{"price": "0.52", "size": "5"}],
            "tick_size": "0.01",
            "min_order_size": 5,
            "neg_risk": True,
        }
        with patch.object(clob_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = payload

            book = await clob_client.get_order_book("222")

            assert book.get_best_bid() == 0.48
            assert book.get_best_ask() == 0.52
            assert book.tick_size == "0.01"
            assert book.min_order_size == "5"
            assert book.neg_risk

    @pytest.mark.asyncio
    async def test_order_book_bad_payload(self, clob_client):
        with patch.object(clob_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = []
            with pytest.raises(ValueError):
                await clob_client.get_order_book("222")

    @pytest.mark.asyncio
    async def test_price(self, clob_client):
        with patch.object(clob_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {"price": "0.515"}
            assert await clob_client.get_price("222", OrderSide.BUY) == 0.515
            assert mock_request.call_args.kwargs["params"] == {"token_id": "222", "side": "BUY"}

            mock_request.return_value = "0.4"
            assert await clob_client.get_price("222", OrderSide.SELL) == 0.4

    @pytest.mark.asyncio
    async def test_market(self, clob_client):
        with patch.object(clob_client, '_request', new_callable=AsyncMock) as mock_request:
            mock_request.return_value = {}
            assert await clob_client.get_market(COND) is None
            mock_request.assert_called_once_with("GET", f"/markets/{COND}")


class TestPolymarketAPIClient:
    """Tests for the combined client."""

    @pytest.mark.asyncio
    async def test_delegates_to_sub_clients(self):
        client = PolymarketAPIClient(clob_host="https://clob.example.com/")
        assert client.clob.base_url == "https://clob.example.com"

        with patch.object(client.gamma, 'get_market_by_condition', new_callable=AsyncMock) as gamma_call, \
             patch.object(client.clob, 'get_price', new_callable=AsyncMock) as price_call:
            gamma_call.return_value = {"conditionId": COND}
            price_call.return_value = 0.5

            assert await client.get_market_metadata(COND) == {"conditionId": COND}
            assert await client.get_indicative_price("222", OrderSide.BUY) == 0.5
            price_call.assert_called_once_with("222", OrderSide.BUY)

        await client.close()
