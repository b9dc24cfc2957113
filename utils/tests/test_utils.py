"""
Unit tests for the shared utilities.
Tests fixed-point money, timestamp parsing, retry policy, the concurrency limiter and logging.
"""

import asyncio
import json
import logging
import random

import pytest

from api_clients.base import APIError
from utils.limiter import ConcurrencyLimiter
from utils.logging_config import ConsoleFormatter, StructuredLogFormatter, log_event
from utils.money import (
    calculate_available_usdc_micro,
    compute_reserved_usdc_micro,
    format_usdc_micro,
    parse_usdc_to_micro,
)
from utils.retry import CallResult, ErrorKind, RetryPolicy, classify_error, guarded_call
from utils.timeparse import extract_market_end_ms, first_match, to_ms, utc_day_key
from utils.validation import is_address, same_address, to_finite_float, to_non_negative_int


class TestMoney:
    """Test fixed-point USDC conversions."""

    def test_parse_and_format(self):
        """Test exact conversions between decimal strings and micro-units."""
        assert parse_usdc_to_micro("1.5") == 1_500_000
        assert parse_usdc_to_micro("0.000001") == 1
        assert parse_usdc_to_micro(25) == 25_000_000
        assert format_usdc_micro(1_500_000) == "1.5"
        assert format_usdc_micro(25_000_000) == "25"
        assert format_usdc_micro(-1) == "-0.000001"

    def test_round_trip_at_currency_precision(self):
        """Test that values within currency precision survive a round trip."""
        for text in ("0", "0.1", "12.345678", "1000000"):
            assert format_usdc_micro(parse_usdc_to_micro(text)) == text

    def test_truncation_and_round_up(self):
        """Test that extra digits truncate unless rounding up."""
        assert parse_usdc_to_micro("1.0000001") == 1_000_000
        assert parse_usdc_to_micro("1.0000001", round_up=True) == 1_000_001
        assert parse_usdc_to_micro("1.0000000", round_up=True) == 1_000_000

    def test_unparseable_is_zero(self):
        """Test that garbage parses to zero."""
        assert parse_usdc_to_micro("abc") == 0
        assert parse_usdc_to_micro(None) == 0

    def test_reserved_counts_only_open_buys(self):
        """Test reserved collateral from open BUY orders."""
        orders = [
            {"side": "BUY", "price": "0.5", "original_size": "10", "size_matched": "0"},
            {"side": "buy", "price": "0.25", "original_size": "8", "size_matched": "4"},
            {"side": "SELL", "price": "0.9", "original_size": "100", "size_matched": "0"},
            {"side": "BUY", "price": "0.5", "original_size": "5", "size_matched": "5"},
        ]
        assert compute_reserved_usdc_micro(orders) == 6_000_000

    def test_available_never_negative(self):
        """Test available = min(balance, allowance) - reserved, floored at zero."""
        assert calculate_available_usdc_micro(100, 50, 10) == 40
        assert calculate_available_usdc_micro(10, 50, 30) == 0
        assert calculate_available_usdc_micro(0, 0, 0) == 0


class TestTimeParsing:
    """Test timestamp normalization."""

    def test_seconds_vs_milliseconds(self):
        """Test the 1e12 seconds/milliseconds heuristic."""
        assert to_ms(1_700_000_000) == 1_700_000_000_000
        assert to_ms(1_700_000_000_000) == 1_700_000_000_000
        assert to_ms("1700000000") == 1_700_000_000_000

    def test_iso_strings(self):
        """Test ISO-8601 parsing, including a trailing Z."""
        assert to_ms("2024-01-01T00:00:00Z") == 1_704_067_200_000
        assert to_ms("2024-01-01T00:00:00") == 1_704_067_200_000

    def test_invalid_values(self):
        """Test that unparseable values return None."""
        assert to_ms(None) is None
        assert to_ms("") is None
        assert to_ms("not a date") is None
        assert to_ms(float("nan")) is None
        assert to_ms(True) is None

    def test_first_match_skips_unparseable(self):
        """Test ordered field extraction."""
        record = {"endDate": "garbage", "closeTime": 1_700_000_000}
        assert first_match(record, ("endDate", "closeTime"), to_ms) == 1_700_000_000_000

    def test_market_end_priority(self):
        """Test that earlier sources win."""
        gamma = {"endDate": "2024-01-01T00:00:00Z"}
        clob = {"end_date_iso": "2025-01-01T00:00:00Z"}
        assert extract_market_end_ms(gamma, clob) == 1_704_067_200_000
        assert extract_market_end_ms(None, clob) == 1_735_689_600_000
        assert extract_market_end_ms({}, None) is None

    def test_utc_day_key(self):
        """Test UTC calendar bucketing."""
        assert utc_day_key(1_704_067_200_000) == "2024-01-01"
        assert utc_day_key(1_704_067_200_000 - 1) == "2023-12-31"


class TestValidation:
    """Test upstream field validation helpers."""

    def test_finite_float(self):
        assert to_finite_float("1.5") == 1.5
        assert to_finite_float(" ") is None
        assert to_finite_float("inf") is None
        assert to_finite_float(False) is None

    def test_non_negative_int(self):
        assert to_non_negative_int("2") == 2
        assert to_non_negative_int(1.0) == 1
        assert to_non_negative_int(-1) is None
        assert to_non_negative_int(1.5) is None

    def test_addresses(self):
        assert is_address("0x" + "a" * 40)
        assert not is_address("0x" + "a" * 39)
        assert same_address("0x" + "A" * 40, "0x" + "a" * 40)
        assert not same_address(None, "0x" + "a" * 40)


class TestRetry:
    """Test the retry policy and error classification."""

    def test_classify_error(self):
        """Test ErrorKind mapping."""
        assert classify_error(asyncio.TimeoutError()) == ErrorKind.TIMEOUT
        assert classify_error(APIError("CLOB", 401, "Unauthorized")) == ErrorKind.AUTH
        assert classify_error(RuntimeError("not enough balance / allowance")) == ErrorKind.BALANCE
        assert classify_error(APIError("Gamma", 404, "missing")) == ErrorKind.NOT_FOUND
        assert classify_error(APIError("Data", 503, "busy")) == ErrorKind.TRANSIENT
        assert classify_error(APIError("Data", 429, "slow down")) == ErrorKind.TRANSIENT
        assert classify_error(APIError("CLOB", 400, "bad order")) == ErrorKind.REJECTED
        assert classify_error(ValueError("weird")) == ErrorKind.UNKNOWN

    def test_backoff_is_bounded(self):
        """Test that jittered backoff stays within the cap."""
        policy = RetryPolicy(base_delay_s=0.5, max_delay_s=2.0, rng=random.Random(7))
        for attempt in range(1, 10):
            assert 0 <= policy.compute_backoff(attempt) <= 2.0
        assert policy.compute_backoff(0) == 0.0

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        """Test that transient failures are retried."""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise APIError("Data", 503, "busy")
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay_s=0)
        assert await policy.run(flaky) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_rejections(self):
        """Test that non-retryable errors surface immediately."""
        calls = []

        async def rejected():
            calls.append(1)
            raise APIError("CLOB", 400, "bad order")

        with pytest.raises(APIError):
            await RetryPolicy(max_attempts=5, base_delay_s=0).run(rejected)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_guarded_call_captures_failure(self):
        """Test that guarded_call converts exceptions into CallResults."""

        async def unauthorized():
            raise APIError("CLOB", 401, {"error": "Unauthorized"})

        result = await guarded_call(unauthorized)
        assert not result.ok
        assert result.kind == ErrorKind.AUTH
        assert result.status == 401
        assert result.body == {"error": "Unauthorized"}

        async def fine():
            return 42

        assert await guarded_call(fine) == CallResult.success(42)


class TestConcurrencyLimiter:
    """Test the semaphore-based limiter."""

    @pytest.mark.asyncio
    async def test_never_exceeds_limit(self):
        """Test that at most ``limit`` calls run at once."""
        limiter = ConcurrencyLimiter(2)
        peak = []

        async def work(item):
            peak.append(limiter.active)
            await asyncio.sleep(0.01)
            return item * 2

        results = await limiter.map(work, range(6))
        assert results == [0, 2, 4, 6, 8, 10]
        assert max(peak) <= 2
        assert limiter.active == 0
        assert limiter.pending == 0

    def test_rejects_invalid_limit(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)


class TestLogging:
    """Test structured log payloads."""

    def test_log_event_attaches_payload(self, caplog):
        logger = logging.getLogger("mirror.test")
        with caplog.at_level(logging.INFO, logger="mirror.test"):
            log_event(logger, logging.INFO, "order placed", {"order_id": "o1"})
            log_event(logger, logging.INFO, "no payload")

        first, second = caplog.records
        assert first.extra_data == {"order_id": "o1"}
        assert not hasattr(second, "extra_data")

    def test_formatters(self):
        record = logging.LogRecord("mirror", logging.WARNING, __file__, 1, "skipped", None, None)
        record.extra_data = {"reason": "daily-cap"}

        console = ConsoleFormatter("%(levelname)s %(message)s").format(record)
        assert console == 'WARNING skipped {"reason":"daily-cap"}'

        entry = json.loads(StructuredLogFormatter().format(record))
        assert entry["level"] == "WARNING"
        assert entry["data"] == {"reason": "daily-cap"}
