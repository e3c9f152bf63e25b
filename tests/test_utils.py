"""
Tests for ipngate/utils - rate limiter, alerting, structured logging.
"""
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ipngate.utils import alerting
from ipngate.utils.alerting import AlertType, send_alert
from ipngate.utils.logging import (
    StructuredJsonFormatter,
    generate_correlation_id,
    get_correlation_id,
    redact_msisdns,
    set_correlation_id,
)
from ipngate.utils.rate_limiter import (
    check_integration_rate_limit,
    check_rate_limit,
    check_source_rate_limit,
)


def _pipeline(hits: int, oldest_score: float | None = None):
    pipe = MagicMock()
    oldest = [("m", oldest_score)] if oldest_score is not None else []
    pipe.execute = AsyncMock(return_value=[0, 1, hits, oldest, True])
    return pipe


class TestRateLimiter:
    async def test_under_limit(self, mock_redis):
        mock_redis.pipeline = MagicMock(return_value=_pipeline(3))
        assert await check_rate_limit("k", limit=5) == (True, None)

    async def test_at_limit_allowed(self, mock_redis):
        mock_redis.pipeline = MagicMock(return_value=_pipeline(5))
        assert await check_rate_limit("k", limit=5) == (True, None)

    async def test_over_limit_retry_after_oldest_hit(self, mock_redis):
        now = 1_800_000_000.0
        mock_redis.pipeline = MagicMock(return_value=_pipeline(6, oldest_score=now - 50))
        with patch("ipngate.utils.rate_limiter.time.time", return_value=now):
            allowed, retry_after = await check_rate_limit("k", limit=5, window=60)
        assert allowed is False
        assert retry_after == 11

    async def test_redis_down_fails_open(self, mock_redis):
        # pipeline() raises in the default fixture
        assert await check_rate_limit("k", limit=5) == (True, None)

    async def test_source_bucket_key(self, mock_redis):
        pipe = _pipeline(1)
        mock_redis.pipeline = MagicMock(return_value=pipe)

        await check_source_rate_limit("196.201.214.200")

        assert pipe.zadd.call_args.args[0] == "ipngate:ratelimit:ip:196.201.214.200"

    async def test_integration_bucket_uses_configured_limit(self, mock_redis):
        integration = MagicMock(bank_code="mpesa", rate_limit_per_minute=2)
        mock_redis.pipeline = MagicMock(return_value=_pipeline(3, oldest_score=None))

        allowed, _ = await check_integration_rate_limit(integration)

        assert allowed is False
        assert mock_redis.pipeline.return_value.zadd.call_args.args[0] == "ipngate:ratelimit:ipn:mpesa"

    async def test_integration_bucket_default_limit(self, mock_redis):
        integration = MagicMock(bank_code="generic", rate_limit_per_minute=None)
        mock_redis.pipeline = MagicMock(return_value=_pipeline(250))
        assert await check_integration_rate_limit(integration) == (True, None)


class TestAlerting:
    @pytest.fixture(autouse=True)
    def _clear_local(self):
        alerting._local_cooldowns.clear()
        yield
        alerting._local_cooldowns.clear()

    async def test_logs_when_cooldown_acquired(self, mock_redis, caplog):
        with caplog.at_level(logging.ERROR, logger="ipngate.utils.alerting"):
            await send_alert(AlertType.DISPATCH_FAILED, "queue down")
        assert "ALERT [dispatch_failed]: queue down" in caplog.text
        mock_redis.set.assert_awaited_once()
        assert mock_redis.set.call_args.kwargs == {"nx": True, "ex": 300}

    async def test_suppressed_during_cooldown(self, mock_redis, caplog):
        mock_redis.set.return_value = None
        with caplog.at_level(logging.ERROR, logger="ipngate.utils.alerting"):
            await send_alert(AlertType.DISPATCH_FAILED, "queue down")
        assert "ALERT" not in caplog.text

    async def test_override_cooldown(self, mock_redis):
        await send_alert(AlertType.WEBHOOK_SIGNATURE_INVALID, "bad sig")
        assert mock_redis.set.call_args.kwargs["ex"] == 900

    async def test_in_memory_fallback(self, mock_redis, caplog):
        mock_redis.set.side_effect = ConnectionError("redis down")
        with caplog.at_level(logging.ERROR, logger="ipngate.utils.alerting"):
            await send_alert(AlertType.WORKER_ERROR, "first")
            await send_alert(AlertType.WORKER_ERROR, "second")
        assert "first" in caplog.text
        assert "second" not in caplog.text

    async def test_posts_to_webhook(self, mock_redis):
        settings = MagicMock(alert_webhook_url="https://hooks.example.test/alerts")
        client = MagicMock()
        client.post = AsyncMock()
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)

        with (
            patch("ipngate.config.get_settings", return_value=settings),
            patch("httpx.AsyncClient", return_value=client),
        ):
            await send_alert(AlertType.IPN_PERSISTENCE_FAILED, "db down", severity="critical", extra={"bank_code": "mpesa"})

        url = client.post.call_args.args[0]
        content = client.post.call_args.kwargs["json"]["content"]
        assert url == "https://hooks.example.test/alerts"
        assert "[CRITICAL] **ipn_persistence_failed**" in content
        assert "`bank_code: mpesa`" in content

    def test_alert_content_layout(self):
        content = alerting.format_alert_content(
            AlertType.RECONCILIATION_EXHAUSTED, "gave up", "error", "cid-9", {"event_id": "e1"},
        )
        assert content.splitlines() == [
            "[ERROR] **reconciliation_exhausted**",
            "gave up",
            "`correlation_id: cid-9`",
            "`event_id: e1`",
        ]


class TestStructuredLogging:
    def test_json_line_with_extras(self):
        set_correlation_id("cid-123")
        record = logging.LogRecord("ipngate.test", logging.INFO, __file__, 1, "IPN %s queued", ("abc",), None)
        record.event_id = "abc"
        record.bank_code = "mpesa"

        line = json.loads(StructuredJsonFormatter().format(record))

        assert line["message"] == "IPN abc queued"
        assert line["correlation_id"] == "cid-123"
        assert line["event_id"] == "abc"
        assert line["bank_code"] == "mpesa"
        set_correlation_id(None)

    def test_correlation_ids(self):
        cid = generate_correlation_id()
        assert len(cid) == 32
        set_correlation_id(cid)
        assert get_correlation_id() == cid
        set_correlation_id(None)

    def test_service_field(self):
        record = logging.LogRecord("ipngate.test", logging.WARNING, __file__, 1, "slow", (), None)
        line = json.loads(StructuredJsonFormatter().format(record))
        assert line["service"] == "ipn-gateway"
        assert line["level"] == "WARNING"

    @pytest.mark.parametrize("raw,expected", [
        ("paid by 254712345678", "paid by ********5678"),
        ("paid by +254112345678", "paid by *********5678"),
        ("paid by 0712345678", "paid by ******5678"),
        ("amount 1500.00 ref QWE1234567", "amount 1500.00 ref QWE1234567"),
        ("epoch 1700000000", "epoch 1700000000"),
    ])
    def test_msisdn_redaction(self, raw, expected):
        assert redact_msisdns(raw) == expected

    def test_formatter_masks_phone_in_message(self):
        record = logging.LogRecord("ipngate.test", logging.INFO, __file__, 1, "sender %s", ("254712345678",), None)
        line = json.loads(StructuredJsonFormatter().format(record))
        assert "254712345678" not in line["message"]
        assert line["message"].endswith("5678")
