"""
Webhook authentication tests.
These protect the authentication boundary for all inbound payment data.
"""
import hashlib
import hmac
from unittest.mock import MagicMock, patch

import pytest

from ipngate.utils.webhook_signatures import (
    is_ip_allowed,
    resolve_source_ip,
    validate_hmac_sha256,
    validate_integration_signature,
)

SECRET = "whsec_test"
BODY = b'{"amount": "500.00", "transaction_id": "TX1"}'


def _sign(body: bytes = BODY, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _request(headers: dict | None = None, host: str | None = "10.0.0.5"):
    req = MagicMock()
    req.headers = headers or {}
    req.client = MagicMock(host=host) if host else None
    return req


def _integration(webhook_config: dict, bank_code: str = "generic"):
    integration = MagicMock()
    integration.bank_code = bank_code
    integration.signing_secret = webhook_config.get("signing_secret", "")
    integration.signature_header = webhook_config.get("signature_header", "X-Signature")
    integration.ip_whitelist = webhook_config.get("ip_whitelist", [])
    return integration


def _settings(app_env="test", allow_unsigned=False):
    settings = MagicMock()
    settings.app_env = app_env
    settings.allow_unsigned_webhooks = allow_unsigned
    return settings


class TestValidateHmacSha256:
    def test_valid(self):
        assert validate_hmac_sha256(SECRET, _sign(), BODY) is True

    def test_prefixed(self):
        assert validate_hmac_sha256(SECRET, f"sha256={_sign()}", BODY) is True

    def test_uppercase_hex(self):
        assert validate_hmac_sha256(SECRET, _sign().upper(), BODY) is True

    def test_tampered_body(self):
        assert validate_hmac_sha256(SECRET, _sign(), BODY + b" ") is False

    @pytest.mark.parametrize("secret,signature", [("", "abc"), (SECRET, ""), (SECRET, None)])
    def test_missing_inputs(self, secret, signature):
        assert validate_hmac_sha256(secret, signature, BODY) is False


class TestIpAllowlist:
    def test_empty_allows_all(self):
        assert is_ip_allowed("8.8.8.8", []) is True

    @pytest.mark.parametrize("ip", ["196.201.214.200", "196.201.214.1"])
    def test_cidr_match(self, ip):
        assert is_ip_allowed(ip, ["196.201.214.0/24"]) is True

    def test_exact_match(self):
        assert is_ip_allowed("196.201.213.44", ["196.201.213.44"]) is True

    def test_outside_range(self):
        assert is_ip_allowed("10.0.0.1", ["196.201.214.0/24"]) is False

    def test_unparseable_source(self):
        assert is_ip_allowed("unknown", ["196.201.214.0/24"]) is False

    def test_malformed_entry_ignored(self):
        assert is_ip_allowed("10.0.0.1", ["not-an-ip", "10.0.0.0/8"]) is True


class TestResolveSourceIp:
    PROXIES = ["10.0.0.0/24"]

    def test_socket_peer(self):
        assert resolve_source_ip(_request(), []) == "10.0.0.5"

    def test_no_client(self):
        assert resolve_source_ip(_request(host=None), []) == "unknown"

    def test_forwarded_header_ignored_without_trusted_proxies(self):
        req = _request({"x-forwarded-for": "196.201.214.200"}, host="6.6.6.6")
        assert resolve_source_ip(req, []) == "6.6.6.6"

    def test_forwarded_header_ignored_from_untrusted_peer(self):
        req = _request({"x-forwarded-for": "196.201.214.200"}, host="6.6.6.6")
        assert resolve_source_ip(req, self.PROXIES) == "6.6.6.6"

    def test_cloudflare_header_ignored(self):
        req = _request({"cf-connecting-ip": "196.201.214.200"}, host="6.6.6.6")
        assert resolve_source_ip(req, self.PROXIES) == "6.6.6.6"

    def test_trusted_proxy_hop(self):
        req = _request({"x-forwarded-for": "196.201.214.200"})
        assert resolve_source_ip(req, self.PROXIES) == "196.201.214.200"

    def test_client_supplied_hops_skipped(self):
        # Client sent the first entry; the proxy appended the real peer
        req = _request({"x-forwarded-for": "196.201.214.200, 6.6.6.6, 10.0.0.7"})
        assert resolve_source_ip(req, self.PROXIES) == "6.6.6.6"

    def test_malformed_hop_falls_back_to_peer(self):
        req = _request({"x-forwarded-for": "not-an-ip"})
        assert resolve_source_ip(req, self.PROXIES) == "10.0.0.5"

    def test_only_proxies_in_chain(self):
        req = _request({"x-forwarded-for": "10.0.0.9"})
        assert resolve_source_ip(req, self.PROXIES) == "10.0.0.5"

    def test_reads_trusted_proxies_from_settings(self):
        req = _request({"x-forwarded-for": "41.90.1.2"})
        with patch("ipngate.config.get_settings", return_value=MagicMock(trusted_proxy_list=self.PROXIES)):
            assert resolve_source_ip(req) == "41.90.1.2"


class TestValidateIntegrationSignature:
    def test_valid_signature_in_configured_header(self):
        integration = _integration({"signing_secret": SECRET, "signature_header": "X-Bank-Sig"})
        req = _request({"X-Bank-Sig": _sign()})
        with patch("ipngate.config.get_settings", return_value=_settings()):
            assert validate_integration_signature(integration, req, BODY) is True

    def test_wrong_header(self):
        integration = _integration({"signing_secret": SECRET, "signature_header": "X-Bank-Sig"})
        req = _request({"X-Signature": _sign()})
        with patch("ipngate.config.get_settings", return_value=_settings()):
            assert validate_integration_signature(integration, req, BODY) is False

    def test_unsigned_accepted_outside_production(self):
        with patch("ipngate.config.get_settings", return_value=_settings()):
            assert validate_integration_signature(_integration({}), _request(), BODY) is True

    def test_unsigned_rejected_in_production(self):
        with patch("ipngate.config.get_settings", return_value=_settings(app_env="production")):
            assert validate_integration_signature(_integration({}), _request(), BODY) is False

    def test_allowlist_substitutes_for_signature_in_production(self):
        integration = _integration({"ip_whitelist": ["196.201.214.0/24"]}, bank_code="mpesa")
        with patch("ipngate.config.get_settings", return_value=_settings(app_env="production")):
            assert validate_integration_signature(integration, _request(), BODY) is True

    def test_unsigned_override_in_production(self):
        settings = _settings(app_env="production", allow_unsigned=True)
        with patch("ipngate.config.get_settings", return_value=settings):
            assert validate_integration_signature(_integration({}), _request(), BODY) is True
