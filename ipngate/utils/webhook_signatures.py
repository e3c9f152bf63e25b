"""
Webhook authentication - verify inbound notifications come from the provider.

Per-integration schemes (configured in BankIntegration.webhook_config):
- IP allowlist: exact addresses or CIDR blocks (Safaricom publishes its callback ranges)
- HMAC-SHA256 over the raw body, hex digest in a configurable header

Forwarded-for headers are only believed when the socket peer is a trusted proxy.
"""
import hashlib
import hmac
import ipaddress
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature
    if header_prefix and sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, sig.strip().lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def _in_networks(source_ip: str, entries) -> bool:
    try:
        addr = ipaddress.ip_address(source_ip)
    except ValueError:
        return False

    for entry in entries:
        try:
            if addr in ipaddress.ip_network(str(entry).strip(), strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed network entry: %s", entry)
    return False


def resolve_source_ip(request, trusted_proxies: Optional[list[str]] = None) -> str:
    """
    Caller address used for the allowlist and the per-IP rate limit.

    The socket peer, unless the peer is one of TRUSTED_PROXIES. Then
    X-Forwarded-For is walked from the right and the first hop that is not
    a trusted proxy wins. Hops to its left are client-supplied and ignored.
    """
    if not (request.client and request.client.host):
        return "unknown"
    peer = request.client.host

    if trusted_proxies is None:
        from ipngate.config import get_settings
        trusted_proxies = get_settings().trusted_proxy_list
    if not trusted_proxies or not _in_networks(peer, trusted_proxies):
        return peer

    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",")]
    for hop in reversed([hop for hop in hops if hop]):
        if _in_networks(hop, trusted_proxies):
            continue
        try:
            return str(ipaddress.ip_address(hop))
        except ValueError:
            logger.warning("Malformed X-Forwarded-For hop %r via %s", hop[:64], peer)
            return peer
    return peer


def is_ip_allowed(source_ip: str, whitelist: list[str]) -> bool:
    """Empty whitelist allows everyone. Entries may be single addresses or CIDR blocks."""
    if not whitelist:
        return True
    return _in_networks(source_ip, whitelist)


def validate_integration_signature(integration, request, body: bytes) -> bool:
    """
    Validate the webhook signature for an integration.
    Returns True if valid or if no secret is configured (soft enforcement
    outside production, or when ALLOW_UNSIGNED_WEBHOOKS is set).
    """
    from ipngate.config import get_settings
    settings = get_settings()

    secret = integration.signing_secret
    if not secret:
        if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
            # An IP allowlist is an accepted alternative (M-Pesa does not sign callbacks)
            if integration.ip_whitelist:
                return True
            logger.error(
                "No signing secret or ip_whitelist for '%s' in production - rejecting webhook",
                integration.bank_code,
            )
            return False
        logger.warning(
            "No signing secret configured for '%s' - accepting without signature verification",
            integration.bank_code,
        )
        return True

    signature = request.headers.get(integration.signature_header, "")
    return validate_hmac_sha256(secret, signature, body)
