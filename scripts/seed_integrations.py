"""
Seed the provider integrations the gateway accepts IPNs for.

Creates (or updates in place) one BankIntegration per entry in INTEGRATIONS,
keyed by bank_code. Existing webhook secrets are kept unless --rotate is given.

Usage:
    python -m scripts.seed_integrations                 # dry-run
    python -m scripts.seed_integrations --commit        # apply
    python -m scripts.seed_integrations --commit --rotate
"""
import argparse
import asyncio
import logging
import secrets

from sqlalchemy import select

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

# Safaricom Daraja callback ranges
SAFARICOM_CALLBACK_IPS = [
    "196.201.214.0/24",
    "196.201.213.0/24",
    "196.201.212.0/24",
]

INTEGRATIONS = [
    {
        "bank_code": "mpesa",
        "bank_name": "Safaricom M-PESA",
        "provider_type": "mobile_money",
        "supported_currencies": ["KES"],
        "webhook_config": {"ip_whitelist": SAFARICOM_CALLBACK_IPS},
    },
    {
        "bank_code": "generic",
        "bank_name": "Generic Bank API",
        "provider_type": "bank_api",
        "supported_currencies": ["KES", "UGX", "TZS", "RWF", "USD"],
        "webhook_config": {"signature_header": "X-Signature"},
        "signed": True,
    },
]


async def seed(commit: bool, rotate: bool) -> None:
    from ipngate.database import async_session_factory
    from ipngate.models.bank_integration import BankIntegration

    async with async_session_factory() as session:
        for definition in INTEGRATIONS:
            result = await session.execute(
                select(BankIntegration).where(BankIntegration.bank_code == definition["bank_code"])
            )
            integration = result.scalar_one_or_none()

            webhook_config = dict(definition["webhook_config"])
            if definition.get("signed"):
                existing = (integration.webhook_config or {}) if integration else {}
                secret = existing.get("signing_secret")
                if not secret or rotate:
                    secret = secrets.token_hex(32)
                    logger.info("%s signing secret: %s", definition["bank_code"], secret)
                webhook_config["signing_secret"] = secret

            if integration is None:
                integration = BankIntegration(
                    bank_code=definition["bank_code"],
                    bank_name=definition["bank_name"],
                    provider_type=definition["provider_type"],
                    supported_currencies=definition["supported_currencies"],
                    webhook_config=webhook_config,
                    is_active=True,
                )
                session.add(integration)
                logger.info("Creating integration %s", definition["bank_code"])
            else:
                integration.bank_name = definition["bank_name"]
                integration.provider_type = definition["provider_type"]
                integration.supported_currencies = definition["supported_currencies"]
                integration.webhook_config = webhook_config
                logger.info("Updating integration %s", definition["bank_code"])

        if commit:
            await session.commit()
            logger.info("Seeded %d integrations", len(INTEGRATIONS))
        else:
            await session.rollback()
            logger.info("Dry run - no changes written (use --commit)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed IPN provider integrations")
    parser.add_argument("--commit", action="store_true", help="write changes")
    parser.add_argument("--rotate", action="store_true", help="generate new signing secrets")
    args = parser.parse_args()
    asyncio.run(seed(args.commit, args.rotate))


if __name__ == "__main__":
    main()
