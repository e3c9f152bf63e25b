"""
Tests for ipngate/services/validator.py - ordered, non-short-circuiting rules.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ipngate.errors import ValidationError
from ipngate.schemas.normalized_payment import NormalizedPayment
from ipngate.services.validator import collect_errors, validate_payment


def _integration(currencies=None, is_active=True):
    integration = MagicMock()
    integration.is_active = is_active
    integration.supported_currencies = ["KES"] if currencies is None else currencies
    return integration


def _payment(**overrides) -> NormalizedPayment:
    fields = {
        "amount": Decimal("500.00"),
        "currency": "KES",
        "bank_reference": "QWE123",
        "external_reference": "ADM-1",
        "transaction_date": datetime(2026, 10, 18, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return NormalizedPayment(**fields)


class TestCollectErrors:
    def test_valid_payment(self):
        assert collect_errors(_payment(), _integration()) == []

    def test_missing_amount(self):
        errors = collect_errors(_payment(amount=None), _integration())
        assert errors == ["Missing amount"]

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    def test_non_positive_amount(self, amount):
        errors = collect_errors(_payment(amount=amount), _integration())
        assert len(errors) == 1
        assert "greater than zero" in errors[0]

    def test_currency_not_supported_by_integration(self):
        errors = collect_errors(_payment(currency="USD"), _integration(["KES"]))
        assert len(errors) == 1
        assert "USD" in errors[0]

    def test_global_whitelist_when_integration_has_none(self):
        assert collect_errors(_payment(currency="UGX"), _integration([])) == []
        assert collect_errors(_payment(currency="EUR"), _integration([])) != []

    def test_missing_references(self):
        errors = collect_errors(
            _payment(bank_reference=None, external_reference=None), _integration()
        )
        assert errors == ["Missing transaction reference (bank_reference or external_reference)"]

    def test_either_reference_is_enough(self):
        assert collect_errors(_payment(bank_reference=None), _integration()) == []
        assert collect_errors(_payment(external_reference=None), _integration()) == []

    def test_inactive_integration(self):
        errors = collect_errors(_payment(), _integration(is_active=False))
        assert errors == ["Unknown or inactive integration"]

    def test_unknown_integration(self):
        errors = collect_errors(_payment(), None)
        assert errors[0] == "Unknown or inactive integration"

    def test_provider_failure(self):
        errors = collect_errors(
            _payment(event_type="validation_failure", result_description="Request cancelled by user"),
            _integration(),
        )
        assert errors == ["Provider reported validation_failure: Request cancelled by user"]

    def test_all_failures_collected_in_order(self):
        errors = collect_errors(
            _payment(amount=None, currency="EUR", bank_reference=None, external_reference=None,
                     event_type="timeout"),
            _integration(is_active=False),
        )
        assert len(errors) == 5
        assert errors[0] == "Unknown or inactive integration"
        assert errors[1] == "Missing amount"
        assert errors[2].startswith("Currency EUR")
        assert errors[3].startswith("Missing transaction reference")
        assert errors[4] == "Provider reported timeout"


class TestValidatePayment:
    def test_raises_with_every_error(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payment(_payment(amount=None, bank_reference=None, external_reference=None), _integration())
        assert len(exc_info.value.errors) == 2

    def test_valid_does_not_raise(self):
        validate_payment(_payment(), _integration())
