"""Tests for pricing, currency formatting and reference generation."""

import re

import pytest

from services.shared.errors import InvalidPaymentIntent, InvalidQuantity
from services.shared.pricing import (
    PRICE_PER_VOTE,
    format_price,
    generate_reference,
    is_valid_email,
    payment_intent_errors,
    price,
)
from services.vote_api.gateway import PaymentIntent


class TestPrice:

    @pytest.mark.parametrize("votes", [1, 5, 999, 1000, 123456])
    def test_price_is_votes_times_unit_price(self, votes):
        assert price(votes) == votes * PRICE_PER_VOTE

    def test_default_unit_price_is_100_naira_in_kobo(self):
        assert price(5) == 50000

    def test_custom_unit_price(self):
        assert price(3, price_per_vote=250) == 750

    @pytest.mark.parametrize("votes", [0, -1, -100])
    def test_quantity_below_one_rejected(self, votes):
        with pytest.raises(InvalidQuantity):
            price(votes)

    @pytest.mark.parametrize("votes", [1.5, "5", None, True])
    def test_non_integer_quantity_rejected(self, votes):
        with pytest.raises(InvalidQuantity):
            price(votes)


class TestFormatPrice:

    def test_naira(self):
        assert format_price(50000) == "₦500.00"

    def test_minor_units_and_thousands(self):
        assert format_price(123456789) == "₦1,234,567.89"

    def test_zero(self):
        assert format_price(0) == "₦0.00"

    def test_unknown_currency_uses_code(self):
        assert format_price(1050, "EUR") == "EUR 10.50"


class TestGenerateReference:

    def test_format(self):
        reference = generate_reference()
        assert re.fullmatch(r"VOTE_\d{13,}_[A-Z0-9]{12}", reference)

    def test_uppercased(self):
        assert generate_reference("vote").startswith("VOTE_")

    def test_unique_in_tight_loop(self):
        references = [generate_reference() for _ in range(10_000)]
        assert len(set(references)) == len(references)


class TestPaymentIntent:

    @pytest.mark.parametrize("email", ["fan@example.com", "a.b+c@sub.example.ng"])
    def test_valid_email(self, email):
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["", None, "fan", "fan@example", "fan @example.com", "@example.com"])
    def test_invalid_email(self, email):
        assert not is_valid_email(email)

    def test_valid_intent_has_no_errors(self):
        assert payment_intent_errors("fan@example.com", 10000, "VOTE_1_ABC") == []

    def test_all_violations_reported(self):
        with pytest.raises(InvalidPaymentIntent) as exc_info:
            PaymentIntent(email="not-an-email", amount=0, reference="").validate()

        assert exc_info.value.errors == [
            "Invalid email format",
            "Amount must be greater than 0",
            "Transaction reference is required",
        ]

    def test_missing_email_reported_once(self):
        errors = payment_intent_errors("", 10000, "VOTE_1_ABC")
        assert errors == ["Email is required"]
