"""Tests for STK push payload construction."""

import base64
from datetime import datetime, timezone

import pytest

from app.gateway.errors import ConfigError, ValidationError
from app.gateway.request_builder import (
    build_push_payload,
    gateway_timestamp,
    mask_msisdn,
    normalize_msisdn,
    stk_password,
)
from app.models.enums import TransactionMode

FIXED_NOW = datetime(2025, 1, 1, 9, 30, 15, tzinfo=timezone.utc)  # 12:30:15 EAT


class TestPhoneNormalization:
    def test_local_trunk_prefix(self):
        assert normalize_msisdn("0712345678") == "254712345678"

    def test_bare_subscriber_number(self):
        assert normalize_msisdn("712345678") == "254712345678"

    def test_already_international(self):
        assert normalize_msisdn("254712345678") == "254712345678"

    def test_plus_and_spaces_stripped(self):
        assert normalize_msisdn("+254 712-345-678") == "254712345678"

    def test_new_01_range(self):
        assert normalize_msisdn("0112345678") == "254112345678"

    def test_international_truncated_to_twelve_digits(self):
        assert normalize_msisdn("2547123456789999") == "254712345678"

    def test_garbage_passes_through_truncated(self):
        assert normalize_msisdn("123") == "123"

    def test_none(self):
        assert normalize_msisdn(None) == ""


class TestMasking:
    def test_full_msisdn_never_logged(self):
        masked = mask_msisdn("254712345678")
        assert masked == "254******678"
        assert "712345" not in masked

    def test_short_values_fully_masked(self):
        assert mask_msisdn("1234") == "****"

    def test_empty(self):
        assert mask_msisdn(None) == ""


class TestPassword:
    def test_base64_of_concatenation(self):
        password = stk_password("174379", "passkey", "20250101123015")
        assert base64.b64decode(password) == b"174379passkey20250101123015"

    def test_reproducible(self):
        assert stk_password("1", "2", "3") == stk_password("1", "2", "3")

    def test_timestamp_is_fourteen_digits_in_gateway_time(self):
        assert gateway_timestamp(FIXED_NOW) == "20250101123015"


class TestBuildPayload:
    def test_valid_payload(self, settings):
        payload = build_push_payload(10, "0700000001", settings=settings, now=FIXED_NOW)

        assert payload.amount == 10
        assert payload.phone == "254700000001"
        assert payload.timestamp == "20250101123015"
        assert payload.password == stk_password("174379", "test-passkey", "20250101123015")
        assert payload.transaction_type == "CustomerPayBillOnline"
        assert payload.mode == TransactionMode.PAYBILL

    def test_wire_body(self, settings):
        body = build_push_payload(10, "0700000001", "ORDER-1", "Order", settings=settings, now=FIXED_NOW).to_json()

        assert body["BusinessShortCode"] == 174379
        assert body["PartyA"] == 254700000001
        assert body["PartyB"] == 174379
        assert body["PhoneNumber"] == 254700000001
        assert body["CallBackURL"] == "https://shop.example.com/api/mpesa/callback"
        assert body["AccountReference"] == "ORDER-1"
        assert body["TransactionDesc"] == "Order"
        assert body["Amount"] == 10

    def test_fractional_amount_rounded(self, settings):
        assert build_push_payload(10.6, "0700000001", settings=settings).amount == 11

    def test_numeric_string_amount(self, settings):
        assert build_push_payload("25", "0700000001", settings=settings).amount == 25

    def test_reference_and_description_truncated(self, settings):
        payload = build_push_payload(
            10, "0700000001", reference="R" * 40, description="D" * 80, settings=settings
        )
        assert payload.account_reference == "R" * 12
        assert payload.description == "D" * 32

    def test_empty_reference_and_description_get_placeholders(self, settings):
        payload = build_push_payload(10, "0700000001", reference="  ", description="", settings=settings)
        assert payload.account_reference == "CHECKOUT"
        assert payload.description == "Payment"

    def test_mode_override(self, settings):
        payload = build_push_payload(10, "0700000001", mode="till", settings=settings)
        assert payload.mode == TransactionMode.TILL
        assert payload.transaction_type == "CustomerBuyGoodsOnline"

    def test_mode_default_from_settings(self, settings):
        till_settings = settings.model_copy(update={"mpesa_mode": "till"})
        payload = build_push_payload(10, "0700000001", settings=till_settings)
        assert payload.transaction_type == "CustomerBuyGoodsOnline"


class TestValidation:
    @pytest.mark.parametrize("amount", [0, -5, 0.4, None, "abc", float("nan"), float("inf"), True])
    def test_invalid_amount(self, settings, amount):
        with pytest.raises(ValidationError, match="invalid amount"):
            build_push_payload(amount, "0700000001", settings=settings)

    @pytest.mark.parametrize("phone", ["123", "", "0812345678", "254812345678", "25471234"])
    def test_invalid_phone(self, settings, phone):
        with pytest.raises(ValidationError, match="invalid phone"):
            build_push_payload(10, phone, settings=settings)

    def test_invalid_mode(self, settings):
        with pytest.raises(ValidationError, match="invalid mode"):
            build_push_payload(10, "0700000001", mode="cash", settings=settings)

    def test_amount_checked_before_phone(self, settings):
        with pytest.raises(ValidationError, match="invalid amount"):
            build_push_payload(0, "123", settings=settings)

    def test_missing_passkey_is_config_error(self, settings):
        broken = settings.model_copy(update={"mpesa_passkey": ""})
        with pytest.raises(ConfigError, match="mpesa_passkey"):
            build_push_payload(10, "0700000001", settings=broken)

    def test_missing_callback_url_is_config_error(self, settings):
        broken = settings.model_copy(update={"mpesa_callback_url": ""})
        with pytest.raises(ConfigError):
            build_push_payload(10, "0700000001", settings=broken)
