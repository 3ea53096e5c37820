"""Mock and live (e.Rede) gateway behavior and provider config resolution."""

import base64
import json

import httpx
import pytest

from enrollpay.services.provider_adapter.config import (
    REDE_PRODUCTION_URL,
    REDE_SANDBOX_URL,
    ProviderConfigError,
    RedeConfig,
    get_rede_config,
    normalize_env_value,
    normalize_payment_provider_mode,
    parse_timeout_ms,
)
from enrollpay.services.provider_adapter.schemas import CreditChargeRequest, GatewayResponse
from enrollpay.services.provider_adapter.service import (
    GatewayUnavailableError,
    ProviderAdapterService,
    infer_brand,
    mask_card,
    safe_json_parse,
)

from conftest import APPROVED_CARD, DECLINED_CARD, THREE_DS_CARD, make_settings

LIVE_CONFIG = RedeConfig(
    pv="12345678",
    token="secret-token",
    environment="sandbox",
    endpoint=REDE_SANDBOX_URL,
    timeout_ms=15_000,
    soft_descriptor="ENROLLPAY",
)


def charge_request(card_number: str = APPROVED_CARD, **overrides) -> CreditChargeRequest:
    values = {
        "amount": 49_900,
        "reference": "chk-python-bootcamp-0123456789abcd",
        "installments": 1,
        "card_holder_name": "MARIA SOUZA",
        "card_number": card_number,
        "expiration_month": "12",
        "expiration_year": "2030",
        "security_code": "123",
    }
    values.update(overrides)
    return CreditChargeRequest(**values)


def test_mock_approves_regular_cards():
    result = ProviderAdapterService(service_name="test").charge("mock", None, charge_request())

    assert result.ok is True
    assert result.data.return_code == "00"
    assert len(result.data.authorization_code) == 6
    assert result.data.brand == "Visa"
    assert result.data.raw["mock"] is True
    assert result.data.raw["mockMaskedCard"] == "424242******4242"


def test_mock_declines_cards_ending_0000():
    result = ProviderAdapterService(service_name="test").charge("mock", None, charge_request(DECLINED_CARD))

    assert result.data.return_code == "05"
    assert result.data.three_d_secure_url is None


def test_mock_requires_authentication_for_cards_ending_1111():
    request = charge_request(THREE_DS_CARD)
    result = ProviderAdapterService(service_name="test").charge("mock", None, request)

    assert result.data.return_code == "220"
    assert result.data.three_d_secure_url == f"https://mock-gateway.local/3ds/{request.reference}"


def test_mock_rejects_short_card_numbers():
    result = ProviderAdapterService(service_name="test").charge("mock", None, charge_request("424242"))

    assert result.ok is False
    assert result.http_status == 422
    assert result.data.return_code == "14"


def test_charge_request_repr_hides_card_data():
    text = repr(charge_request())

    assert APPROVED_CARD not in text
    assert "security_code" not in text


def test_live_charge_sends_basic_auth_and_provider_field_names():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(
            200,
            json={
                "tid": "TID123",
                "reference": "chk-python-bootcamp-0123456789abcd",
                "returnCode": "00",
                "returnMessage": "Success.",
                "authorizationCode": "A1B2C3",
                "brand": {"name": "Visa"},
            },
        )

    gateway = ProviderAdapterService(transport=httpx.MockTransport(handler), service_name="test")
    result = gateway.charge("rede", LIVE_CONFIG, charge_request())

    request = seen["request"]
    expected_auth = base64.b64encode(b"12345678:secret-token").decode()
    body = json.loads(request.content)
    assert str(request.url) == REDE_SANDBOX_URL
    assert request.headers["authorization"] == f"Basic {expected_auth}"
    assert request.headers["transaction-response"] == "brand-return-opened"
    assert body["cardNumber"] == APPROVED_CARD
    assert body["kind"] == "credit"
    assert body["capture"] is True
    assert body["softDescriptor"] == "ENROLLPAY"
    assert result.ok is True
    assert result.data.tid == "TID123"
    assert result.data.brand == "Visa"


def test_live_charge_returns_unauthorized_answer_as_result():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(401, json={"returnCode": "25", "returnMessage": "Invalid credentials"})
    )
    result = ProviderAdapterService(transport=transport, service_name="test").charge(
        "rede", LIVE_CONFIG, charge_request()
    )

    assert result.ok is False
    assert result.http_status == 401
    assert result.data.return_code == "25"


def test_live_charge_tolerates_malformed_body():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="<html>gateway error</html>"))
    result = ProviderAdapterService(transport=transport, service_name="test").charge(
        "rede", LIVE_CONFIG, charge_request()
    )

    assert result.http_status == 500
    assert result.data.return_code == ""
    assert result.data.raw == {}


def test_live_charge_timeout_raises_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    gateway = ProviderAdapterService(transport=httpx.MockTransport(handler), service_name="test")
    with pytest.raises(GatewayUnavailableError):
        gateway.charge("rede", LIVE_CONFIG, charge_request())


def test_gateway_response_reads_three_d_secure_and_string_brand():
    data = GatewayResponse.from_payload(
        {"returnCode": "220", "brand": "Mastercard", "threeDSecure": {"url": "https://acs.example/3ds"}}
    )

    assert data.brand == "Mastercard"
    assert data.three_d_secure_url == "https://acs.example/3ds"


def test_helpers():
    assert safe_json_parse("[1, 2]") == {}
    assert safe_json_parse("") == {}
    assert mask_card("5555 5555 5555 4444") == "555555******4444"
    assert infer_brand("5555555555554444") == "Mastercard"
    assert infer_brand("378282246310005") == "Amex"
    assert infer_brand("9999") == "Unknown"


def test_provider_mode_normalization():
    assert normalize_payment_provider_mode("") == "mock"
    assert normalize_payment_provider_mode(" 'REAL' ") == "rede"
    with pytest.raises(ProviderConfigError):
        normalize_payment_provider_mode("paypal")


def test_timeout_parsing_defaults_and_clamps():
    assert parse_timeout_ms("abc") == 15_000
    assert parse_timeout_ms("10") == 1_000
    assert parse_timeout_ms("120000") == 60_000
    assert parse_timeout_ms('"8000"') == 8_000


def test_env_values_lose_quotes_and_escaped_newlines():
    assert normalize_env_value('"token-value\\n"') == "token-value"


def test_rede_config_requires_credentials():
    with pytest.raises(ProviderConfigError):
        get_rede_config(make_settings(rede_pv="", rede_token="tok"))
    with pytest.raises(ProviderConfigError):
        get_rede_config(make_settings(rede_pv="123", rede_token=""))
    with pytest.raises(ProviderConfigError):
        get_rede_config(make_settings(rede_pv="123", rede_token="tok", rede_env="staging"))


def test_rede_config_production_endpoint():
    config = get_rede_config(
        make_settings(rede_pv="PV 1234-5", rede_token="tok", rede_env="prod", rede_soft_descriptor="X" * 40)
    )

    assert config.pv == "12345"
    assert config.environment == "production"
    assert config.endpoint == REDE_PRODUCTION_URL
    assert config.soft_descriptor == "X" * 22
