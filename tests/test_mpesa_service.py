import base64
import json
from datetime import datetime

import pytest
import requests
from zetech.config import Settings
from zetech.errors import (
    GatewayConfigurationError,
    UpstreamAuthError,
    UpstreamRequestError,
    UpstreamSchemaError,
)
from zetech.mpesa_service import DarajaClient, account_reference, get_gateway, normalize_phone

SETTINGS = Settings(
    daraja_consumer_key="key",
    daraja_consumer_secret="secret",
    daraja_passkey="passkey",
    daraja_shortcode="174379",
    mpesa_callback_url="https://example.com/mpesa/callback",
    gateway_timeout_seconds=5,
)


def fake_response(mocker, status_code=200, body=None, text=None):
    response = mocker.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    response.text = text if text is not None else json.dumps(body)
    return response


@pytest.fixture
def token(mocker):
    return mocker.patch(
        "zetech.mpesa_service.requests.get",
        return_value=fake_response(mocker, body={"access_token": "tok_123", "expires_in": "3599"}),
    )


@pytest.mark.parametrize("raw, expected", [
    ("0712345678", "254712345678"),
    ("+254712345678", "254712345678"),
    ("254712345678", "254712345678"),
    ("712345678", "254712345678"),
    (" 0712 345 678 ", "254712345678"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_timestamp_format():
    assert DarajaClient.timestamp(datetime(2024, 1, 5, 9, 3, 7)) == "20240105090307"


def test_build_password():
    client = DarajaClient(SETTINGS)

    password = client.build_password("20240105090307")

    assert base64.b64decode(password).decode() == "174379passkey20240105090307"


def test_access_token_uses_basic_auth(token):
    assert DarajaClient(SETTINGS).get_access_token() == "tok_123"

    token.assert_called_once()
    assert token.call_args.kwargs["auth"] == ("key", "secret")
    assert token.call_args.kwargs["params"] == {"grant_type": "client_credentials"}
    assert token.call_args.kwargs["timeout"] == 5


def test_access_token_rejected(mocker):
    mocker.patch("zetech.mpesa_service.requests.get", return_value=fake_response(mocker, status_code=401, body={}))

    with pytest.raises(UpstreamAuthError):
        DarajaClient(SETTINGS).get_access_token()


def test_access_token_missing_from_body(mocker):
    mocker.patch(
        "zetech.mpesa_service.requests.get",
        return_value=fake_response(mocker, body={"error_description": "Bad client"}),
    )

    with pytest.raises(UpstreamAuthError, match="Bad client"):
        DarajaClient(SETTINGS).get_access_token()


def test_access_token_network_error(mocker):
    mocker.patch("zetech.mpesa_service.requests.get", side_effect=requests.ConnectionError("down"))

    with pytest.raises(UpstreamRequestError):
        DarajaClient(SETTINGS).get_access_token()


def test_missing_credentials():
    with pytest.raises(GatewayConfigurationError):
        DarajaClient(Settings(daraja_consumer_key="")).get_access_token()


def test_stk_push_payload(mocker, token):
    post = mocker.patch("zetech.mpesa_service.requests.post", return_value=fake_response(mocker, body={
        "MerchantRequestID": "m-1",
        "CheckoutRequestID": "ws_CO_1",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
    }))

    result = DarajaClient(SETTINGS).stk_push("254712345678", 100, "API_KEY_u1", "Payment for 1_week API key")

    assert result.accepted
    assert result.checkout_request_id == "ws_CO_1"
    payload = post.call_args.kwargs["json"]
    assert payload["TransactionType"] == "CustomerPayBillOnline"
    assert payload["BusinessShortCode"] == "174379"
    assert payload["PartyB"] == "174379"
    assert payload["AccountReference"] == "API_KEY_u1"
    assert len(payload["Timestamp"]) == 14


def test_stk_push_rate_limited(mocker, token):
    mocker.patch(
        "zetech.mpesa_service.requests.post",
        return_value=fake_response(mocker, status_code=429, body={
            "fault": {"faultstring": "Spike arrest violation. Allowed rate : MessageRate{messagesPerPeriod=5}"},
        }),
    )

    with pytest.raises(UpstreamRequestError) as excinfo:
        DarajaClient(SETTINGS).stk_push("254712345678", 100, "ref", "desc")

    assert excinfo.value.rate_limited is True
    assert excinfo.value.status_code == 429


def test_stk_push_non_json_error(mocker, token):
    mocker.patch(
        "zetech.mpesa_service.requests.post",
        return_value=fake_response(mocker, status_code=503, body=ValueError("no json"), text="<html>"),
    )

    with pytest.raises(UpstreamRequestError, match="503"):
        DarajaClient(SETTINGS).stk_push("254712345678", 100, "ref", "desc")


def test_stk_query_pending_is_returned_not_raised(mocker, token):
    mocker.patch("zetech.mpesa_service.requests.post", return_value=fake_response(mocker, status_code=500, body={
        "requestId": "r-1",
        "errorCode": "500.001.1001",
        "errorMessage": "The transaction is being processed",
    }))

    result = DarajaClient(SETTINGS).stk_query("ws_CO_1")

    assert result.has_result is False
    assert result.error_message == "The transaction is being processed"


def test_stk_query_result_code_is_numeric(mocker, token):
    mocker.patch("zetech.mpesa_service.requests.post", return_value=fake_response(mocker, body={
        "ResponseCode": "0",
        "CheckoutRequestID": "ws_CO_1",
        "ResultCode": "1032",
        "ResultDesc": "Request cancelled by user",
    }))

    result = DarajaClient(SETTINGS).stk_query("ws_CO_1")

    assert result.has_result is True
    assert result.result_code == 1032


def test_stk_query_unexpected_shape(mocker, token):
    mocker.patch("zetech.mpesa_service.requests.post", return_value=fake_response(mocker, body=["not", "an", "object"]))

    with pytest.raises(UpstreamSchemaError):
        DarajaClient(SETTINGS).stk_query("ws_CO_1")


def test_gateway_dependency_uses_given_settings():
    assert get_gateway(SETTINGS).settings is SETTINGS


@pytest.mark.parametrize("transaction_id, expected", [
    ("TXN-100", "TXN100"),
    ("TXN_1718000000000_ab12cd34", "0000AB12CD34"),
])
def test_account_reference_fits_daraja_limit(transaction_id, expected):
    reference = account_reference(transaction_id)

    assert reference == expected
    assert len(reference) <= 12
