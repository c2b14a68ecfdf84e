"""
Daraja (Safaricom M-Pesa) gateway client: OAuth token, STK push and STK query.
"""
import base64
import logging
from datetime import datetime, timezone
import re
from typing import Any, Dict, Optional

import requests
from fastapi import Depends

from zetech.config import Settings, get_settings
from zetech.errors import (
    GatewayConfigurationError,
    UpstreamAuthError,
    UpstreamRequestError,
)
from zetech.schemas import OAuthTokenResponse, StkPushResponse, StkQueryResponse, parse_gateway

logger = logging.getLogger(__name__)

COUNTRY_CODE = "254"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
# Daraja rejects an AccountReference longer than 12 characters
ACCOUNT_REFERENCE_MAX_LENGTH = 12


def account_reference(transaction_id: str) -> str:
    """Short payer-visible reference that still identifies the transaction."""
    cleaned = re.sub(r"[^A-Za-z0-9]", "", transaction_id)
    return cleaned[-ACCOUNT_REFERENCE_MAX_LENGTH:].upper()


def normalize_phone(phone_number: str) -> str:
    """Format a Kenyan MSISDN the way Daraja expects it (2547XXXXXXXX)."""
    formatted = phone_number.strip().replace(" ", "").lstrip("+")
    if formatted.startswith("0"):
        return COUNTRY_CODE + formatted[1:]
    if not formatted.startswith(COUNTRY_CODE):
        return COUNTRY_CODE + formatted
    return formatted


def is_rate_limited(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    return "spike arrest" in response.text.lower()


class DarajaClient:
    """Thin wrapper over the three Daraja endpoints the payment flow uses."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.daraja_base_url.rstrip("/")
        self.timeout = settings.gateway_timeout_seconds

    def _require_credentials(self):
        if not self.settings.gateway_configured:
            raise GatewayConfigurationError()

    @staticmethod
    def timestamp(now: Optional[datetime] = None) -> str:
        return (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)

    def build_password(self, timestamp: str) -> str:
        raw = f"{self.settings.daraja_shortcode}{self.settings.daraja_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def get_access_token(self) -> str:
        self._require_credentials()
        try:
            response = requests.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.settings.daraja_consumer_key, self.settings.daraja_consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamRequestError(f"M-Pesa OAuth request failed: {exc}") from exc

        if not response.ok:
            raise UpstreamAuthError(
                f"M-Pesa OAuth failed with status: {response.status_code}",
                details={"status": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamAuthError("Failed to get M-Pesa access token: invalid JSON") from exc

        if not isinstance(body, dict) or not body.get("access_token"):
            description = body.get("error_description", "Unknown error") if isinstance(body, dict) else "Unknown error"
            raise UpstreamAuthError(f"Failed to get M-Pesa access token: {description}")

        return parse_gateway(OAuthTokenResponse, body, "OAuth response").access_token

    def _post(self, path: str, payload: Dict[str, Any], token: str, what: str) -> requests.Response:
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamRequestError(f"{what} request failed: {exc}") from exc

        if is_rate_limited(response):
            raise UpstreamRequestError(
                f"{what} rejected by M-Pesa: Spike arrest violation (rate limit)",
                details={"status": response.status_code},
                rate_limited=True,
            )
        return response

    @staticmethod
    def _json(response: requests.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamRequestError(
                f"{what} failed with status: {response.status_code}",
                details={"status": response.status_code},
            ) from exc

    def stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> StkPushResponse:
        token = self.get_access_token()
        timestamp = self.timestamp()
        shortcode = self.settings.daraja_shortcode

        payload = {
            "BusinessShortCode": shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        response = self._post("/mpesa/stkpush/v1/processrequest", payload, token, "STK Push")
        body = self._json(response, "STK Push")

        if not response.ok:
            message = body.get("errorMessage") if isinstance(body, dict) else None
            raise UpstreamRequestError(
                f"STK Push request failed with status: {response.status_code}"
                + (f" ({message})" if message else ""),
                details={"status": response.status_code, "response": body},
            )

        result = parse_gateway(StkPushResponse, body, "STK Push response")
        logger.info(
            "STK Push response: code=%s checkout=%s",
            result.response_code,
            result.checkout_request_id,
        )
        return result

    def stk_query(self, checkout_request_id: str) -> StkQueryResponse:
        """
        Ask Daraja for the state of a push request.

        Daraja answers a still-pending request with a non-2xx error body
        ("The transaction is being processed"); that is returned as a response
        without a result rather than raised.
        """
        token = self.get_access_token()
        timestamp = self.timestamp()

        payload = {
            "BusinessShortCode": self.settings.daraja_shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        response = self._post("/mpesa/stkpushquery/v1/query", payload, token, "STK Query")
        body = self._json(response, "STK Query")
        result = parse_gateway(StkQueryResponse, body, "STK Query response")
        logger.info(
            "STK Query for %s: response=%s result=%s",
            checkout_request_id,
            result.response_code or result.error_code,
            result.result_code,
        )
        return result


def get_gateway(settings: Settings = Depends(get_settings)) -> DarajaClient:
    """FastAPI dependency: a gateway client built from the request's settings."""
    return DarajaClient(settings)
