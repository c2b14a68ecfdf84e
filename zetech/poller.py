"""
Client-side payment verification loop.

After an STK push the dashboard (or the bot) waits for the payer to answer the
prompt on their phone. PaymentVerifier polls the /mpesa/query endpoint until
the transaction reaches a final status, the attempt cap is hit, or too many
polls in a row fail.
"""
import enum
import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 10.0
MAX_POLL_ATTEMPTS = 30
MAX_CONSECUTIVE_ERRORS = 15

TIMEOUT_MESSAGE = (
    "Payment verification timed out. Please check your phone for the M-Pesa prompt "
    "or try again. The payment may still be processing with Safaricom."
)
UNVERIFIED_MESSAGE = (
    "Unable to verify payment status. Please check your M-Pesa messages or contact support."
)


class VerificationState(str, enum.Enum):
    VERIFYING = "verifying"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class PollError(Exception):
    """The status endpoint could not be queried."""


def is_rate_limit_error(error: Exception) -> bool:
    text = str(error).lower()
    return "spike arrest" in text or "rate limit" in text


class StatusEndpointClient:
    """Calls the service's /mpesa/query endpoint."""

    def __init__(self, base_url: str, access_token: Optional[str] = None, timeout: float = 30.0):
        self.url = base_url.rstrip("/") + "/mpesa/query"
        self.access_token = access_token
        self.timeout = timeout

    def __call__(self, checkout_request_id: str) -> Dict[str, Any]:
        headers = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        try:
            response = requests.post(
                self.url,
                json={"checkout_request_id": checkout_request_id},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PollError(str(exc)) from exc

        if not response.ok:
            try:
                message = response.json().get("error")
            except ValueError:
                message = None
            raise PollError(message or f"HTTP error! status: {response.status_code}")
        return response.json()


class PaymentVerifier:
    """
    Poll a checkout request until it resolves.

    Every poll counts as an attempt. A response whose transaction status is
    success, failed or cancelled ends the loop; any other status keeps it in
    VERIFYING. Exceptions from `query_status` are poll errors: a rate-limit
    error doubles the next wait, and more than `max_errors` consecutive errors
    end the loop in TIMEOUT. So does reaching `max_attempts`.
    """

    def __init__(
        self,
        checkout_request_id: str,
        query_status: Callable[[str], Dict[str, Any]],
        interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        max_errors: int = MAX_CONSECUTIVE_ERRORS,
        sleep: Callable[[float], None] = time.sleep,
        on_success: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.checkout_request_id = checkout_request_id
        self.query_status = query_status
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_errors = max_errors
        self.sleep = sleep
        self.on_success = on_success

        self.state = VerificationState.VERIFYING
        self.attempts = 0
        self.consecutive_errors = 0
        self.message = ""
        self.receipt_number = ""
        self.transaction: Optional[Dict[str, Any]] = None
        self._cancelled = False

    @property
    def is_done(self) -> bool:
        return self.state != VerificationState.VERIFYING

    def cancel(self):
        """Stop polling. The payment request itself keeps going at Safaricom."""
        self._cancelled = True

    def _finish(self, state: VerificationState, message: str = ""):
        self.state = state
        self.message = message
        logger.info("Verification of %s finished: %s", self.checkout_request_id, state.value)

    def tick(self) -> Optional[float]:
        """Run one poll. Returns the delay before the next one, or None when finished."""
        if self.is_done or self._cancelled:
            return None

        self.attempts += 1
        logger.debug(
            "Polling transaction status (attempt %d/%d)", self.attempts, self.max_attempts
        )

        try:
            result = self.query_status(self.checkout_request_id)
        except Exception as exc:
            return self._handle_error(exc)

        self.consecutive_errors = 0
        transaction = result.get("transaction") if result.get("success") else None
        status = (transaction or {}).get("status")

        if status == "success":
            self.transaction = transaction
            self.receipt_number = (transaction.get("metadata") or {}).get("receipt_number", "")
            self._finish(VerificationState.SUCCESS, transaction.get("success_message") or "")
            if self.on_success is not None:
                self.on_success(transaction)
            return None
        if status == "failed":
            self.transaction = transaction
            self._finish(VerificationState.FAILED, transaction.get("error_message") or "Payment failed")
            return None
        if status == "cancelled":
            self.transaction = transaction
            self._finish(VerificationState.CANCELLED, "Payment was cancelled by user")
            return None

        if self.attempts >= self.max_attempts:
            self._finish(VerificationState.TIMEOUT, TIMEOUT_MESSAGE)
            return None
        return self.interval

    def _handle_error(self, error: Exception) -> Optional[float]:
        self.consecutive_errors += 1
        logger.warning(
            "Error polling transaction status (%d in a row): %s", self.consecutive_errors, error
        )

        if self.consecutive_errors > self.max_errors:
            self._finish(VerificationState.TIMEOUT, UNVERIFIED_MESSAGE)
            return None
        if self.attempts >= self.max_attempts:
            self._finish(VerificationState.TIMEOUT, TIMEOUT_MESSAGE)
            return None
        if is_rate_limit_error(error):
            return self.interval * 2
        return self.interval

    def run(self) -> VerificationState:
        while True:
            delay = self.tick()
            if delay is None:
                return self.state
            self.sleep(delay)
            if self._cancelled:
                return self.state
