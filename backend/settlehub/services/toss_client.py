# backend/settlehub/services/toss_client.py
"""
Toss Payments API client (payment confirmation only).

The hosted checkout redirects the buyer back with paymentKey, orderId and
amount; the server must then confirm the payment with Toss before treating
it as paid:

    POST {base_url}/v1/payments/confirm
    Authorization: Basic base64("{secret_key}:")
    {"paymentKey": ..., "orderId": ..., "amount": ...}

No retries: a confirm that fails on the network is reported to the caller
and the order stays CREATED for reconciliation.
"""
from __future__ import annotations

import base64
import logging

import httpx
from flask import current_app

logger = logging.getLogger(__name__)

CONFIRM_PATH = "/v1/payments/confirm"


class GatewayError(Exception):
    """Raised when the gateway rejects a confirmation or cannot be reached."""

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TossPaymentsClient:
    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = "https://api.tosspayments.com",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        # Injected in tests (httpx.MockTransport)
        self.transport = transport

    def _auth_header(self) -> str:
        token = base64.b64encode(f"{self.secret_key}:".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def confirm_payment(self, *, payment_key: str, order_id: str, amount: int) -> dict:
        """
        Confirm a hosted-checkout payment.

        Returns the gateway's payment object (paymentKey, orderId,
        totalAmount, method, status, approvedAt, ...).

        Raises:
            GatewayError: non-2xx reply (carries the gateway code/message)
                or transport failure
        """
        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/json",
        }
        body = {"paymentKey": payment_key, "orderId": order_id, "amount": amount}

        with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = client.post(CONFIRM_PATH, json=body, headers=headers)
            except httpx.RequestError as e:
                logger.error("Toss confirm request failed: order_id=%s error=%s", order_id, e)
                raise GatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 400:
            code, message = _error_details(response)
            logger.error(
                "Toss confirm rejected: order_id=%s status=%s code=%s message=%s",
                order_id,
                response.status_code,
                code,
                message,
            )
            raise GatewayError(
                f"Payment confirmation failed: [{code}] {message}",
                code=code,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            logger.error("Toss confirm returned non-JSON body: order_id=%s", order_id)
            raise GatewayError("Payment gateway returned an invalid response") from e


def _error_details(response: httpx.Response) -> tuple[str, str]:
    try:
        payload = response.json()
    except ValueError:
        return "UNKNOWN_ERROR", response.text[:200]
    if not isinstance(payload, dict):
        return "UNKNOWN_ERROR", str(payload)[:200]
    return str(payload.get("code") or "UNKNOWN_ERROR"), str(payload.get("message") or "")


def get_client() -> TossPaymentsClient:
    """Client configured from the current app (TOSS_* settings)."""
    config = current_app.config
    return TossPaymentsClient(
        secret_key=config["TOSS_SECRET_KEY"],
        base_url=config["TOSS_API_BASE_URL"],
        timeout=config["TOSS_TIMEOUT_SECONDS"],
    )
