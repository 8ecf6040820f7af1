# Overview: Midtrans Core API client: notification signatures and transaction status lookups.

from __future__ import annotations

import hashlib
import hmac

import httpx
from flask import current_app

SANDBOX_BASE_URL = "https://api.sandbox.midtrans.com"
PRODUCTION_BASE_URL = "https://api.midtrans.com"

TRANSACTION_CAPTURE = "capture"
TRANSACTION_SETTLEMENT = "settlement"
TRANSACTION_PENDING = "pending"
TRANSACTION_CANCEL = "cancel"
TRANSACTION_DENY = "deny"
TRANSACTION_EXPIRE = "expire"
FAILED_TRANSACTION_STATUSES = {TRANSACTION_CANCEL, TRANSACTION_DENY, TRANSACTION_EXPIRE}

FRAUD_ACCEPT = "accept"


class GatewayUnavailableError(Exception):
    """The gateway could not be reached or returned an unusable answer."""
    pass


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """SHA-512 hex digest of order_id + status_code + gross_amount + server_key."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_signature(
    *,
    order_id: str,
    status_code: str,
    gross_amount: str,
    signature_key: str,
    server_key: str | None = None,
) -> bool:
    """
    Check a notification signature in constant time.

    An unset server key never verifies anything.
    """
    if server_key is None:
        server_key = current_app.config.get("MIDTRANS_SERVER_KEY")
    if not server_key or not signature_key:
        return False
    expected = compute_signature(str(order_id), str(status_code), str(gross_amount), server_key)
    return hmac.compare_digest(expected, str(signature_key).lower())


def is_settled(transaction_status: str | None, fraud_status: str | None) -> bool:
    """settlement, or capture accepted by fraud screening."""
    if transaction_status == TRANSACTION_SETTLEMENT:
        return True
    return transaction_status == TRANSACTION_CAPTURE and fraud_status == FRAUD_ACCEPT


def api_base_url() -> str:
    override = current_app.config.get("MIDTRANS_API_BASE_URL")
    if override:
        return override.rstrip("/")
    return PRODUCTION_BASE_URL if current_app.config.get("MIDTRANS_IS_PRODUCTION") else SANDBOX_BASE_URL


def _build_client() -> httpx.Client:
    return httpx.Client(
        base_url=api_base_url(),
        auth=(current_app.config.get("MIDTRANS_SERVER_KEY") or "", ""),
        timeout=current_app.config.get("PAYMENT_GATEWAY_TIMEOUT", 10),
        headers={"Accept": "application/json"},
    )


def fetch_transaction_status(payment_id: str, *, client: httpx.Client | None = None) -> dict:
    """
    Ask the gateway for the authoritative status of a payment.

    Returns the decoded JSON body (transaction_status, fraud_status,
    gross_amount, payment_type, ...).

    Raises:
        GatewayUnavailableError: network error, non-2xx, a body that is not
        a JSON object, or a body whose own status_code is not 2xx (Midtrans reports unknown
        transactions that way)
    """
    owns_client = client is None
    if owns_client:
        client = _build_client()
    try:
        response = client.get(f"/v2/{payment_id}/status")
        response.raise_for_status()
        body = response.json()
    except httpx.HTTPError as exc:
        raise GatewayUnavailableError(f"Gateway status request failed: {exc}") from exc
    except ValueError as exc:
        raise GatewayUnavailableError("Gateway returned a non-JSON response") from exc
    finally:
        if owns_client:
            client.close()

    if not isinstance(body, dict):
        raise GatewayUnavailableError("Gateway returned an unexpected response body")

    status_code = str(body.get("status_code", "200"))
    if not status_code.startswith("2"):
        raise GatewayUnavailableError(
            f"Gateway reported status_code {status_code}: {body.get('status_message', 'unknown error')}"
        )
    return body
