"""
Payment provider integration.

Creates hosted checkout sessions. Every request carries an Idempotency-Key
derived from the checkout attempt, so repeating a call for the same attempt
returns the same session instead of creating a second one.

Supports mock mode (PAYMENT_PROVIDER_MOCK) for local development: session
ids are derived from the idempotency key, no network call is made.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from storefront.api.errors import TerminalRejection, TransientDependencyError
from storefront.core.config import settings

logger = logging.getLogger(__name__)

_CHECKOUT_SESSIONS_PATH = "/v1/checkout/sessions"

# statuses worth retrying; any other 4xx is a permanent refusal
_RETRYABLE_STATUS = {408, 409, 429}


@dataclass(frozen=True)
class ProviderCheckoutSession:
    session_id: str
    url: str
    raw: dict[str, Any] | None = None


def _flatten(prefix: str, value: Any, out: dict[str, str]) -> None:
    """Encode nested params the way form-encoded provider APIs expect (a[b][0][c]=v)."""
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}[{key}]" if prefix else str(key), item, out)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _flatten(f"{prefix}[{index}]", item, out)
    elif value is not None:
        out[prefix] = str(value).lower() if isinstance(value, bool) else str(value)


class PaymentProviderClient:
    """Hosted checkout client."""

    def __init__(self) -> None:
        self._mock = settings.PAYMENT_PROVIDER_MOCK
        self._base_url = settings.PAYMENT_PROVIDER_BASE_URL.rstrip("/")
        self._api_key = settings.PAYMENT_PROVIDER_API_KEY

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        if not self._api_key:
            raise TerminalRejection("PAYMENT_PROVIDER_API_KEY not configured")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Idempotency-Key": idempotency_key,
        }

    def create_checkout_session(
        self,
        *,
        idempotency_key: str,
        amount_cents: int,
        currency: str,
        product_name: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
        metadata: dict[str, str] | None = None,
        collect_github_username: bool = False,
    ) -> ProviderCheckoutSession:
        """
        Create a hosted checkout session.

        Raises:
            TransientDependencyError: network failure, timeout, 5xx or 429
            TerminalRejection: the provider refused the request
        """
        if self._mock:
            digest = hashlib.sha256(idempotency_key.encode()).hexdigest()[:24]
            session_id = f"cs_mock_{digest}"
            return ProviderCheckoutSession(
                session_id=session_id,
                url=f"{self._base_url}/pay/{session_id}",
                raw={"mock": True},
            )

        params: dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
            "metadata": metadata or {},
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": product_name},
                    },
                }
            ],
        }
        if collect_github_username:
            params["custom_fields"] = [
                {
                    "key": "github_username",
                    "label": {"type": "custom", "custom": "GitHub username"},
                    "type": "text",
                }
            ]
        form: dict[str, str] = {}
        _flatten("", params, form)

        url = f"{self._base_url}{_CHECKOUT_SESSIONS_PATH}"
        try:
            with httpx.Client(timeout=20) as client:
                r = client.post(url, data=form, headers=self._headers(idempotency_key))
        except httpx.HTTPError as e:
            raise TransientDependencyError(f"Payment provider unreachable: {e}")

        if r.status_code >= 500 or r.status_code in _RETRYABLE_STATUS:
            raise TransientDependencyError(f"Payment provider error {r.status_code}")
        if r.status_code >= 400:
            logger.error(f"Checkout session rejected: {r.status_code} {r.text}")
            raise TerminalRejection(f"Payment provider rejected checkout ({r.status_code})")

        data = r.json()
        if not isinstance(data, dict) or not data.get("id") or not data.get("url"):
            raise TransientDependencyError("Payment provider returned an invalid session")
        return ProviderCheckoutSession(session_id=str(data["id"]), url=str(data["url"]), raw=data)


_client: PaymentProviderClient | None = None


def get_payment_provider() -> PaymentProviderClient:
    """Process-wide client; tests replace it through monkeypatch."""
    global _client
    if _client is None:
        _client = PaymentProviderClient()
    return _client
