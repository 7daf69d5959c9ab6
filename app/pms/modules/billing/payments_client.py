from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)


class PaymentsError(RuntimeError):
    pass


class PaymentsRateLimited(PaymentsError):
    pass


def flatten_params(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """
    Encode nested dicts/lists the way the processor's form API expects:
    {"line_items": [{"quantity": 1}]} -> [("line_items[0][quantity]", "1")]
    """
    out: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            out.extend(flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                item_name = f"{name}[{i}]"
                if isinstance(item, dict):
                    out.extend(flatten_params(item, item_name))
                else:
                    out.append((item_name, str(item)))
        elif isinstance(value, bool):
            out.append((name, "true" if value else "false"))
        else:
            out.append((name, str(value)))
    return out


@dataclass(frozen=True)
class StripeClient:
    secret_key: str
    base_url: str = "https://api.stripe.com"
    timeout_seconds: int = 30

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        retries: int = 2,
    ) -> dict[str, Any]:
        if not self.secret_key:
            raise PaymentsError("Payment processor is not configured (STRIPE_SECRET_KEY missing).")
        url = self.base_url.rstrip("/") + path
        encoded = flatten_params(params or {})

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                if method == "GET":
                    resp = requests.get(url, params=encoded, auth=(self.secret_key, ""), timeout=self.timeout_seconds)
                else:
                    resp = requests.request(method, url, data=encoded, auth=(self.secret_key, ""), timeout=self.timeout_seconds)
            except requests.RequestException as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue

            if resp.status_code == 429:
                # rate limit; brief backoff
                time.sleep(min(2 * (attempt + 1), 10))
                last_err = PaymentsRateLimited("Rate limited (429)")
                continue
            if resp.status_code >= 400:
                try:
                    message = (resp.json().get("error") or {}).get("message") or ""
                except ValueError:
                    message = resp.text[:300]
                raise PaymentsError(f"HTTP {resp.status_code} from payment processor: {message}")
            try:
                return resp.json()
            except ValueError as e:
                raise PaymentsError(f"Invalid JSON from payment processor ({path})") from e

        if isinstance(last_err, PaymentsRateLimited):
            raise last_err
        raise PaymentsError(f"Payment processor request failed after retries: {last_err}")

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.request_json("POST", "/v1/checkout/sessions", params=params)

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self.request_json("GET", f"/v1/checkout/sessions/{session_id}")

    def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        j = self.request_json("GET", "/v1/customers", params={"email": email, "limit": 1})
        data = j.get("data") or []
        return data[0] if data else None

    def create_customer(self, *, email: str, name: str | None = None, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request_json("POST", "/v1/customers", params={"email": email, "name": name, "metadata": metadata})

    def create_billing_portal_session(self, *, customer: str, return_url: str) -> dict[str, Any]:
        return self.request_json(
            "POST",
            "/v1/billing_portal/sessions",
            params={"customer": customer, "return_url": return_url},
        )


def payments_client_from_config(app) -> StripeClient:
    """Test code swaps the client by setting app.extensions["payments_client"]."""
    client = app.extensions.get("payments_client")
    if client is not None:
        return client
    return StripeClient(
        secret_key=app.config.get("STRIPE_SECRET_KEY") or "",
        base_url=app.config.get("STRIPE_API_BASE") or "https://api.stripe.com",
    )
