from __future__ import annotations

import hashlib
import hmac
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any


class PaymentError(RuntimeError):
    pass


class PaymentRateLimited(PaymentError):
    pass


class WebhookSignatureError(PaymentError):
    pass


def encode_form(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into bracketed form keys (`metadata[user_id]`, `line_items[0][price]`)."""
    out: list[tuple[str, str]] = []
    for key, value in params.items():
        full = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            out.extend(encode_form(value, full))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                item_key = f"{full}[{i}]"
                if isinstance(item, dict):
                    out.extend(encode_form(item, item_key))
                else:
                    out.append((item_key, str(item)))
        elif isinstance(value, bool):
            out.append((full, "true" if value else "false"))
        else:
            out.append((full, str(value)))
    return out


@dataclass(frozen=True)
class PaymentClient:
    api_key: str
    base_url: str = "https://api.stripe.com"
    timeout_seconds: int = 30

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        retries: int = 3,
    ) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        body: bytes | None = None
        if params:
            encoded = urllib.parse.urlencode(encode_form(params))
            if method == "GET":
                url += "?" + encoded
            else:
                body = encoded.encode("utf-8")

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=body, method=method)
                req.add_header("Authorization", f"Bearer {self.api_key}")
                req.add_header("Accept", "application/json")
                if body is not None:
                    req.add_header("Content-Type", "application/x-www-form-urlencoded")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        return json.loads(raw.decode("utf-8"))
                    except Exception as e:
                        raise PaymentError(f"Invalid JSON from payment provider ({path})") from e
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    # rate limit; brief backoff
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = PaymentRateLimited("Rate limited (429)")
                    continue
                try:
                    detail = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    detail = ""
                raise PaymentError(f"HTTP {e.code} from payment provider: {detail[:300]}") from e
            except PaymentError:
                raise
            except Exception as e:
                # connection errors and read timeouts
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise PaymentError(f"Payment provider request failed after retries: {last_err}")

    def create_checkout_session(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: dict[str, str],
        customer_id: str | None = None,
    ) -> dict[str, Any]:
        return self.request_json(
            "POST",
            "/v1/checkout/sessions",
            params={
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": client_reference_id,
                "customer": customer_id,
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
            },
        )

    def create_portal_session(self, *, customer_id: str, return_url: str) -> dict[str, Any]:
        return self.request_json(
            "POST",
            "/v1/billing_portal/sessions",
            params={"customer": customer_id, "return_url": return_url},
        )

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict[str, Any]:
        return self.request_json(
            "POST",
            f"/v1/subscriptions/{urllib.parse.quote(subscription_id)}",
            params={"cancel_at_period_end": cancel},
        )


def payment_client_from_config(config: dict) -> PaymentClient | None:
    api_key = (config.get("PAYMENT_API_KEY") or "").strip()
    if not api_key:
        return None
    return PaymentClient(
        api_key=api_key,
        base_url=(config.get("PAYMENT_API_BASE") or "https://api.stripe.com").strip(),
    )


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: int | None = None,
) -> None:
    """
    Verify a `t=<unix>,v1=<hex>` signature header. Raises WebhookSignatureError.
    Several v1 entries may be present while the provider rotates secrets.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        k, _, v = part.strip().partition("=")
        if k == "t":
            try:
                timestamp = int(v)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp") from None
        elif k == "v1" and v:
            signatures.append(v)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected.encode("ascii"), sig.encode("ascii", "ignore")) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")
