from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import requests

from app.core.errors import PaymentNotConfigured, PaymentProviderError
from app.core.settings import settings

logger = logging.getLogger(__name__)

API_BASE = "https://api.lemonsqueezy.com/v1"


def _require_config() -> None:
    if not settings.lemonsqueezy_api_key:
        raise PaymentNotConfigured()
    if not settings.lemonsqueezy_store_id:
        raise PaymentNotConfigured("LEMONSQUEEZY_STORE_ID is not configured")


def _headers() -> dict[str, str]:
    return {
        "Accept": "application/vnd.api+json",
        "Content-Type": "application/vnd.api+json",
        "Authorization": f"Bearer {settings.lemonsqueezy_api_key}",
    }


def _get(path: str) -> dict[str, Any]:
    _require_config()
    try:
        resp = requests.get(f"{API_BASE}{path}", headers=_headers(), timeout=30)
    except requests.RequestException as exc:
        raise PaymentProviderError(f"Lemon Squeezy request failed: {exc.__class__.__name__}")
    if resp.status_code >= 400:
        raise PaymentProviderError(f"Lemon Squeezy error ({resp.status_code})")
    return resp.json() or {}


def variant_for_product(product_key: str) -> str:
    variant = settings.lemonsqueezy_variants().get((product_key or "").strip().lower())
    if not variant:
        raise PaymentNotConfigured(f"No Lemon Squeezy variant configured for {product_key}")
    return str(variant)


def product_key_for_variant(variant_id: object) -> str | None:
    vid = str(variant_id or "").strip()
    if not vid:
        return None
    for key, variant in settings.lemonsqueezy_variants().items():
        if variant and str(variant) == vid:
            return key
    return None


def create_checkout_url(
    variant_id: str,
    custom: dict[str, str],
    *,
    email: str | None = None,
    quantity: int | None = None,
    redirect_path: str = "/billing?checkout=success",
) -> str:
    _require_config()
    payload: dict[str, Any] = {
        "data": {
            "type": "checkouts",
            "attributes": {
                "product_options": {
                    "enabled_variants": [int(variant_id)],
                    "redirect_url": f"{settings.frontend_url.rstrip('/')}{redirect_path}",
                },
                "checkout_data": {"custom": dict(custom)},
            },
            "relationships": {
                "store": {"data": {"type": "stores", "id": str(settings.lemonsqueezy_store_id)}},
                "variant": {"data": {"type": "variants", "id": str(variant_id)}},
            },
        }
    }
    checkout_data = payload["data"]["attributes"]["checkout_data"]
    if quantity and int(quantity) > 1:
        checkout_data["variant_quantities"] = [{"variant_id": int(variant_id), "quantity": int(quantity)}]
    if email:
        checkout_data["email"] = email

    try:
        resp = requests.post(f"{API_BASE}/checkouts", headers=_headers(), json=payload, timeout=30)
    except requests.RequestException as exc:
        raise PaymentProviderError(f"Lemon Squeezy request failed: {exc.__class__.__name__}")
    if resp.status_code >= 400:
        raise PaymentProviderError(f"Lemon Squeezy error ({resp.status_code})")
    data = resp.json() or {}
    url = ((data.get("data") or {}).get("attributes") or {}).get("url") or ""
    if not url:
        raise PaymentProviderError("Failed to create checkout")
    return str(url)


def get_order(order_id: str) -> dict[str, Any]:
    data = _get(f"/orders/{order_id}")
    return dict((data.get("data") or {}).get("attributes") or {})


def get_subscription(subscription_id: str) -> dict[str, Any]:
    data = _get(f"/subscriptions/{subscription_id}")
    return dict((data.get("data") or {}).get("attributes") or {})


def verify_webhook_signature(raw_body: bytes, signature: str | None) -> bool:
    if not settings.lemonsqueezy_webhook_secret:
        raise PaymentNotConfigured("LEMONSQUEEZY_WEBHOOK_SECRET is not configured")
    sig = (signature or "").strip()
    if not sig:
        return False
    digest = hmac.new(
        key=str(settings.lemonsqueezy_webhook_secret).encode("utf-8"),
        msg=raw_body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(digest, sig)
