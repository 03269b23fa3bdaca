from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.orm import Session

from app.core.database import run_in_transaction
from app.core.errors import AccountNotFound, LedgerError, NotTeamOwner, UnknownProduct
from app.core.settings import settings
from app.models.purchase import CreditPurchase, PurchaseFor, PurchaseStatus
from app.services import lemonsqueezy
from app.services.credits_engine import (
    TopUpResult,
    as_utc,
    topup_personal,
    topup_team_wallet,
    utcnow,
    validate_amount,
)
from app.services.team_roles import get_team

logger = logging.getLogger(__name__)

PROVIDER = "lemonsqueezy"


@dataclass(frozen=True)
class Product:
    key: str
    name: str
    credits: int
    price_usd: float
    subscription: bool = False
    per_unit: bool = False


PRODUCT_CATALOG: dict[str, Product] = {
    "starter": Product("starter", "Starter plan", 60, 25.0, subscription=True),
    "pro": Product("pro", "Pro plan", 160, 59.0, subscription=True),
    "team": Product("team", "Team plan", 360, 119.0, subscription=True),
    "extra_credits_50": Product("extra_credits_50", "50 extra credits", 50, 22.0),
    "extra_credits_100": Product("extra_credits_100", "100 extra credits", 100, 40.0),
    "pay_per_image": Product("pay_per_image", "Pay per image", 1, 1.5, per_unit=True),
}


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    product_key: str
    credits: int
    reference: str | None = None


@dataclass
class ReconcileSummary:
    completed: int = 0
    expired: int = 0
    pending: int = 0
    errors: list[str] = field(default_factory=list)


def get_product(product_key: str) -> Product:
    product = PRODUCT_CATALOG.get((product_key or "").strip().lower())
    if product is None:
        raise UnknownProduct(product_key=product_key)
    return product


def credits_for(product: Product, quantity: Any = 1) -> int:
    if not product.per_unit:
        return product.credits
    return product.credits * validate_amount(quantity)


def new_reference() -> str:
    return f"checkout:{uuid4().hex}"


def create_pending_purchase(
    db: Session,
    *,
    user_id: str,
    product: Product,
    quantity: Any = 1,
    team_id: str | None = None,
) -> CreditPurchase:
    credits = credits_for(product, quantity)
    units = credits // product.credits

    def work() -> CreditPurchase:
        if team_id:
            team = get_team(db, team_id)
            if team.owner_id != user_id:
                raise NotTeamOwner("Only the team owner can buy credits for the team")
        purchase = CreditPurchase(
            purchase_for=(PurchaseFor.TEAM if team_id else PurchaseFor.INDIVIDUAL).value,
            user_id=user_id,
            team_id=team_id,
            product_key=product.key,
            amount=credits,
            price_usd=round(product.price_usd * units, 2),
            status=PurchaseStatus.PENDING.value,
            reference=new_reference(),
            provider=PROVIDER,
        )
        db.add(purchase)
        db.flush()
        return purchase

    purchase = run_in_transaction(db, work)
    db.refresh(purchase)
    logger.info("purchases.pending.created reference=%s product=%s credits=%s", purchase.reference, product.key, credits)
    return purchase


def start_checkout(
    db: Session,
    *,
    user_id: str,
    email: str | None,
    product_key: str,
    quantity: Any = 1,
    team_id: str | None = None,
) -> CheckoutResult:
    product = get_product(product_key)
    variant_id = lemonsqueezy.variant_for_product(product.key)
    custom = {"user_id": user_id, "product_key": product.key}
    if team_id:
        custom["team_id"] = team_id

    if product.subscription:
        # Subscription credits arrive per paid invoice, not through a pending purchase.
        if team_id and get_team(db, team_id).owner_id != user_id:
            raise NotTeamOwner("Only the team owner can subscribe for the team")
        url = lemonsqueezy.create_checkout_url(variant_id, custom, email=email)
        return CheckoutResult(url=url, product_key=product.key, credits=product.credits)

    purchase = create_pending_purchase(db, user_id=user_id, product=product, quantity=quantity, team_id=team_id)
    custom["reference"] = purchase.reference
    units = purchase.amount // product.credits
    try:
        url = lemonsqueezy.create_checkout_url(variant_id, custom, email=email, quantity=units)
    except LedgerError:
        expire_purchase(db, purchase.reference)
        raise
    return CheckoutResult(url=url, product_key=product.key, credits=purchase.amount, reference=purchase.reference)


def expire_purchase(db: Session, reference: str) -> bool:
    def work() -> int:
        return (
            db.query(CreditPurchase)
            .filter(CreditPurchase.reference == reference, CreditPurchase.status == PurchaseStatus.PENDING.value)
            .update({CreditPurchase.status: PurchaseStatus.EXPIRED.value}, synchronize_session=False)
        )

    return run_in_transaction(db, work) == 1


def attach_provider_order(db: Session, reference: str, order_id: str) -> bool:
    """Record the provider order on a pending purchase so reconciliation can find it."""

    def work() -> int:
        return (
            db.query(CreditPurchase)
            .filter(
                CreditPurchase.reference == reference,
                CreditPurchase.status != PurchaseStatus.COMPLETED.value,
                CreditPurchase.provider_order_id.is_(None),
            )
            .update({CreditPurchase.provider_order_id: order_id}, synchronize_session=False)
        )

    return run_in_transaction(db, work) == 1


def complete_purchase(
    db: Session,
    reference: str,
    *,
    provider_order_id: str | None = None,
    now: datetime | None = None,
) -> TopUpResult:
    purchase = db.query(CreditPurchase).filter(CreditPurchase.reference == reference).first()
    if purchase is None:
        raise AccountNotFound("Purchase not found", reference=reference)
    common = dict(
        source="purchase",
        actor_id=purchase.user_id,
        product_key=purchase.product_key,
        price_usd=purchase.price_usd,
        provider=purchase.provider,
        provider_order_id=provider_order_id,
        now=now,
    )
    if purchase.purchase_for == PurchaseFor.TEAM.value:
        return topup_team_wallet(db, purchase.team_id, purchase.amount, reference, user_id=purchase.user_id, **common)
    return topup_personal(db, purchase.user_id, purchase.amount, reference, **common)


def _handle_order_created(db: Session, data_id: str, attrs: dict[str, Any], custom: dict[str, Any]) -> str:
    reference = str(custom.get("reference") or "").strip()
    if not reference:
        return "ignored"
    if data_id:
        attach_provider_order(db, reference, data_id)
    if str(attrs.get("status") or "").lower() != "paid":
        return "pending"
    result = complete_purchase(db, reference, provider_order_id=data_id or None)
    return "completed" if result.applied else "duplicate"


def _handle_invoice_paid(db: Session, data_id: str, attrs: dict[str, Any], custom: dict[str, Any]) -> str:
    user_id = str(custom.get("user_id") or "").strip()
    team_id = str(custom.get("team_id") or "").strip() or None
    if not user_id or not data_id:
        return "ignored"
    product_key = str(custom.get("product_key") or "").strip().lower()
    if product_key not in PRODUCT_CATALOG:
        sub_id = str(attrs.get("subscription_id") or "").strip()
        if sub_id:
            product_key = lemonsqueezy.product_key_for_variant(lemonsqueezy.get_subscription(sub_id).get("variant_id")) or ""
    product = PRODUCT_CATALOG.get(product_key)
    if product is None or not product.subscription:
        logger.warning("purchases.invoice.unknown_plan invoice_id=%s product=%s", data_id, product_key)
        return "ignored"

    reference = f"lemonsqueezy_invoice:{data_id}"
    common = dict(
        source="subscription",
        actor_id=user_id,
        product_key=product.key,
        price_usd=product.price_usd,
        provider=PROVIDER,
    )
    if team_id:
        result = topup_team_wallet(db, team_id, product.credits, reference, user_id=user_id, **common)
    else:
        result = topup_personal(db, user_id, product.credits, reference, **common)
    return "completed" if result.applied else "duplicate"


def handle_webhook_event(db: Session, event_name: str, payload: dict[str, Any]) -> str:
    meta = payload.get("meta") or {}
    custom = meta.get("custom_data") or {}
    data = payload.get("data") or {}
    data_id = str(data.get("id") or "").strip()
    attrs = data.get("attributes") or {}
    if not isinstance(custom, dict) or not isinstance(attrs, dict):
        return "ignored"

    if event_name == "order_created":
        outcome = _handle_order_created(db, data_id, attrs, custom)
    elif event_name == "subscription_payment_success":
        outcome = _handle_invoice_paid(db, data_id, attrs, custom)
    else:
        outcome = "ignored"
    logger.info("purchases.webhook event=%s id=%s outcome=%s", event_name, data_id, outcome)
    return outcome


def reconcile_pending_purchases(
    db: Session,
    *,
    now: datetime | None = None,
    fetch_order: Callable[[str], dict[str, Any]] | None = None,
) -> ReconcileSummary:
    now = now or utcnow()
    fetch_order = fetch_order or lemonsqueezy.get_order
    summary = ReconcileSummary()

    pending = (
        db.query(CreditPurchase)
        .filter(CreditPurchase.status == PurchaseStatus.PENDING.value)
        .order_by(CreditPurchase.created_at.asc())
        .all()
    )
    cutoff = now - timedelta(hours=settings.pending_purchase_ttl_hours)
    rows = [(p.reference, p.provider_order_id, p.created_at) for p in pending]
    for reference, order_id, created_at in rows:
        if order_id:
            try:
                attrs = fetch_order(order_id)
            except LedgerError as exc:
                summary.errors.append(f"{reference}: {exc.message}")
                logger.warning("purchases.reconcile.fetch_failed reference=%s error=%s", reference, exc.message)
                continue
            if str(attrs.get("status") or "").lower() == "paid":
                try:
                    result = complete_purchase(db, reference, provider_order_id=order_id, now=now)
                except LedgerError as exc:
                    summary.errors.append(f"{reference}: {exc.message}")
                    logger.warning("purchases.reconcile.complete_failed reference=%s code=%s", reference, exc.code)
                    continue
                if result.applied:
                    summary.completed += 1
                continue
            summary.pending += 1
            continue
        if created_at is not None and as_utc(created_at) < cutoff:
            if expire_purchase(db, reference):
                summary.expired += 1
            continue
        summary.pending += 1

    if summary.completed or summary.expired or summary.errors:
        logger.info(
            "purchases.reconcile.done completed=%s expired=%s pending=%s errors=%s",
            summary.completed,
            summary.expired,
            summary.pending,
            len(summary.errors),
        )
    return summary


def list_purchases_for_user(db: Session, user_id: str, limit: int = 20) -> list[CreditPurchase]:
    return (
        db.query(CreditPurchase)
        .filter(CreditPurchase.user_id == user_id)
        .order_by(CreditPurchase.created_at.desc(), CreditPurchase.id.desc())
        .limit(limit)
        .all()
    )
