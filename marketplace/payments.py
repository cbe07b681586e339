# marketplace/payments.py
"""Stripe Connect payments: seller onboarding, checkout and webhooks.

Sellers get Express connected accounts; buyers pay through a hosted
checkout session that routes the sale amount, minus the platform fee,
to the seller's account.
"""
import os
import json
from typing import Dict, Any
import stripe
from dotenv import load_dotenv
from sqlalchemy import func
from sqlalchemy.orm import Session
from . import crud
from .notifications import notify_sale
from .schemas import ListingType, ListingStatus
from .utils import logger

load_dotenv()
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")

if not STRIPE_SECRET_KEY:
    logger.warning("STRIPE_SECRET_KEY is not set; payment calls will fail")
stripe.api_key = STRIPE_SECRET_KEY

PLATFORM_FEE_PERCENTAGE = 0.03
CONNECT_COUNTRY = "US"
CONNECT_CAPABILITIES = {
    "card_payments": {"requested": True},
    "transfers": {"requested": True},
}


def calculate_platform_fee(amount_cents: int) -> int:
    # round half up, matching how the fee is quoted to sellers
    return int(amount_cents * PLATFORM_FEE_PERCENTAGE + 0.5)


def create_connect_account(db: Session, user) -> Dict[str, str]:
    """Create an Express account for ``user`` and return its onboarding link."""
    account = stripe.Account.create(
        type="express",
        country=CONNECT_COUNTRY,
        capabilities=CONNECT_CAPABILITIES,
        metadata={"user_uid": user.uid},
    )
    link = stripe.AccountLink.create(
        account=account.id,
        refresh_url=f"{PUBLIC_BASE_URL}/dashboard?refresh=true",
        return_url=f"{PUBLIC_BASE_URL}/dashboard?connected=true",
        type="account_onboarding",
    )
    crud.upsert_user(db, user.uid, {"stripe_account_id": account.id})
    logger.info("Created connected account %s for user %s", account.id, user.uid)
    return {"account_id": account.id, "onboarding_url": link.url}


def account_status(account_id: str) -> Dict[str, Any]:
    account = stripe.Account.retrieve(account_id)
    return {
        "account_id": account.id,
        "charges_enabled": bool(account.charges_enabled),
        "payouts_enabled": bool(account.payouts_enabled),
        "details_submitted": bool(account.details_submitted),
    }


def create_checkout_session(db: Session, listing, buyer_id: str) -> Dict[str, Any]:
    """Start a hosted checkout for ``listing`` and record a pending transaction.

    Raises ``ValueError`` when the listing cannot be bought and
    ``LookupError`` when the seller is unknown.
    """
    if listing.type != ListingType.SELL.value:
        raise ValueError("This listing is not for sale")
    if listing.status != ListingStatus.ACTIVE.value:
        raise ValueError("This listing is no longer available")
    if not listing.price or listing.price <= 0:
        raise ValueError("Invalid listing price")
    if listing.user_id == buyer_id:
        raise ValueError("You cannot buy your own listing")
    seller = crud.get_user(db, listing.user_id)
    if seller is None:
        raise LookupError("Seller not found")
    if not seller.stripe_account_id:
        raise ValueError("Seller has not set up payments")

    total_amount = int(round(listing.price * 100))
    platform_fee = calculate_platform_fee(total_amount)
    metadata = {
        "listing_id": str(listing.id),
        "buyer_id": buyer_id,
        "seller_id": listing.user_id,
    }
    session = stripe.checkout.Session.create(
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": "usd",
                "product_data": {
                    "name": listing.title,
                    "description": listing.description or None,
                    "images": [listing.image_url] if listing.image_url else [],
                },
                "unit_amount": total_amount,
            },
            "quantity": 1,
        }],
        mode="payment",
        success_url=f"{PUBLIC_BASE_URL}/listing/{listing.id}?success=true",
        cancel_url=f"{PUBLIC_BASE_URL}/listing/{listing.id}?canceled=true",
        payment_intent_data={
            "application_fee_amount": platform_fee,
            "transfer_data": {"destination": seller.stripe_account_id},
            "metadata": {**metadata, "platform_fee": str(platform_fee)},
        },
        metadata=metadata,
    )
    crud.add_transaction(db, {
        "listing_id": listing.id,
        "buyer_id": buyer_id,
        "seller_id": listing.user_id,
        "amount": total_amount,
        "platform_fee": platform_fee,
        "stripe_session_id": session.id,
        "status": "pending",
    })
    return {"session_id": session.id, "url": session.url}


def construct_event(payload: bytes, signature: str):
    """Verify and parse a webhook payload.

    Raises ``RuntimeError`` when no signing secret is configured and
    ``ValueError`` for a bad payload or signature.
    """
    if not STRIPE_WEBHOOK_SECRET:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not set")
    try:
        stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise ValueError("Invalid signature") from e
    # handlers work on the plain decoded payload
    return json.loads(payload)


def complete_checkout(db: Session, session) -> bool:
    metadata = session.get("metadata") or {}
    listing_id, buyer_id, seller_id = (
        metadata.get("listing_id"), metadata.get("buyer_id"), metadata.get("seller_id")
    )
    if not (listing_id and buyer_id and seller_id):
        logger.warning("Checkout session %s is missing sale metadata", session.get("id"))
        return False

    txn = crud.get_transaction_by_session(db, session["id"])
    if txn is not None and txn.status == "completed":
        logger.info("Checkout session %s already processed", session["id"])
        return False

    listing = crud.update_listing(db, int(listing_id), {
        "status": ListingStatus.SOLD.value,
        "sold_at": func.now(),
        "buyer_id": buyer_id,
    })
    if listing is None:
        logger.error("Completed checkout for unknown listing %s", listing_id)
        return False

    amount = session.get("amount_total") or (txn.amount if txn else 0)
    if txn is None:
        txn = crud.add_transaction(db, {
            "listing_id": listing.id,
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "amount": amount,
            "platform_fee": calculate_platform_fee(amount),
            "stripe_session_id": session["id"],
            "status": "completed",
        })
    else:
        txn.amount = amount
        txn.status = "completed"
        db.commit()

    seller = crud.get_user(db, seller_id)
    if seller is not None:
        crud.upsert_user(db, seller_id, {"total_sales": (seller.total_sales or 0) + amount / 100})

    notify_sale(db, listing, buyer_id, seller_id)
    logger.info("Sale completed for listing %s", listing.id)
    return True


def sync_account(db: Session, account) -> bool:
    uid = (account.get("metadata") or {}).get("user_uid")
    if not uid or crud.get_user(db, uid) is None:
        logger.warning("account.updated for %s has no known user", account.get("id"))
        return False
    crud.upsert_user(db, uid, {
        "stripe_account_id": account["id"],
        "stripe_charges_enabled": bool(account.get("charges_enabled")),
        "stripe_payouts_enabled": bool(account.get("payouts_enabled")),
        "stripe_details_submitted": bool(account.get("details_submitted")),
    })
    logger.info("Stripe account updated for user %s", uid)
    return True


def handle_event(db: Session, event) -> str:
    """Apply a verified webhook event; returns the event type."""
    event_type = event["type"]
    obj = event["data"]["object"]
    if event_type == "checkout.session.completed":
        complete_checkout(db, obj)
    elif event_type == "account.updated":
        sync_account(db, obj)
    else:
        logger.info("Unhandled event type: %s", event_type)
    return event_type
