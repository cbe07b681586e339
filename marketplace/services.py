# marketplace/services.py
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from . import crud
from .geo import is_zip_code
from .notifications import notify_new_conversation, notify_new_message, notify_listing_favorited
from .schemas import ListingType, ListingStatus
from .utils import logger


def _normalize_price(data: Dict[str, Any]) -> Dict[str, Any]:
    # only Sell listings carry a price, and it must be positive
    if data.get("type") == ListingType.SELL.value:
        if data.get("price") is None or data["price"] <= 0:
            raise ValueError("Sell listings need a price greater than zero")
    else:
        data["price"] = None
    return data


def _enum_values(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: getattr(v, "value", v) for k, v in data.items()}


def complete_profile(db: Session, uid: str, profile: Dict[str, Any]):
    if profile.get("zip_code") and not is_zip_code(profile["zip_code"]):
        raise ValueError("ZIP code must be 5 digits")
    user = crud.upsert_user(db, uid, profile)
    logger.info("Profile saved for user %s", uid)
    return user


def create_listing(db: Session, owner_id: str, payload: Dict[str, Any]):
    if crud.get_user(db, owner_id) is None:
        raise PermissionError("Complete your profile before listing items")
    data = _normalize_price(_enum_values(payload))
    if not is_zip_code(data.get("zip_code")):
        raise ValueError("ZIP code must be 5 digits")
    data.update(user_id=owner_id, status=ListingStatus.ACTIVE.value)
    listing = crud.create_listing(db, data)
    logger.info("Listing %s created by %s", listing.id, owner_id)
    return listing


def _owned_listing(db: Session, listing_id: int, owner_id: str):
    listing = crud.get_listing(db, listing_id)
    if listing is None:
        raise LookupError("Listing not found")
    if listing.user_id != owner_id:
        raise PermissionError("Only the owner can change this listing")
    return listing


def update_listing(db: Session, listing_id: int, owner_id: str, changes: Dict[str, Any]):
    listing = _owned_listing(db, listing_id, owner_id)
    if listing.status != ListingStatus.ACTIVE.value:
        raise ValueError("Only active listings can be edited")
    changes = _enum_values(changes)
    if "zip_code" in changes and not is_zip_code(changes["zip_code"]):
        raise ValueError("ZIP code must be 5 digits")
    merged = {"type": listing.type, "price": listing.price, **changes}
    priced = _normalize_price(merged)
    changes["price"] = priced["price"]
    return crud.update_listing(db, listing_id, changes)


def remove_listing(db: Session, listing_id: int, owner_id: str):
    _owned_listing(db, listing_id, owner_id)
    listing = crud.update_listing(db, listing_id, {"status": ListingStatus.REMOVED.value})
    logger.info("Listing %s removed by %s", listing_id, owner_id)
    return listing


def start_conversation(db: Session, listing_id: int, buyer_id: str):
    """Return the buyer's conversation about a listing, creating it on first contact."""
    listing = crud.get_listing(db, listing_id)
    if listing is None:
        raise LookupError("Listing not found")
    if listing.user_id == buyer_id:
        raise ValueError("You cannot message yourself about your own listing")
    conversation = crud.find_conversation(db, listing_id, buyer_id)
    if conversation is not None:
        return conversation
    try:
        conversation = crud.create_conversation(db, listing_id, buyer_id, listing.user_id)
    except IntegrityError:
        # a concurrent request created it first
        db.rollback()
        return crud.find_conversation(db, listing_id, buyer_id)
    notify_new_conversation(db, conversation)
    return conversation


def participant_conversation(db: Session, conversation_id: int, uid: str):
    conversation = crud.get_conversation(db, conversation_id)
    if conversation is None:
        raise LookupError("Conversation not found")
    if uid not in conversation.participants:
        raise PermissionError("Not a participant in this conversation")
    return conversation


def send_message(db: Session, conversation_id: int, sender_id: str, text: str):
    text = (text or "").strip()
    if not text:
        raise ValueError("Message text is empty")
    conversation = participant_conversation(db, conversation_id, sender_id)
    message = crud.add_message(db, conversation, sender_id, text)
    notify_new_message(db, conversation.other_participant(sender_id), sender_id, conversation)
    return message


def conversation_messages(db: Session, conversation_id: int, uid: str) -> List:
    participant_conversation(db, conversation_id, uid)
    return crud.list_messages(db, conversation_id)


def toggle_favorite(db: Session, uid: str, listing_id: int) -> bool:
    """Flip the favorite flag; returns True when the listing is now a favorite."""
    listing = crud.get_listing(db, listing_id)
    if listing is None:
        raise LookupError("Listing not found")
    if crud.delete_favorite(db, uid, listing_id):
        return False
    crud.add_favorite(db, uid, listing_id)
    if listing.user_id != uid:
        notify_listing_favorited(db, uid, listing)
    return True


# fallback suggestions per category when there are too few priced listings
DEFAULT_PRICE_SUGGESTIONS = {
    "Books & Resources": {"suggested_price": 12, "price_min": 5, "price_max": 35, "average_price": 15, "total_listings": 24},
    "Equipment & Tech": {"suggested_price": 89, "price_min": 25, "price_max": 450, "average_price": 105, "total_listings": 18},
    "Furniture": {"suggested_price": 67, "price_min": 20, "price_max": 300, "average_price": 78, "total_listings": 31},
    "Office Supplies": {"suggested_price": 19, "price_min": 5, "price_max": 60, "average_price": 23, "total_listings": 11},
    "Other": {"suggested_price": 25, "price_min": 10, "price_max": 80, "average_price": 30, "total_listings": 8},
}
UNAVAILABLE_PRICE_SUGGESTION = {"suggested_price": 25, "price_min": 10, "price_max": 50, "average_price": 25, "total_listings": 8}
MIN_PRICED_LISTINGS = 3
ACTIVE_MEMBER_DAYS = 60


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def price_suggestion(db: Session, category: str) -> Dict[str, Any]:
    """Suggest a price from up to 50 priced Sell listings in ``category``.

    The suggestion sits 10% under the average. With fewer than three priced
    listings the category's default figures are returned instead.
    """
    try:
        prices = crud.sell_prices_for_category(db, category)
    except SQLAlchemyError as e:
        logger.error("Error getting price suggestion for %s: %s", category, e)
        return {**UNAVAILABLE_PRICE_SUGGESTION, "source": "default"}
    if len(prices) < MIN_PRICED_LISTINGS:
        defaults = DEFAULT_PRICE_SUGGESTIONS.get(category, DEFAULT_PRICE_SUGGESTIONS["Other"])
        return {**defaults, "source": "default"}
    average = sum(prices) / len(prices)
    return {
        "suggested_price": _round_half_up(average * 0.9),
        "price_min": min(prices),
        "price_max": max(prices),
        "average_price": _round_half_up(average),
        "total_listings": len(prices),
        "source": "listings",
    }


def community_impact(db: Session, activity_limit: int = 10) -> Dict[str, Any]:
    since = datetime.now(timezone.utc) - timedelta(days=ACTIVE_MEMBER_DAYS)
    activity = [
        {"type": "purchase", "description": f"{listing.title} purchased", "timestamp": listing.sold_at or listing.created_at}
        for listing in crud.recently_sold_listings(db, activity_limit)
    ] + [
        {"type": "share", "description": f"{listing.title} shared with the community", "timestamp": listing.created_at}
        for listing in crud.recently_shared_listings(db, activity_limit)
    ]
    # undated entries sort last
    activity.sort(key=lambda a: (a["timestamp"] is not None, a["timestamp"] or datetime.min), reverse=True)
    return {
        "total_items_shared": crud.count_shared_listings(db),
        "total_value_shared": crud.total_sold_value(db),
        "active_members": crud.count_active_members(db, since),
        "top_categories": [
            {"category": category, "count": count}
            for category, count in crud.shared_category_counts(db)
        ],
        "recent_activity": activity[:activity_limit],
    }
