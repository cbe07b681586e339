# marketplace/notifications.py
"""In-app notifications: templates plus helpers for marketplace events.

Creating a notification never fails the operation that triggered it; errors
are logged and swallowed here.
"""
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from . import crud
from .utils import logger

TEMPLATES = {
    "message": ("New Message", '{sender} sent you a message about "{title}"'),
    "favorite": ("Item Favorited", '{sender} favorited your listing "{title}"'),
    "sold": ("Item Sold!", 'Your "{title}" was purchased by {sender}'),
    "purchase": ("Purchase Complete", 'You successfully purchased "{title}" from {sender}'),
    "conversation": ("New Conversation", '{sender} started a conversation about your listing "{title}"'),
}


def render(kind: str, sender: str, title: str):
    heading, body = TEMPLATES[kind]
    return heading, body.format(sender=sender, title=title)


def create_notification(db: Session, user_id: str, kind: str, title: str, message: str,
                        action_url: Optional[str] = None, related_id: Optional[str] = None,
                        sender_id: Optional[str] = None):
    sender_name = None
    try:
        if sender_id:
            sender = crud.get_user(db, sender_id)
            sender_name = (sender.name if sender else None) or "Unknown User"
        obj = crud.add_notification(db, {
            "user_id": user_id,
            "type": kind,
            "title": title,
            "message": message,
            "action_url": action_url,
            "related_id": related_id,
            "sender_name": sender_name,
        })
        logger.info("Notification created for user %s: %s", user_id, title)
        return obj
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Error creating notification for %s: %s", user_id, e)
        return None


def _display_name(db: Session, uid: str, fallback: str) -> str:
    user = crud.get_user(db, uid)
    return (user.name if user else None) or fallback


def notify(db: Session, kind: str, recipient_id: str, sender_id: str, listing,
           action_url: str, related_id) -> None:
    """Render the template for ``kind`` and deliver it to ``recipient_id``."""
    fallback = "the seller" if kind == "purchase" else "Someone"
    heading, body = render(kind, _display_name(db, sender_id, fallback), listing.title)
    create_notification(
        db, recipient_id, kind, heading, body,
        action_url=action_url, related_id=str(related_id), sender_id=sender_id,
    )


def notify_new_message(db: Session, recipient_id: str, sender_id: str, conversation) -> None:
    notify(db, "message", recipient_id, sender_id, conversation.listing,
           f"/conversation/{conversation.id}", conversation.id)


def notify_new_conversation(db: Session, conversation) -> None:
    notify(db, "conversation", conversation.seller_id, conversation.buyer_id, conversation.listing,
           f"/conversation/{conversation.id}", conversation.id)


def notify_listing_favorited(db: Session, favoriter_id: str, listing) -> None:
    notify(db, "favorite", listing.user_id, favoriter_id, listing,
           f"/listing/{listing.id}", listing.id)


def notify_sale(db: Session, listing, buyer_id: str, seller_id: str) -> None:
    notify(db, "sold", seller_id, buyer_id, listing, "/dashboard", listing.id)
    notify(db, "purchase", buyer_id, seller_id, listing, "/dashboard", listing.id)
