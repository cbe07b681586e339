# marketplace/crud.py
"""Data-access helpers for marketplace entities.

Thin create/read/update helpers over the ORM models. Lookups return
``None`` (or ``False`` for deletes) when the row does not exist; callers
decide whether that is an error.
"""
from sqlalchemy import or_, func
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Dict, Any, List, Optional, Tuple
from .models import User, Listing, Conversation, Message, Notification, Favorite, Transaction


# -- users -----------------------------------------------------------------

def get_user(db: Session, uid: str) -> Optional[User]:
    return db.get(User, uid)

def upsert_user(db: Session, uid: str, data: Dict[str, Any]) -> User:
    obj = db.get(User, uid)
    if obj is None:
        obj = User(uid=uid, **data)
        db.add(obj)
    else:
        for k, v in data.items():
            setattr(obj, k, v)
    db.commit()
    db.refresh(obj)
    return obj

def get_user_by_stripe_account(db: Session, account_id: str) -> Optional[User]:
    return db.query(User).filter(User.stripe_account_id == account_id).first()


# -- listings --------------------------------------------------------------

def create_listing(db: Session, data: Dict[str, Any]) -> Listing:
    obj = Listing(**data)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def get_listing(db: Session, listing_id: int) -> Optional[Listing]:
    return db.get(Listing, listing_id)

def fetch_recent_listings(db: Session, limit: int = 50) -> List[Listing]:
    return (
        db.query(Listing)
        .filter(Listing.status == "active")
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .limit(limit)
        .all()
    )

def list_user_listings(db: Session, uid: str) -> List[Listing]:
    return (
        db.query(Listing)
        .filter(Listing.user_id == uid)
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .all()
    )

def update_listing(db: Session, listing_id: int, updates: Dict[str, Any]) -> Optional[Listing]:
    obj = db.get(Listing, listing_id)
    if not obj:
        return None
    for k, v in updates.items():
        setattr(obj, k, v)
    db.commit()
    db.refresh(obj)
    return obj


# -- conversations & messages ---------------------------------------------

def find_conversation(db: Session, listing_id: int, buyer_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.listing_id == listing_id, Conversation.buyer_id == buyer_id)
        .first()
    )

def create_conversation(db: Session, listing_id: int, buyer_id: str, seller_id: str) -> Conversation:
    obj = Conversation(listing_id=listing_id, buyer_id=buyer_id, seller_id=seller_id)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def get_conversation(db: Session, conversation_id: int) -> Optional[Conversation]:
    return db.get(Conversation, conversation_id)

def list_conversations(db: Session, uid: str) -> List[Conversation]:
    return (
        db.query(Conversation)
        .filter(or_(Conversation.buyer_id == uid, Conversation.seller_id == uid))
        .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        .all()
    )

def add_message(db: Session, conversation: Conversation, sender_id: str, text: str) -> Message:
    msg = Message(conversation_id=conversation.id, sender_id=sender_id, text=text)
    db.add(msg)
    conversation.last_message = text
    conversation.last_message_at = func.now()
    db.commit()
    db.refresh(msg)
    db.refresh(conversation)
    return msg

def list_messages(db: Session, conversation_id: int) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


# -- favorites -------------------------------------------------------------

def get_favorite(db: Session, uid: str, listing_id: int) -> Optional[Favorite]:
    return (
        db.query(Favorite)
        .filter(Favorite.user_id == uid, Favorite.listing_id == listing_id)
        .first()
    )

def add_favorite(db: Session, uid: str, listing_id: int) -> Favorite:
    obj = Favorite(user_id=uid, listing_id=listing_id)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def delete_favorite(db: Session, uid: str, listing_id: int) -> bool:
    obj = get_favorite(db, uid, listing_id)
    if not obj:
        return False
    db.delete(obj)
    db.commit()
    return True

def list_favorite_listings(db: Session, uid: str) -> List[Listing]:
    return (
        db.query(Listing)
        .join(Favorite, Favorite.listing_id == Listing.id)
        .filter(Favorite.user_id == uid)
        .order_by(Favorite.created_at.desc(), Favorite.id.desc())
        .all()
    )


# -- notifications ---------------------------------------------------------

def add_notification(db: Session, data: Dict[str, Any]) -> Notification:
    obj = Notification(**data)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def list_notifications(db: Session, uid: str, limit: int = 20) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == uid)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )

def mark_notification_read(db: Session, notification_id: int, uid: str) -> Optional[Notification]:
    obj = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == uid)
        .first()
    )
    if not obj:
        return None
    obj.read = True
    obj.read_at = func.now()
    db.commit()
    db.refresh(obj)
    return obj

def mark_all_notifications_read(db: Session, uid: str) -> int:
    count = (
        db.query(Notification)
        .filter(Notification.user_id == uid, Notification.read.is_(False))
        .update({"read": True, "read_at": func.now()}, synchronize_session=False)
    )
    db.commit()
    return count

def unread_notification_count(db: Session, uid: str) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == uid, Notification.read.is_(False))
        .count()
    )


# -- transactions ----------------------------------------------------------

def add_transaction(db: Session, data: Dict[str, Any]) -> Transaction:
    obj = Transaction(**data)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def get_transaction_by_session(db: Session, session_id: str) -> Optional[Transaction]:
    return db.query(Transaction).filter(Transaction.stripe_session_id == session_id).first()


# -- community insights ----------------------------------------------------

SHARED_TYPES = ("Give Away", "Share")

def sell_prices_for_category(db: Session, category: str, limit: int = 50) -> List[float]:
    rows = (
        db.query(Listing.price)
        .filter(Listing.category == category, Listing.type == "Sell", Listing.price > 0)
        .order_by(Listing.price.asc())
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]

def count_shared_listings(db: Session) -> int:
    return db.query(Listing).filter(Listing.type.in_(SHARED_TYPES)).count()

def total_sold_value(db: Session) -> float:
    total = (
        db.query(func.coalesce(func.sum(Listing.price), 0))
        .filter(Listing.status == "sold")
        .scalar()
    )
    return float(total or 0)

def count_active_members(db: Session, since: datetime) -> int:
    return (
        db.query(func.count(func.distinct(Listing.user_id)))
        .filter(Listing.created_at > since)
        .scalar()
    ) or 0

def shared_category_counts(db: Session, limit: int = 5) -> List[Tuple[str, int]]:
    count = func.count(Listing.id)
    rows = (
        db.query(Listing.category, count)
        .filter(Listing.type.in_(SHARED_TYPES))
        .group_by(Listing.category)
        .order_by(count.desc(), Listing.category.asc())
        .limit(limit)
        .all()
    )
    return [(category, n) for category, n in rows]

def recently_sold_listings(db: Session, limit: int = 10) -> List[Listing]:
    return (
        db.query(Listing)
        .filter(Listing.status == "sold")
        .order_by(Listing.sold_at.desc(), Listing.id.desc())
        .limit(limit)
        .all()
    )

def recently_shared_listings(db: Session, limit: int = 10) -> List[Listing]:
    return (
        db.query(Listing)
        .filter(Listing.type.in_(SHARED_TYPES))
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .limit(limit)
        .all()
    )
