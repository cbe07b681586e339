# marketplace/models.py
"""SQLAlchemy ORM models for persisted entities.

Users, listings, conversations, messages, notifications, favorites and
payment transactions, plus the indexes the discovery and dashboard
queries rely on.
"""
from sqlalchemy import (
    Column, Integer, Text, Numeric, Boolean, TIMESTAMP, ForeignKey,
    UniqueConstraint, func, Index,
)
from sqlalchemy.orm import relationship
from .db import Base

# total sales (dollars) at which a seller must complete full verification
FULL_VERIFICATION_THRESHOLD = 600


class User(Base):
    __tablename__ = "users"
    uid = Column(Text, primary_key=True)
    email = Column(Text, nullable=False)
    name = Column(Text)
    church_name = Column(Text)
    church_role = Column(Text)
    zip_code = Column(Text)
    stripe_account_id = Column(Text)
    stripe_charges_enabled = Column(Boolean, default=False, nullable=False)
    stripe_payouts_enabled = Column(Boolean, default=False, nullable=False)
    stripe_details_submitted = Column(Boolean, default=False, nullable=False)
    total_sales = Column(Numeric(12, 2, asdecimal=False), default=0, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    listings = relationship("Listing", back_populates="owner", foreign_keys="Listing.user_id")

    @property
    def needs_full_verification(self):
        return (self.total_sales or 0) >= FULL_VERIFICATION_THRESHOLD

    @property
    def can_receive_payments(self):
        return bool(self.stripe_account_id and self.stripe_charges_enabled)


class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(Text, nullable=False)
    condition = Column(Text, nullable=False)
    type = Column(Text, nullable=False)
    zip_code = Column(Text, nullable=False)
    image_url = Column(Text)
    price = Column(Numeric(10, 2, asdecimal=False))
    status = Column(Text, nullable=False, default="active")
    sold_at = Column(TIMESTAMP(timezone=True))
    buyer_id = Column(Text, ForeignKey("users.uid"))
    user_id = Column(Text, ForeignKey("users.uid"), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    owner = relationship("User", back_populates="listings", foreign_keys=[user_id])

Index("idx_listings_status_created", Listing.status, Listing.created_at)


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    buyer_id = Column(Text, ForeignKey("users.uid"), nullable=False)
    seller_id = Column(Text, ForeignKey("users.uid"), nullable=False)
    last_message = Column(Text)
    last_message_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    listing = relationship("Listing")
    messages = relationship("Message", back_populates="conversation", order_by="Message.id")

    __table_args__ = (UniqueConstraint("listing_id", "buyer_id", name="uq_conversation_listing_buyer"),)

    @property
    def participants(self):
        return [self.buyer_id, self.seller_id]

    def other_participant(self, uid):
        return self.seller_id if uid == self.buyer_id else self.buyer_id


class Message(Base):
    __tablename__ = "messages"
    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(Text, ForeignKey("users.uid"), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Text, ForeignKey("users.uid"), nullable=False, index=True)
    type = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    read_at = Column(TIMESTAMP(timezone=True))
    action_url = Column(Text)
    related_id = Column(Text)
    sender_name = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Favorite(Base):
    __tablename__ = "favorites"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Text, ForeignKey("users.uid"), nullable=False, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    listing = relationship("Listing")

    __table_args__ = (UniqueConstraint("user_id", "listing_id", name="uq_favorite_user_listing"),)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    buyer_id = Column(Text, ForeignKey("users.uid"), nullable=False)
    seller_id = Column(Text, ForeignKey("users.uid"), nullable=False)
    # amounts are in cents, as reported by the payment gateway
    amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False, default=0)
    stripe_session_id = Column(Text, unique=True, index=True)
    status = Column(Text, nullable=False, default="pending")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
