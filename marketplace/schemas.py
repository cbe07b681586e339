# marketplace/schemas.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime
from enum import Enum

class ListingType(str, Enum):
    GIVE_AWAY = "Give Away"
    SELL = "Sell"
    SHARE = "Share"

class ListingCategory(str, Enum):
    BOOKS = "Books & Resources"
    EQUIPMENT = "Equipment & Tech"
    FURNITURE = "Furniture"
    OFFICE = "Office Supplies"
    EVENT = "Event Items"
    CREATIVE = "Creative Assets"
    OTHER = "Other"

class ListingCondition(str, Enum):
    NEW = "New"
    LIKE_NEW = "Like New"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"

class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    REMOVED = "removed"

class SortKey(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    PRICE_LOW = "price-low"
    PRICE_HIGH = "price-high"

# price range the filter panel starts with; a range equal to it means "untouched"
DEFAULT_PRICE_MIN = 0
DEFAULT_PRICE_MAX = 1000
DEFAULT_ZIP_RADIUS = 25


class ListingBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    category: ListingCategory
    condition: ListingCondition
    type: ListingType
    zip_code: str = Field(..., max_length=10)
    image_url: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)

class ListingCreate(ListingBase):
    pass

class ListingUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[ListingCategory] = None
    condition: Optional[ListingCondition] = None
    type: Optional[ListingType] = None
    zip_code: Optional[str] = Field(None, max_length=10)
    image_url: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)

class ListingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str
    category: str
    condition: str
    type: str
    zip_code: str
    image_url: Optional[str] = None
    price: Optional[float] = None
    status: str
    user_id: str
    buyer_id: Optional[str] = None
    sold_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class FilterCriteria(BaseModel):
    """Filter panel state, passed wholesale into every discovery run."""
    type: Optional[ListingType] = None
    category: Optional[ListingCategory] = None
    search_term: Optional[str] = None
    price_min: float = DEFAULT_PRICE_MIN
    price_max: float = DEFAULT_PRICE_MAX
    location: Optional[str] = None
    zip_radius: int = DEFAULT_ZIP_RADIUS

class DiscoveryResult(BaseModel):
    total_fetched: int
    items: List[ListingOut]


class UserProfile(BaseModel):
    email: str = Field(..., min_length=3)
    name: str = Field(..., min_length=1)
    church_name: Optional[str] = None
    church_role: Optional[str] = None
    zip_code: Optional[str] = Field(None, max_length=10)

class UserOut(UserProfile):
    model_config = ConfigDict(from_attributes=True)

    uid: str
    stripe_account_id: Optional[str] = None
    stripe_charges_enabled: bool = False
    stripe_payouts_enabled: bool = False
    stripe_details_submitted: bool = False
    total_sales: float = 0
    needs_full_verification: bool = False
    can_receive_payments: bool = False
    created_at: Optional[datetime] = None


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    listing_id: int
    participants: List[str]
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class MessageCreate(BaseModel):
    text: str = Field(..., max_length=5000)

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_id: str
    text: str
    created_at: Optional[datetime] = None


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    title: str
    message: str
    read: bool
    read_at: Optional[datetime] = None
    action_url: Optional[str] = None
    related_id: Optional[str] = None
    sender_name: Optional[str] = None
    created_at: Optional[datetime] = None

class UnreadCount(BaseModel):
    unread: int


class FavoriteToggleOut(BaseModel):
    favorited: bool


class CheckoutOut(BaseModel):
    session_id: str
    url: Optional[str] = None

class ConnectAccountOut(BaseModel):
    account_id: str
    onboarding_url: str

class AccountStatusOut(BaseModel):
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


class ZipLookupOut(BaseModel):
    zip_code: str

class NearbyCommunity(BaseModel):
    zip_code: str
    city: str
    state: str
    distance: float


class PriceSuggestion(BaseModel):
    suggested_price: int
    price_min: float
    price_max: float
    average_price: int
    total_listings: int
    # "listings" when computed from live Sell listings, "default" otherwise
    source: str

class CategoryCount(BaseModel):
    category: str
    count: int

class ActivityItem(BaseModel):
    type: str
    description: str
    timestamp: Optional[datetime] = None

class CommunityImpact(BaseModel):
    total_items_shared: int
    total_value_shared: float
    active_members: int
    top_categories: List[CategoryCount]
    recent_activity: List[ActivityItem]
