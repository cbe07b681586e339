# marketplace/api/routes.py
import os
from fastapi import APIRouter, Depends, HTTPException, Query, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import List, Optional
import stripe
from .. import crud, schemas, services, payments
from ..db import get_db
from ..discovery import discover, runner_for, StaleRunError
from ..geo import ZipGeocoder, nearby_communities
from ..utils import logger

router = APIRouter()

LISTINGS_FETCH_LIMIT = int(os.getenv("LISTINGS_FETCH_LIMIT", "50"))


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id or None

def require_user(uid: Optional[str] = Depends(get_current_user_id)) -> str:
    if not uid:
        raise HTTPException(status_code=401, detail="Authentication required")
    return uid

async def get_geocoder():
    async with ZipGeocoder() as geocoder:
        yield geocoder


def _call(fn, *args):
    """Run a service call, mapping its exceptions onto HTTP errors."""
    try:
        return fn(*args)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/health")
def health():
    return {"status": "ok"}


# -- listings --------------------------------------------------------------

@router.get("/listings", response_model=schemas.DiscoveryResult)
async def listings(
    type: schemas.ListingType | None = Query(None),
    category: schemas.ListingCategory | None = Query(None),
    search: str | None = Query(None),
    price_min: float = Query(schemas.DEFAULT_PRICE_MIN),
    price_max: float = Query(schemas.DEFAULT_PRICE_MAX),
    location: str | None = Query(None),
    zip_radius: int = Query(schemas.DEFAULT_ZIP_RADIUS),
    sort: schemas.SortKey = Query(schemas.SortKey.NEWEST),
    limit: int = Query(LISTINGS_FETCH_LIMIT, ge=1, le=200),
    uid: Optional[str] = Depends(get_current_user_id),
    geocoder: ZipGeocoder = Depends(get_geocoder),
    db: Session = Depends(get_db)
):
    criteria = schemas.FilterCriteria(
        type=type, category=category, search_term=search,
        price_min=price_min, price_max=price_max,
        location=location, zip_radius=zip_radius,
    )
    if uid:
        try:
            fetched, items = await runner_for(uid).run(db, criteria, sort, geocoder=geocoder, limit=limit)
        except StaleRunError:
            raise HTTPException(status_code=409, detail="Superseded by a newer search")
    else:
        fetched, items = await discover(db, criteria, sort, geocoder=geocoder, limit=limit)
    return {"total_fetched": fetched, "items": items}


@router.get("/listings/price-suggestion", response_model=schemas.PriceSuggestion)
def price_suggestion(category: schemas.ListingCategory, db: Session = Depends(get_db)):
    return services.price_suggestion(db, category.value)


@router.post("/listings", response_model=schemas.ListingOut, status_code=201)
def create_listing(payload: schemas.ListingCreate, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return _call(services.create_listing, db, uid, payload.model_dump())


@router.get("/listings/{listing_id}", response_model=schemas.ListingOut)
def get_listing(listing_id: int, db: Session = Depends(get_db)):
    obj = crud.get_listing(db, listing_id)
    if not obj:
        raise HTTPException(status_code=404, detail="Listing not found")
    return obj


@router.patch("/listings/{listing_id}", response_model=schemas.ListingOut)
def update_listing(listing_id: int, payload: schemas.ListingUpdate, uid: str = Depends(require_user),
                   db: Session = Depends(get_db)):
    return _call(services.update_listing, db, listing_id, uid, payload.model_dump(exclude_unset=True))


@router.delete("/listings/{listing_id}")
def delete_listing(listing_id: int, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    _call(services.remove_listing, db, listing_id, uid)
    return {"status": "removed"}


@router.post("/listings/{listing_id}/conversation", response_model=schemas.ConversationOut)
def contact_seller(listing_id: int, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return _call(services.start_conversation, db, listing_id, uid)


@router.post("/listings/{listing_id}/favorite", response_model=schemas.FavoriteToggleOut)
def toggle_favorite(listing_id: int, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return {"favorited": _call(services.toggle_favorite, db, uid, listing_id)}


# -- users -----------------------------------------------------------------

@router.get("/users/me", response_model=schemas.UserOut)
def me(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    user = crud.get_user(db, uid)
    if not user:
        raise HTTPException(status_code=404, detail="Profile not found")
    return user


@router.put("/users/me", response_model=schemas.UserOut)
def complete_profile(payload: schemas.UserProfile, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return _call(services.complete_profile, db, uid, payload.model_dump())


@router.get("/users/me/listings", response_model=List[schemas.ListingOut])
def my_listings(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return crud.list_user_listings(db, uid)


@router.get("/favorites", response_model=List[schemas.ListingOut])
def favorites(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return crud.list_favorite_listings(db, uid)


@router.get("/community/impact", response_model=schemas.CommunityImpact)
def community_impact(db: Session = Depends(get_db)):
    return services.community_impact(db)


# -- conversations ---------------------------------------------------------

@router.get("/conversations", response_model=List[schemas.ConversationOut])
def conversations(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return crud.list_conversations(db, uid)


@router.get("/conversations/{conversation_id}/messages", response_model=List[schemas.MessageOut])
def messages(conversation_id: int, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return _call(services.conversation_messages, db, conversation_id, uid)


@router.post("/conversations/{conversation_id}/messages", response_model=schemas.MessageOut, status_code=201)
def send_message(conversation_id: int, payload: schemas.MessageCreate, uid: str = Depends(require_user),
                 db: Session = Depends(get_db)):
    return _call(services.send_message, db, conversation_id, uid, payload.text)


# -- notifications ---------------------------------------------------------

@router.get("/notifications", response_model=List[schemas.NotificationOut])
def notifications(limit: int = Query(20, ge=1, le=100), uid: str = Depends(require_user),
                  db: Session = Depends(get_db)):
    return crud.list_notifications(db, uid, limit=limit)


@router.get("/notifications/unread-count", response_model=schemas.UnreadCount)
def unread_count(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return {"unread": crud.unread_notification_count(db, uid)}


@router.post("/notifications/read-all")
def read_all(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    return {"updated": crud.mark_all_notifications_read(db, uid)}


@router.post("/notifications/{notification_id}/read", response_model=schemas.NotificationOut)
def read_one(notification_id: int, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    obj = crud.mark_notification_read(db, notification_id, uid)
    if not obj:
        raise HTTPException(status_code=404, detail="Notification not found")
    return obj


# -- location --------------------------------------------------------------

@router.get("/location/zip", response_model=schemas.ZipLookupOut)
async def zip_from_coordinates(lat: float = Query(..., ge=-90, le=90), lng: float = Query(..., ge=-180, le=180),
                               geocoder: ZipGeocoder = Depends(get_geocoder)):
    zip_code = await geocoder.zip_for_coordinates(lat, lng)
    if not zip_code:
        raise HTTPException(status_code=404, detail="Could not detect a ZIP code for this location")
    return {"zip_code": zip_code}


@router.get("/location/nearby", response_model=List[schemas.NearbyCommunity])
async def nearby(zip: str, radius: float = Query(schemas.DEFAULT_ZIP_RADIUS, gt=0),
                 geocoder: ZipGeocoder = Depends(get_geocoder)):
    return await nearby_communities(geocoder, zip, radius)


# -- payments --------------------------------------------------------------

@router.post("/payments/connect", response_model=schemas.ConnectAccountOut)
def connect_account(uid: str = Depends(require_user), db: Session = Depends(get_db)):
    user = crud.get_user(db, uid)
    if not user:
        raise HTTPException(status_code=404, detail="Profile not found")
    try:
        return payments.create_connect_account(db, user)
    except stripe.StripeError as e:
        logger.exception("Stripe Connect error: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create Stripe account")


@router.get("/payments/connect/{account_id}", response_model=schemas.AccountStatusOut)
def connect_status(account_id: str, uid: str = Depends(require_user)):
    try:
        return payments.account_status(account_id)
    except stripe.StripeError as e:
        logger.exception("Stripe account retrieval error: %s", e)
        raise HTTPException(status_code=500, detail="Failed to retrieve account status")


@router.post("/payments/checkout/{listing_id}", response_model=schemas.CheckoutOut)
def checkout(listing_id: int, uid: str = Depends(require_user), db: Session = Depends(get_db)):
    listing = crud.get_listing(db, listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    try:
        return _call(payments.create_checkout_session, db, listing, uid)
    except stripe.StripeError as e:
        logger.exception("Stripe checkout error: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create checkout session")


@router.post("/payments/webhook")
async def webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                  db: Session = Depends(get_db)):
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="No signature provided")
    payload = await request.body()
    try:
        event = payments.construct_event(payload, stripe_signature)
    except RuntimeError as e:
        logger.error("%s", e)
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        await run_in_threadpool(payments.handle_event, db, event)
    except Exception as e:
        logger.exception("Webhook error: %s", e)
        raise HTTPException(status_code=500, detail="Webhook handler failed")
    return {"received": True}
