# marketplace/discovery.py
"""Listing discovery: fetch recent listings, filter them, sort them.

Every change to the filter panel re-runs the whole pipeline; nothing is
cached between runs, including the nearby-ZIP set.
"""
import itertools
from typing import List, Optional, Sequence, Dict, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from . import crud
from .geo import ZipGeocoder, resolve_nearby_zips
from .schemas import FilterCriteria, SortKey, ListingType, DEFAULT_PRICE_MIN, DEFAULT_PRICE_MAX
from .utils import logger


def effective_price(listing) -> float:
    """Stated price for Sell listings, 0 for everything else."""
    if listing.type == ListingType.SELL.value:
        return float(listing.price or 0)
    return 0.0


def price_filter_active(criteria: FilterCriteria) -> bool:
    # the untouched default range never excludes anything
    return not (criteria.price_min == DEFAULT_PRICE_MIN and criteria.price_max == DEFAULT_PRICE_MAX)


def proximity_filter_active(criteria: FilterCriteria) -> bool:
    return bool(criteria.location) and criteria.zip_radius > 0


def _matches_search(listing, term: str) -> bool:
    term = term.lower()
    return term in (listing.title or "").lower() or term in (listing.description or "").lower()


def fetch_recent_listings(db: Session, limit: int = 50) -> List:
    """Active listings, newest first. Store errors yield an empty list."""
    try:
        return crud.fetch_recent_listings(db, limit=limit)
    except SQLAlchemyError as e:
        logger.error("Error fetching listings: %s", e)
        return []


async def apply_filters(listings: Sequence, criteria: FilterCriteria, geocoder=None) -> List:
    """Narrow ``listings`` by every active predicate, preserving input order.

    The proximity pass runs last since it is the only one doing network I/O.
    If the anchor ZIP cannot be resolved the proximity pass is skipped and
    the result is what the other predicates produced.
    """
    filtered = list(listings)

    if criteria.type:
        filtered = [listing for listing in filtered if listing.type == criteria.type.value]

    if criteria.category:
        filtered = [listing for listing in filtered if listing.category == criteria.category.value]

    if criteria.search_term:
        filtered = [listing for listing in filtered if _matches_search(listing, criteria.search_term)]

    if price_filter_active(criteria):
        filtered = [
            listing for listing in filtered
            if criteria.price_min <= effective_price(listing) <= criteria.price_max
        ]

    if proximity_filter_active(criteria):
        try:
            if geocoder is None:
                async with ZipGeocoder() as gc:
                    nearby = await resolve_nearby_zips(gc, criteria.location, criteria.zip_radius)
            else:
                nearby = await resolve_nearby_zips(geocoder, criteria.location, criteria.zip_radius)
        except Exception as e:
            logger.exception("Error filtering by location: %s", e)
            nearby = set()
        if nearby:
            filtered = [listing for listing in filtered if listing.zip_code in nearby]
        else:
            logger.warning("Proximity filter skipped for anchor %r", criteria.location)

    return filtered


def sort_listings(listings: Sequence, sort_key: SortKey = SortKey.NEWEST) -> List:
    """Return a new, stably sorted list; equal keys keep their input order."""
    sort_key = SortKey(sort_key or SortKey.NEWEST)
    if sort_key in (SortKey.PRICE_LOW, SortKey.PRICE_HIGH):
        return sorted(listings, key=effective_price, reverse=sort_key == SortKey.PRICE_HIGH)
    # listings without a timestamp sort as the oldest
    def created(listing):
        return (listing.created_at is not None, listing.created_at)
    return sorted(listings, key=created, reverse=sort_key == SortKey.NEWEST)


async def discover(db: Session, criteria: FilterCriteria, sort_key: SortKey = SortKey.NEWEST,
                   geocoder=None, limit: int = 50) -> Tuple[int, List]:
    """Run fetch -> filter -> sort; returns ``(fetched_count, ordered_listings)``."""
    # the session is synchronous; keep its round trip off the event loop
    listings = await run_in_threadpool(fetch_recent_listings, db, limit)
    filtered = await apply_filters(listings, criteria, geocoder=geocoder)
    return len(listings), sort_listings(filtered, sort_key)


class StaleRunError(Exception):
    """A discovery run finished after a newer run for the same caller started."""


class DiscoveryRunner:
    """Tags each run with a generation so late, superseded results are dropped.

    Without this, a slow proximity lookup for an old filter state could
    finish after a newer one and overwrite its results.
    """

    def __init__(self, caller_id: Optional[str] = None, registry: Optional[Dict[str, "DiscoveryRunner"]] = None):
        self._counter = itertools.count(1)
        self.latest = 0
        self.caller_id = caller_id
        self.registry = registry

    def begin(self) -> int:
        self.latest = next(self._counter)
        return self.latest

    def is_current(self, generation: int) -> bool:
        return generation == self.latest

    async def run(self, db: Session, criteria: FilterCriteria, sort_key: SortKey = SortKey.NEWEST,
                  geocoder=None, limit: int = 50) -> Tuple[int, List]:
        generation = self.begin()
        try:
            result = await discover(db, criteria, sort_key, geocoder=geocoder, limit=limit)
        finally:
            # the newest run is done, so nothing for this caller is in flight
            if self.is_current(generation) and self.registry is not None \
                    and self.registry.get(self.caller_id) is self:
                del self.registry[self.caller_id]
        if not self.is_current(generation):
            logger.info("Discarding stale discovery run %d (latest is %d)", generation, self.latest)
            raise StaleRunError(generation)
        return result


_runners: Dict[str, DiscoveryRunner] = {}

def runner_for(caller_id: str) -> DiscoveryRunner:
    # per-process; each worker tracks its own generations. Entries live only
    # while a run for the caller is in flight.
    runner = _runners.get(caller_id)
    if runner is None:
        runner = _runners[caller_id] = DiscoveryRunner(caller_id, _runners)
    return runner
