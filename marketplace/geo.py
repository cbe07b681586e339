# marketplace/geo.py
"""ZIP-code geocoding and the nearby-ZIP resolver used by proximity filtering.

Nearby ZIPs are approximated: the resolver walks a window of numerically
adjacent ZIP codes around the anchor and keeps those whose centroid lies
within the radius. Numerically adjacent ZIPs are not guaranteed to be
geographically adjacent, and the walk stops after ``NEARBY_ZIP_CAP``
accepted candidates, so the result can under-report.
"""
import os
import re
import math
import asyncio
from typing import Optional, Tuple, List, Set, Dict, Any
import aiohttp
from dotenv import load_dotenv
from .utils import logger

load_dotenv()
ZIP_LOOKUP_URL = os.getenv("ZIP_LOOKUP_URL", "https://api.zippopotam.us/us/{zip}")
REVERSE_GEOCODE_URL = os.getenv(
    "REVERSE_GEOCODE_URL", "https://api.bigdatacloud.net/data/reverse-geocode-client"
)
GEOCODE_TIMEOUT = float(os.getenv("GEOCODE_TIMEOUT", "10"))
ZIP_CANDIDATE_WINDOW = int(os.getenv("ZIP_CANDIDATE_WINDOW", "100"))
NEARBY_ZIP_CAP = int(os.getenv("NEARBY_ZIP_CAP", "20"))
GEOCODE_CONCURRENCY = int(os.getenv("GEOCODE_CONCURRENCY", "1"))

EARTH_RADIUS_MILES = 3959
COMMUNITY_LIMIT = 10

_ZIP_RE = re.compile(r"^\d{5}$")


def is_zip_code(value) -> bool:
    return isinstance(value, str) and bool(_ZIP_RE.match(value))


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in miles between two lat/lng points."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def candidate_zips(anchor_zip: str, window: int = ZIP_CANDIDATE_WINDOW) -> List[str]:
    """ZIP codes within +/- window of the anchor's numeric value, anchor excluded."""
    base = int(anchor_zip)
    out = []
    for offset in range(-window, window + 1):
        n = base + offset
        if n < 0 or n > 99999:
            continue
        candidate = f"{n:05d}"
        if candidate != anchor_zip:
            out.append(candidate)
    return out


def _parse_place(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not isinstance(data, dict):
        return None
    places = data.get("places") or []
    if not places:
        return None
    place = places[0]
    return {
        "city": place.get("place name"),
        "state": place.get("state abbreviation"),
        "lat": float(place["latitude"]),
        "lng": float(place["longitude"]),
    }


class ZipGeocoder:
    """Async client for the geocode-by-ZIP and reverse-geocode services.

    Lookups never raise for transport or lookup failures; they log and
    return ``None``.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None,
                 zip_url: str = ZIP_LOOKUP_URL, reverse_url: str = REVERSE_GEOCODE_URL,
                 timeout: float = GEOCODE_TIMEOUT):
        self.session = session
        self._owns_session = session is None
        self.zip_url = zip_url
        self.reverse_url = reverse_url
        self.timeout = timeout

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self.session

    async def close(self):
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def place_for_zip(self, zip_code: str) -> Optional[Dict[str, Any]]:
        if not is_zip_code(zip_code):
            return None
        session = await self._get_session()
        try:
            async with session.get(self.zip_url.format(zip=zip_code)) as response:
                if response.status != 200:
                    return None
                data = await response.json(content_type=None)
            return _parse_place(data)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
            logger.warning("ZIP lookup failed for %s: %s", zip_code, e)
            return None

    async def coordinates_for_zip(self, zip_code: str) -> Optional[Tuple[float, float]]:
        place = await self.place_for_zip(zip_code)
        if place is None:
            return None
        return place["lat"], place["lng"]

    async def city_state_for_zip(self, zip_code: str) -> Optional[Tuple[str, str]]:
        place = await self.place_for_zip(zip_code)
        if place is None:
            return None
        return place["city"], place["state"]

    async def zip_for_coordinates(self, lat: float, lng: float) -> Optional[str]:
        session = await self._get_session()
        params = {"latitude": str(lat), "longitude": str(lng), "localityLanguage": "en"}
        try:
            async with session.get(self.reverse_url, params=params) as response:
                if response.status != 200:
                    logger.warning("Reverse geocode returned HTTP %s", response.status)
                    return None
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Reverse geocode failed for (%s, %s): %s", lat, lng, e)
            return None
        if not isinstance(data, dict):
            return None
        return data.get("postcode") or None


async def _safe_coordinates(geocoder, zip_code: str) -> Optional[Tuple[float, float]]:
    try:
        return await geocoder.coordinates_for_zip(zip_code)
    except Exception as e:
        logger.warning("Skipping candidate ZIP %s: %s", zip_code, e)
        return None


async def nearby_candidates(geocoder, anchor_zip: str, radius_miles: float,
                            anchor_coords: Tuple[float, float],
                            window: int = ZIP_CANDIDATE_WINDOW,
                            cap: int = NEARBY_ZIP_CAP,
                            concurrency: int = GEOCODE_CONCURRENCY) -> List[Tuple[str, float]]:
    """Accepted ``(zip, distance)`` pairs in candidate-window order.

    Lookups are dispatched ``concurrency`` at a time. Acceptance is decided in
    window order and stops at ``cap``, so the result is the same for any
    concurrency; larger batches only spend a few extra lookups past the cap.
    """
    concurrency = max(1, concurrency)
    candidates = candidate_zips(anchor_zip, window)
    accepted: List[Tuple[str, float]] = []
    for start in range(0, len(candidates), concurrency):
        batch = candidates[start:start + concurrency]
        results = await asyncio.gather(*(_safe_coordinates(geocoder, z) for z in batch))
        for zip_code, coords in zip(batch, results):
            if coords is None:
                continue
            distance = haversine_miles(anchor_coords[0], anchor_coords[1], coords[0], coords[1])
            if distance <= radius_miles:
                accepted.append((zip_code, distance))
                if len(accepted) >= cap:
                    return accepted
    return accepted


async def resolve_nearby_zips(geocoder, anchor_zip: str, radius_miles: float,
                              window: int = ZIP_CANDIDATE_WINDOW,
                              cap: int = NEARBY_ZIP_CAP,
                              concurrency: int = GEOCODE_CONCURRENCY) -> Set[str]:
    """ZIP codes judged within ``radius_miles`` of ``anchor_zip``, anchor included.

    Returns an empty set when the anchor cannot be resolved (malformed ZIP,
    unknown ZIP or lookup failure); callers treat that as "no restriction".
    """
    if not is_zip_code(anchor_zip):
        logger.warning("Ignoring proximity anchor %r: not a 5-digit ZIP", anchor_zip)
        return set()
    try:
        anchor_coords = await geocoder.coordinates_for_zip(anchor_zip)
    except Exception as e:
        logger.warning("Anchor ZIP lookup failed for %s: %s", anchor_zip, e)
        return set()
    if anchor_coords is None:
        logger.warning("Anchor ZIP %s could not be resolved", anchor_zip)
        return set()
    accepted = await nearby_candidates(
        geocoder, anchor_zip, radius_miles, anchor_coords,
        window=window, cap=cap, concurrency=concurrency,
    )
    nearby = {zip_code for zip_code, _ in accepted}
    nearby.add(anchor_zip)
    return nearby


async def nearby_communities(geocoder, zip_code: str, radius_miles: float,
                             limit: int = COMMUNITY_LIMIT) -> List[Dict[str, Any]]:
    """Nearby ZIPs with city/state and distance, closest first."""
    if not is_zip_code(zip_code):
        return []
    center = await geocoder.place_for_zip(zip_code)
    if center is None:
        return []
    anchor_coords = (center["lat"], center["lng"])
    accepted = await nearby_candidates(geocoder, zip_code, radius_miles, anchor_coords)
    communities = []
    for nearby_zip, distance in accepted[:limit]:
        place = await geocoder.place_for_zip(nearby_zip)
        if place is None:
            continue
        communities.append({
            "zip_code": nearby_zip,
            "city": place["city"],
            "state": place["state"],
            "distance": round(distance, 1),
        })
    return sorted(communities, key=lambda c: c["distance"])
