# tests/test_api.py
import asyncio
from datetime import datetime

from marketplace import crud, discovery

SELLER = {"X-User-Id": "seller-1"}
BUYER = {"X-User-Id": "buyer-1"}


def _create(client, **kw):
    payload = {
        "title": "Folding Chairs", "description": "Gently used",
        "category": "Furniture", "condition": "Good", "type": "Give Away", "zip_code": "75201",
    }
    payload.update(kw)
    return client.post("/listings", json=payload, headers=SELLER)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_listing_requires_user(client, users):
    res = client.post("/listings", json={
        "title": "Desk", "category": "Furniture", "condition": "Good", "type": "Give Away", "zip_code": "75201",
    })
    assert res.status_code == 401


def test_create_listing_requires_profile(client, db):
    res = _create(client)
    assert res.status_code == 403


def test_create_listing_price_rules(client, users):
    assert _create(client, type="Sell").status_code == 400
    assert _create(client, type="Sell", price=0).status_code == 400
    assert _create(client, zip_code="752").status_code == 400

    res = _create(client, type="Share", price=40)
    assert res.status_code == 201
    assert res.json()["price"] is None

    res = _create(client, type="Sell", price=25)
    assert res.status_code == 201
    body = res.json()
    assert body["price"] == 25
    assert body["status"] == "active"
    assert body["user_id"] == "seller-1"


def test_create_listing_rejects_unknown_category(client, users):
    assert _create(client, category="Vehicles").status_code == 422


def test_discovery_filters_and_sorts(client, users):
    _create(client, title="Office Desk", type="Sell", price=120, zip_code="75204")
    _create(client, title="Folding Chairs", type="Sell", price=15, zip_code="75202")
    _create(client, title="Hymnals", type="Give Away", zip_code="75290")
    _create(client, title="Chair cushions", type="Share", zip_code="75201")

    res = client.get("/listings", params={"sort": "price-low"})
    assert res.status_code == 200
    body = res.json()
    assert body["total_fetched"] == 4
    assert [i["title"] for i in body["items"]][-2:] == ["Folding Chairs", "Office Desk"]

    res = client.get("/listings", params={"type": "Sell", "sort": "price-high"})
    assert [i["title"] for i in res.json()["items"]] == ["Office Desk", "Folding Chairs"]

    res = client.get("/listings", params={"search": "CHAIR"}, headers=BUYER)
    assert sorted(i["title"] for i in res.json()["items"]) == ["Chair cushions", "Folding Chairs"]

    res = client.get("/listings", params={"location": "75201", "zip_radius": 5})
    assert sorted(i["title"] for i in res.json()["items"]) == ["Chair cushions", "Folding Chairs"]

    res = client.get("/listings", params={"price_min": 10, "price_max": 100})
    assert [i["title"] for i in res.json()["items"]] == ["Folding Chairs"]


def test_discovery_unknown_anchor_means_no_restriction(client, users):
    _create(client, zip_code="75201")
    _create(client, zip_code="10001")
    res = client.get("/listings", params={"location": "99999", "zip_radius": 25})
    assert len(res.json()["items"]) == 2


def test_removed_listing_leaves_discovery(client, users):
    listing_id = _create(client).json()["id"]
    assert client.delete(f"/listings/{listing_id}", headers=BUYER).status_code == 403
    assert client.delete(f"/listings/{listing_id}", headers=SELLER).json() == {"status": "removed"}
    assert client.get("/listings").json()["items"] == []
    assert client.get(f"/listings/{listing_id}").json()["status"] == "removed"
    assert client.get("/listings/999").status_code == 404


def test_update_listing(client, users):
    listing_id = _create(client, type="Sell", price=30).json()["id"]
    res = client.patch(f"/listings/{listing_id}", json={"price": 45}, headers=SELLER)
    assert res.json()["price"] == 45
    res = client.patch(f"/listings/{listing_id}", json={"type": "Give Away"}, headers=SELLER)
    assert res.json()["price"] is None
    assert client.patch(f"/listings/{listing_id}", json={"title": "x"}, headers=BUYER).status_code == 403


def test_profile_round_trip(client, db):
    res = client.put("/users/me", json={"email": "ann@stmark.org", "name": "Ann", "zip_code": "30301"},
                     headers={"X-User-Id": "ann"})
    assert res.status_code == 200
    body = client.get("/users/me", headers={"X-User-Id": "ann"}).json()
    assert body["name"] == "Ann"
    assert body["can_receive_payments"] is False
    assert client.get("/users/me", headers={"X-User-Id": "nobody"}).status_code == 404


def test_conversation_flow_notifies_participants(client, users):
    listing_id = _create(client).json()["id"]
    assert client.post(f"/listings/{listing_id}/conversation", headers=SELLER).status_code == 400

    conv = client.post(f"/listings/{listing_id}/conversation", headers=BUYER).json()
    again = client.post(f"/listings/{listing_id}/conversation", headers=BUYER).json()
    assert conv["id"] == again["id"]
    assert conv["participants"] == ["buyer-1", "seller-1"]

    url = f"/conversations/{conv['id']}/messages"
    assert client.post(url, json={"text": "   "}, headers=BUYER).status_code == 400
    assert client.post(url, json={"text": "hi"}, headers={"X-User-Id": "stranger"}).status_code == 403
    assert client.post(url, json={"text": " Still available? "}, headers=BUYER).status_code == 201
    client.post(url, json={"text": "Yes"}, headers=SELLER)

    assert [m["text"] for m in client.get(url, headers=SELLER).json()] == ["Still available?", "Yes"]
    assert client.get("/conversations", headers=BUYER).json()[0]["last_message"] == "Yes"

    seller_notes = client.get("/notifications", headers=SELLER).json()
    assert {n["type"] for n in seller_notes} == {"conversation", "message"}
    assert seller_notes[0]["sender_name"] == "Bea"
    buyer_notes = client.get("/notifications", headers=BUYER).json()
    assert [n["type"] for n in buyer_notes] == ["message"]
    assert buyer_notes[0]["message"] == 'Sam sent you a message about "Folding Chairs"'

    assert client.get("/notifications/unread-count", headers=SELLER).json() == {"unread": 2}
    client.post(f"/notifications/{seller_notes[0]['id']}/read", headers=SELLER)
    assert client.get("/notifications/unread-count", headers=SELLER).json() == {"unread": 1}
    assert client.post("/notifications/read-all", headers=SELLER).json() == {"updated": 1}


def test_favorite_toggle(client, users):
    listing_id = _create(client).json()["id"]
    assert client.post(f"/listings/{listing_id}/favorite", headers=BUYER).json() == {"favorited": True}
    assert [item["id"] for item in client.get("/favorites", headers=BUYER).json()] == [listing_id]
    assert client.get("/notifications", headers=SELLER).json()[0]["type"] == "favorite"

    assert client.post(f"/listings/{listing_id}/favorite", headers=BUYER).json() == {"favorited": False}
    assert client.get("/favorites", headers=BUYER).json() == []
    assert client.post("/listings/999/favorite", headers=BUYER).status_code == 404


def test_location_endpoints(client, geocoder):
    geocoder.reverse[(32.78, -96.8)] = "75201"
    assert client.get("/location/zip", params={"lat": 32.78, "lng": -96.8}).json() == {"zip_code": "75201"}
    assert client.get("/location/zip", params={"lat": 1, "lng": 1}).status_code == 404

    res = client.get("/location/nearby", params={"zip": "75201", "radius": 10})
    assert [c["zip_code"] for c in res.json()] == ["75202", "75204"]


def test_discovery_reads_the_store_off_the_event_loop(client, users, monkeypatch):
    threads = []
    fetch = crud.fetch_recent_listings

    def spy(db, limit=50):
        try:
            asyncio.get_running_loop()
            threads.append("event loop")
        except RuntimeError:
            threads.append("worker")
        return fetch(db, limit=limit)

    monkeypatch.setattr(crud, "fetch_recent_listings", spy)
    _create(client)
    assert len(client.get("/listings").json()["items"]) == 1
    assert len(client.get("/listings", headers=BUYER).json()["items"]) == 1
    assert threads == ["worker", "worker"]


def test_discovery_runners_released_after_each_search(client, users):
    _create(client)
    for n in range(30):
        res = client.get("/listings", headers={"X-User-Id": f"member-{n}"})
        assert res.status_code == 200
    assert discovery._runners == {}


def test_price_suggestion_from_sell_listings(client, users):
    for price in (10, 20, 40):
        _create(client, type="Sell", price=price)
    _create(client, type="Sell", price=500, category="Office Supplies")
    _create(client, title="Free chairs")

    res = client.get("/listings/price-suggestion", params={"category": "Furniture"})
    assert res.status_code == 200
    assert res.json() == {
        "suggested_price": 21, "price_min": 10, "price_max": 40,
        "average_price": 23, "total_listings": 3, "source": "listings",
    }


def test_price_suggestion_falls_back_to_category_defaults(client, users):
    _create(client, type="Sell", price=15)
    _create(client, type="Sell", price=25)
    body = client.get("/listings/price-suggestion", params={"category": "Furniture"}).json()
    assert (body["suggested_price"], body["total_listings"], body["source"]) == (67, 31, "default")

    body = client.get("/listings/price-suggestion", params={"category": "Event Items"}).json()
    assert (body["suggested_price"], body["price_min"], body["price_max"]) == (25, 10, 80)

    assert client.get("/listings/price-suggestion", params={"category": "Vehicles"}).status_code == 422
    assert client.get("/listings/price-suggestion").status_code == 422


def test_community_impact(client, db, users):
    _create(client, title="Hymnals", category="Books & Resources")
    _create(client, title="Folding Chairs")
    _create(client, title="Projector Screen", type="Share")
    sold_id = _create(client, title="Projector", type="Sell", price=50).json()["id"]
    sold = crud.get_listing(db, sold_id)
    sold.status = "sold"
    sold.sold_at = datetime(2100, 1, 1)
    db.commit()

    res = client.get("/community/impact")
    assert res.status_code == 200
    body = res.json()
    assert body["total_items_shared"] == 3
    assert body["total_value_shared"] == 50
    assert body["active_members"] == 1
    assert body["top_categories"] == [
        {"category": "Furniture", "count": 2}, {"category": "Books & Resources", "count": 1},
    ]
    activity = body["recent_activity"]
    assert activity[0] == {"type": "purchase", "description": "Projector purchased",
                           "timestamp": "2100-01-01T00:00:00"}
    assert sorted(a["description"] for a in activity[1:]) == [
        "Folding Chairs shared with the community",
        "Hymnals shared with the community",
        "Projector Screen shared with the community",
    ]


def test_community_impact_empty(client):
    assert client.get("/community/impact").json() == {
        "total_items_shared": 0, "total_value_shared": 0, "active_members": 0,
        "top_categories": [], "recent_activity": [],
    }
