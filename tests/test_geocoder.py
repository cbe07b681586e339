# tests/test_geocoder.py
import asyncio
import logging

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from marketplace.geo import ZipGeocoder

SLOW_SECONDS = 0.5
TIMEOUT = 0.1

DALLAS_PLACE = {
    "post code": "75201",
    "places": [{
        "place name": "Dallas", "longitude": "-96.8049",
        "state": "Texas", "state abbreviation": "TX", "latitude": "32.7887",
    }],
}


async def zip_handler(request):
    zip_code = request.match_info["zip"]
    if zip_code == "75201":
        return web.json_response(DALLAS_PLACE)
    if zip_code == "11111":
        return web.Response(text="<html>maintenance</html>", content_type="text/html")
    if zip_code == "22222":
        await asyncio.sleep(SLOW_SECONDS)
        return web.json_response(DALLAS_PLACE)
    if zip_code == "33333":
        return web.json_response({"post code": "33333", "places": []})
    if zip_code == "44444":
        return web.json_response([])
    return web.json_response({}, status=404)


async def reverse_handler(request):
    request.app["queries"].append(dict(request.query))
    latitude = request.query.get("latitude")
    if latitude == "32.78":
        return web.json_response({"postcode": "75201", "city": "Dallas"})
    if latitude == "1.0":
        return web.json_response({"postcode": ""})
    if latitude == "2.0":
        return web.Response(status=503, text="unavailable")
    if latitude == "3.0":
        return web.Response(text="not json")
    if latitude == "4.0":
        await asyncio.sleep(SLOW_SECONDS)
        return web.json_response({"postcode": "75201"})
    return web.json_response(["unexpected"])


@pytest_asyncio.fixture
async def geo_server():
    app = web.Application()
    app["queries"] = []
    app.router.add_get("/us/{zip}", zip_handler)
    app.router.add_get("/reverse", reverse_handler)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


def _geocoder(server, **kw):
    base = f"http://{server.host}:{server.port}"
    return ZipGeocoder(zip_url=base + "/us/{zip}", reverse_url=base + "/reverse", timeout=TIMEOUT, **kw)


@pytest.mark.asyncio
async def test_place_for_zip(geo_server):
    async with _geocoder(geo_server) as geocoder:
        assert await geocoder.place_for_zip("75201") == {
            "city": "Dallas", "state": "TX", "lat": 32.7887, "lng": -96.8049,
        }
        assert await geocoder.coordinates_for_zip("75201") == (32.7887, -96.8049)
        assert await geocoder.city_state_for_zip("75201") == ("Dallas", "TX")


@pytest.mark.asyncio
async def test_place_for_zip_failures_return_none(geo_server, caplog):
    async with _geocoder(geo_server) as geocoder:
        with caplog.at_level(logging.WARNING):
            assert await geocoder.place_for_zip("00000") is None
            assert await geocoder.place_for_zip("11111") is None
            assert await geocoder.place_for_zip("22222") is None
            assert await geocoder.place_for_zip("33333") is None
            assert await geocoder.place_for_zip("44444") is None
        assert await geocoder.city_state_for_zip("00000") is None
        assert await geocoder.coordinates_for_zip("22222") is None
    assert "ZIP lookup failed for 11111" in caplog.text
    assert "ZIP lookup failed for 22222" in caplog.text


@pytest.mark.asyncio
async def test_place_for_zip_skips_malformed_zip(geo_server):
    async with _geocoder(geo_server) as geocoder:
        assert await geocoder.place_for_zip("752") is None
        assert await geocoder.place_for_zip("abcde") is None


@pytest.mark.asyncio
async def test_zip_for_coordinates(geo_server):
    async with _geocoder(geo_server) as geocoder:
        assert await geocoder.zip_for_coordinates(32.78, -96.8) == "75201"
    assert geo_server.app["queries"] == [
        {"latitude": "32.78", "longitude": "-96.8", "localityLanguage": "en"},
    ]


@pytest.mark.asyncio
async def test_zip_for_coordinates_failures_return_none(geo_server, caplog):
    async with _geocoder(geo_server) as geocoder:
        with caplog.at_level(logging.WARNING):
            assert await geocoder.zip_for_coordinates(1.0, 1.0) is None
            assert await geocoder.zip_for_coordinates(2.0, 2.0) is None
            assert await geocoder.zip_for_coordinates(3.0, 3.0) is None
            assert await geocoder.zip_for_coordinates(4.0, 4.0) is None
            assert await geocoder.zip_for_coordinates(5.0, 5.0) is None
    assert "Reverse geocode returned HTTP 503" in caplog.text
    assert "Reverse geocode failed for (4.0, 4.0)" in caplog.text


@pytest.mark.asyncio
async def test_unreachable_service_returns_none():
    geocoder = ZipGeocoder(zip_url="http://127.0.0.1:1/us/{zip}", reverse_url="http://127.0.0.1:1/reverse",
                           timeout=TIMEOUT)
    try:
        assert await geocoder.place_for_zip("75201") is None
        assert await geocoder.zip_for_coordinates(32.78, -96.8) is None
    finally:
        await geocoder.close()


@pytest.mark.asyncio
async def test_owned_session_is_closed(geo_server):
    async with _geocoder(geo_server) as geocoder:
        session = geocoder.session
        assert not session.closed
    assert session.closed

    geocoder = _geocoder(geo_server)
    assert geocoder.session is None
    await geocoder.close()
    assert await geocoder.place_for_zip("75201") is not None
    await geocoder.close()
    assert geocoder.session.closed


@pytest.mark.asyncio
async def test_shared_session_is_left_open(geo_server):
    async with aiohttp.ClientSession() as session:
        geocoder = _geocoder(geo_server, session=session)
        assert await geocoder.coordinates_for_zip("75201") == (32.7887, -96.8049)
        await geocoder.close()
        assert not session.closed
        assert geocoder.session is session
