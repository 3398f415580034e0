import json
import threading
from datetime import datetime, timedelta, timezone
from http.server import ThreadingHTTPServer
from urllib.error import HTTPError
from urllib.request import urlopen

import pytest

import adoptipet.server as server
from adoptipet.collection import MemoryDatabase
from adoptipet.query import UnsupportedQueryError

NAMES = {"pets": "allPets", "users": "users", "donations": "donationsCollection"}


def _seeded_database():
    now = datetime.now(timezone.utc)
    database = MemoryDatabase()
    database.collection("users").insert_many(
        [{"_id": "u1", "name": "Ana", "email": "ana@example.com", "password": "pw"}]
    )
    database.collection("allPets").insert_many(
        [
            {
                "_id": f"p{i}",
                "pet_name": f"Pet {i}",
                "category": "Dog" if i % 2 else "Cat",
                "location": "Dhanmondi, Dhaka",
                "adopted": False,
                "created_at": now - timedelta(days=i),
                "added_by": "u1",
            }
            for i in range(10)
        ]
    )
    database.collection("donationsCollection").insert_many(
        [{"_id": f"d{i}", "pet_name": f"Pet {i}"} for i in range(3)]
    )
    return database


@pytest.fixture
def base_url():
    context = server.AppContext(collection=_seeded_database().collection, names=dict(NAMES))
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), server.make_handler(context))
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()


def _get(url):
    try:
        with urlopen(url, timeout=5) as response:
            return response.status, json.loads(response.read())
    except HTTPError as exc:
        return exc.code, json.loads(exc.read())


def test_all_pets_pages(base_url):
    status, body = _get(f"{base_url}/all-pets?limit=6&cursor=6")
    assert status == 200
    assert [pet["_id"] for pet in body["pets"]] == ["p6", "p7", "p8", "p9"]
    assert body["nextId"] is None
    assert body["previousId"] == 0
    assert body["total"] == 10


def test_all_pets_malformed_params_use_defaults(base_url):
    status, body = _get(f"{base_url}/all-pets?limit=abc&cursor=zzz")
    assert status == 200
    assert len(body["pets"]) == 6
    assert body["nextId"] == 6


def test_category_pets_requires_category(base_url):
    status, body = _get(f"{base_url}/category-pets")
    assert status == 400
    assert body == {"success": False, "message": "Category is required"}


def test_category_pets(base_url):
    status, body = _get(f"{base_url}/category-pets?category=cat&limit=2")
    assert status == 200
    assert body["total"] == 5
    assert [pet["_id"] for pet in body["pets"]] == ["p0", "p2"]


def test_donation_campaigns(base_url):
    status, body = _get(f"{base_url}/donation-campaigns")
    assert status == 200
    assert [doc["_id"] for doc in body["donations"]] == ["d0", "d1", "d2"]


def test_details(base_url):
    status, body = _get(f"{base_url}/pet-detail/p3")
    assert status == 200
    assert body["pet_name"] == "Pet 3"
    assert isinstance(body["created_at"], str)

    status, body = _get(f"{base_url}/donation-detail/nope")
    assert status == 404
    assert body["message"] == "Donation Campaign not found"


def test_recommendations(base_url):
    status, body = _get(f"{base_url}/api/pet-recommendations?categories=Dog&district=dhaka&limit=2")
    assert status == 200
    assert [pet["_id"] for pet in body] == ["p1", "p3"]
    assert body[0]["added_by"] == {"_id": "u1", "name": "Ana"}


def test_advanced_recommendations(base_url):
    status, body = _get(
        f"{base_url}/api/pet-recommendations/advanced?categories=Dog&categories=Cat&district=Dhaka"
    )
    assert status == 200
    assert [pet["_id"] for pet in body] == [f"p{i}" for i in range(10)]
    for pet in body:
        assert "totalScore" not in pet
        assert "email" not in pet["added_by"]
        assert "password" not in pet["added_by"]


def test_recommendation_failure_maps_to_500():
    class Broken:
        name = "allPets"

        def aggregate(self, pipeline):
            raise RuntimeError("db down")

        def count(self, query=None):
            raise RuntimeError("db down")

    context = server.AppContext(collection=lambda name: Broken(), names=dict(NAMES))
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), server.make_handler(context))
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        url = f"http://127.0.0.1:{httpd.server_address[1]}"
        status, body = _get(f"{url}/api/pet-recommendations?categories=Dog&district=x")
        assert status == 500
        assert body == {"error": "Failed to fetch recommendations", "message": "db down"}

        status, body = _get(f"{url}/all-pets")
        assert status == 500
        assert body["error"] == "db down"

        status, body = _get(f"{url}/api/health")
        assert status == 500
        assert body["ok"] is False
    finally:
        httpd.shutdown()
        httpd.server_close()


def test_health_and_unknown_route(base_url):
    assert _get(f"{base_url}/api/health") == (200, {"ok": True})
    status, _body = _get(f"{base_url}/nope")
    assert status == 404


def test_build_context_memory_and_unknown(monkeypatch):
    monkeypatch.delenv("ADOPTIPET_STORAGE", raising=False)
    context = server.build_context()
    context.pets.insert_many([{"_id": "x"}])
    assert context.pets.count() == 1
    with pytest.raises(ValueError):
        server.build_context("mongo")


def test_build_context_postgres_is_lazy():
    context = server.build_context("postgres")
    assert context.pets is context.pets
    assert context.pets.name == context.names["pets"]


def test_unsupported_store_query_maps_to_500():
    class Rejecting:
        name = "allPets"

        def count(self, query=None):
            raise UnsupportedQueryError("Unsupported filter operator: $text")

    context = server.AppContext(collection=lambda name: Rejecting(), names=dict(NAMES))
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), server.make_handler(context))
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        url = f"http://127.0.0.1:{httpd.server_address[1]}"
        for path in ("/all-pets", "/category-pets?category=Dog", "/donation-campaigns"):
            status, body = _get(f"{url}{path}")
            assert status == 500
            assert body["success"] is False
            assert body["error"] == "Unsupported filter operator: $text"
    finally:
        httpd.shutdown()
        httpd.server_close()
