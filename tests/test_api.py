"""Tests for the HTTP layer."""

import mongomock
from bson import ObjectId
from fastapi.testclient import TestClient

from main import create_app


def _register(client, email="alice@example.com", name="Alice", password="wonderland"):
    response = client.post("/register", json={
        "email": email, "name": name, "password": password, "password-confirm": password,
    })
    assert response.status_code == 200, response.text
    return response.json()


def _headers(session):
    return {"Authorization": f"Bearer {session['access_token']}"}


def _store(name="Coffee Corner", tags=("cafe",)):
    return {
        "name": name,
        "description": "Coffee",
        "tags": list(tags),
        "location": {"address": "1 Main St", "coordinates": [-79.38, 43.65]},
    }


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_no_database_answers_503():
    client = TestClient(create_app(None))
    assert client.get("/stores").status_code == 503
    assert client.get("/health").status_code == 200


def test_register_and_login(client):
    session = _register(client)
    assert session["user"]["email"] == "alice@example.com"
    assert "password_hash" not in session["user"]

    response = client.post("/login", json={"email": "alice@example.com", "password": "wonderland"})
    assert response.status_code == 200
    assert client.get("/account", headers=_headers(response.json())).json()["name"] == "Alice"


def test_register_password_mismatch(client):
    response = client.post("/register", json={
        "email": "a@example.com", "name": "A", "password": "x", "password-confirm": "y",
    })
    assert response.status_code == 422
    assert response.json()["detail"] == "Passwords do not match!"


def test_register_duplicate_email(client):
    _register(client)
    response = client.post("/register", json={
        "email": "alice@example.com", "name": "A", "password": "x", "password-confirm": "x",
    })
    assert response.status_code == 409


def test_login_failure_is_generic(client):
    _register(client)
    wrong_password = client.post("/login", json={"email": "alice@example.com", "password": "nope"})
    no_user = client.post("/login", json={"email": "ghost@example.com", "password": "nope"})
    assert wrong_password.status_code == no_user.status_code == 401
    assert wrong_password.json() == no_user.json()


def test_protected_routes_require_login(client):
    assert client.post("/add", json=_store()).status_code == 401
    assert client.get("/hearts").status_code == 401
    assert client.get("/account", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_store_lifecycle(client):
    alice = _register(client)
    bob = _register(client, "bob@example.com", "Bob", "builder")

    created = client.post("/add", json=_store(), headers=_headers(alice))
    assert created.status_code == 200
    store = created.json()["store"]
    assert store["slug"] == "coffee-corner"

    forbidden = client.post(f"/add/{store['id']}", json=_store("Hijack"), headers=_headers(bob))
    assert forbidden.status_code == 403
    assert client.get(f"/stores/{store['id']}/edit", headers=_headers(bob)).status_code == 403

    updated = client.post(f"/add/{store['id']}", json=_store("Tea Time"), headers=_headers(alice))
    assert updated.json()["store"]["slug"] == "tea-time"

    review = client.post(f"/reviews/{store['id']}", json={"rating": 5, "text": "Yum"}, headers=_headers(bob))
    assert review.status_code == 200

    page = client.get("/store/tea-time").json()["store"]
    assert page["author"]["name"] == "Alice"
    assert page["reviews"][0]["author"]["name"] == "Bob"

    assert client.get("/store/missing").status_code == 404


def test_invalid_store_is_rejected(client):
    alice = _register(client)
    data = _store()
    del data["location"]["address"]
    response = client.post("/add", json=data, headers=_headers(alice))
    assert response.status_code == 422
    assert "address" in response.json()["detail"]


def test_list_redirects_past_last_page(client):
    alice = _register(client)
    for i in range(5):
        client.post("/add", json=_store(f"Store {i}"), headers=_headers(alice))

    listing = client.get("/stores").json()
    assert listing["count"] == 5
    assert listing["pages"] == 2
    assert len(listing["stores"]) == 4

    response = client.get("/stores/page/9", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/stores/page/2"


def test_tags_and_top(client):
    alice = _register(client)
    client.post("/add", json=_store("A", tags=["cafe", "wifi"]), headers=_headers(alice))
    client.post("/add", json=_store("B", tags=["cafe"]), headers=_headers(alice))

    tags = client.get("/tags").json()
    assert tags["tags"][0] == {"_id": "cafe", "count": 2}
    assert [s["name"] for s in client.get("/tags/wifi").json()["stores"]] == ["A"]
    assert client.get("/top").json() == {"stores": []}


def test_heart_toggle(client):
    alice = _register(client)
    store = client.post("/add", json=_store(), headers=_headers(alice)).json()["store"]

    hearted = client.post(f"/api/stores/{store['id']}/heart", headers=_headers(alice))
    assert hearted.json() == {"hearts": [store["id"]]}
    assert [s["id"] for s in client.get("/hearts", headers=_headers(alice)).json()["stores"]] == [store["id"]]

    unhearted = client.post(f"/api/stores/{store['id']}/heart", headers=_headers(alice))
    assert unhearted.json() == {"hearts": []}


def test_update_account(client):
    alice = _register(client)
    response = client.post("/account", json={"name": "Alice L", "email": "alice@example.com"}, headers=_headers(alice))
    assert response.json()["user"]["name"] == "Alice L"


def test_forgot_and_reset_flow(client, mailer, db):
    _register(client)

    unknown = client.post("/account/forgot", json={"email": "ghost@example.com"})
    known = client.post("/account/forgot", json={"email": "alice@example.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json() == known.json()
    assert len(mailer.sent) == 1

    token = db["user"].find_one({"email": "alice@example.com"})["reset_password_token"]
    assert mailer.sent[0]["reset_url"] == f"http://testserver/account/reset/{token}"

    assert client.get(f"/account/reset/{token}").status_code == 200
    assert client.get("/account/reset/bogus").status_code == 404

    mismatch = client.post(f"/account/reset/{token}", json={"password": "a", "password-confirm": "b"})
    assert mismatch.status_code == 422

    reset = client.post(f"/account/reset/{token}", json={"password": "fresh", "password-confirm": "fresh"})
    assert reset.status_code == 200
    assert client.get("/account", headers=_headers(reset.json())).json()["email"] == "alice@example.com"

    again = client.post(f"/account/reset/{token}", json={"password": "x", "password-confirm": "x"})
    assert again.status_code == 404
    assert again.json()["detail"] == "Password reset is invalid or has expired"


def test_review_for_unknown_store(client):
    alice = _register(client)
    response = client.post(f"/reviews/{ObjectId()}", json={"rating": 3, "text": "?"}, headers=_headers(alice))
    assert response.status_code == 404


def test_app_builds_its_own_repositories():
    database = mongomock.MongoClient().db
    client = TestClient(create_app(database))
    assert client.get("/stores").json()["count"] == 0
