from bson import ObjectId

import main


class _GoogleResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data

    def json(self):
        return self._data


def test_register_login_and_me(client, mock_db):
    r = client.post("/auth/register", json={"name": "Alice", "email": "Alice@Example.com", "password": "s3cretpass"})
    assert r.status_code == 201
    body = r.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "alice@example.com"
    assert "password" not in body["user"]
    assert body["user"]["isPublic"] is True
    assert body["user"]["reviewCount"] == 0
    assert body["user"]["role"] == "user"

    stored = mock_db["users"].find_one({"email": "alice@example.com"})
    assert stored["password"] != "s3cretpass"

    r = client.post("/auth/login", json={"email": "alice@example.com", "password": "s3cretpass"})
    assert r.status_code == 200
    token = r.json()["access_token"]
    me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["name"] == "Alice"
    assert "password" not in me


def test_register_duplicate_and_bad_login(client):
    body = {"name": "Alice", "email": "alice@example.com", "password": "s3cretpass"}
    assert client.post("/auth/register", json=body).status_code == 201
    assert client.post("/auth/register", json=body).status_code == 409
    assert client.post("/auth/register", json={**body, "email": "not-an-email"}).status_code == 400
    assert client.post("/auth/login", json={"email": "alice@example.com", "password": "wrongpass"}).status_code == 400
    assert client.post("/auth/login", json={"email": "bob@example.com", "password": "s3cretpass"}).status_code == 400


def test_deactivated_user_loses_session(client, make_user, auth):
    user_id = make_user("Alice", isActive=False)
    assert client.get("/users/profile", headers=auth(user_id)).status_code == 401


def test_google_sign_in_upserts_by_email(client, mock_db, monkeypatch):
    data = {"sub": "g-123", "email": "gina@example.com", "name": "Gina", "picture": "https://img/g.png"}
    monkeypatch.setattr(main.requests, "get", lambda *a, **kw: _GoogleResponse(200, data))

    first = client.post("/auth/google", json={"id_token": "tok"}).json()
    second = client.post("/auth/google", json={"id_token": "tok"}).json()
    assert first["user"]["id"] == second["user"]["id"]
    assert first["user"]["profilePhoto"] == "https://img/g.png"
    assert mock_db["users"].count_documents({"email": "gina@example.com"}) == 1


def test_google_sign_in_rejects_bad_token(client, monkeypatch):
    monkeypatch.setattr(main.requests, "get", lambda *a, **kw: _GoogleResponse(400, {}))
    assert client.post("/auth/google", json={"id_token": "tok"}).status_code == 401


def test_profile_update_ignores_protected_fields(client, mock_db, make_user, auth):
    user_id = make_user("Alice", email="alice@example.com")
    body = {
        "name": " Alice Smith ",
        "skillsOffered": ["Guitar", " ", "Piano "],
        "availability": ["weekends"],
        "isPublic": False,
        "role": "admin",
        "email": "evil@example.com",
        "rating": 5,
    }
    r = client.put("/users/profile", json=body, headers=auth(user_id))
    assert r.status_code == 200
    user = r.json()["user"]
    assert user["name"] == "Alice Smith"
    assert user["skillsOffered"] == ["Guitar", "Piano"]
    assert user["isPublic"] is False

    stored = mock_db["users"].find_one({"_id": ObjectId(user_id)})
    assert stored["role"] == "user"
    assert stored["email"] == "alice@example.com"
    assert stored["rating"] == 0

    profile = client.get("/users/profile", headers=auth(user_id)).json()
    assert profile["availability"] == ["weekends"]


def test_profile_requires_session(client):
    assert client.get("/users/profile").status_code == 401
    assert client.put("/users/profile", json={"name": "x"}).status_code == 401


def test_search_excludes_private_and_inactive(client, make_user):
    make_user("Visible", skillsOffered=["Guitar"], location="Lisbon", password="hash")
    make_user("Hidden", skillsOffered=["Guitar"], location="Lisbon", isPublic=False)
    make_user("Gone", skillsWanted=["guitar lessons"], location="Lisbon", isActive=False)

    for params in ("", "?skill=guitar", "?location=lisbon", "?skill=GUITAR&location=Lis"):
        users = client.get(f"/users/search{params}").json()["users"]
        assert [u["name"] for u in users] == ["Visible"]
        assert all("password" not in u for u in users)


def test_search_skill_or_and_location(client, make_user):
    make_user("Tutor", skillsOffered=["Spanish"], location="Madrid")
    make_user("Learner", skillsWanted=["spanish grammar"], location="Porto")
    make_user("Other", skillsOffered=["Chess"], location="Madrid")

    names = lambda params: sorted(u["name"] for u in client.get(f"/users/search?{params}").json()["users"])
    assert names("skill=span") == ["Learner", "Tutor"]
    assert names("skill=spanish&location=madrid") == ["Tutor"]
    assert names("location=madrid") == ["Other", "Tutor"]
    assert names("skill=c%2B%2B") == []


def test_search_pagination(client, make_user):
    for i in range(5):
        make_user(f"User{i}", skillsOffered=["Yoga"])

    first = client.get("/users/search?skill=yoga&page=1&limit=2").json()
    assert len(first["users"]) == 2
    assert first["pagination"] == {"current": 1, "total": 3, "hasNext": True, "hasPrev": False, "count": 5}

    last = client.get("/users/search?skill=yoga&page=3&limit=2").json()
    assert len(last["users"]) == 1
    assert last["pagination"]["hasNext"] is False
    assert last["pagination"]["hasPrev"] is True

    seen = set()
    for page in (1, 2, 3):
        seen |= {u["id"] for u in client.get(f"/users/search?skill=yoga&page={page}&limit=2").json()["users"]}
    assert len(seen) == 5

    assert client.get("/users/search?page=0").status_code == 400


def test_public_user_lookup(client, make_user):
    visible = make_user("Visible")
    hidden = make_user("Hidden", isPublic=False)

    user = client.get(f"/users/{visible}").json()
    assert user["name"] == "Visible"
    assert "email" not in user
    assert client.get(f"/users/{hidden}").status_code == 404
    assert client.get("/users/not-an-id").status_code == 400


def test_admin_overview(client, make_user, auth):
    admin = make_user("Root", role="admin")
    regular = make_user("Alice")

    assert client.get("/admin/overview", headers=auth(regular)).status_code == 403
    data = client.get("/admin/overview", headers=auth(admin)).json()
    assert data["users"] == 2
    assert data["swapRequestsByStatus"]["pending"] == 0
