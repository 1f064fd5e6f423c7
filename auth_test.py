from backend.auth import get_password_hash


async def _seed_user(db, clock, role="contractor"):
    await db.users.insert_one(
        {
            "id": "u-login",
            "name": "Marco Ruiz",
            "email": "marco@desertshieldinsulation.com",
            "role": role,
            "password_hash": get_password_hash("R-38-or-better"),
            "email_verified": True,
            "created_at": clock(),
        }
    )


async def test_login_returns_bearer_token(api, db, clock):
    await _seed_user(db, clock)

    response = await api.client.post(
        "/api/auth/login",
        data={"username": "marco@desertshieldinsulation.com", "password": "R-38-or-better"},
    )

    assert response.status_code == 200
    assert response.json()["token_type"] == "bearer"
    stored = await db.users.find_one({"id": "u-login"})
    assert stored["last_login_at"] is not None


async def test_login_with_wrong_password(api, db, clock):
    await _seed_user(db, clock)

    response = await api.client.post(
        "/api/auth/login",
        data={"username": "marco@desertshieldinsulation.com", "password": "wrong-password"},
    )

    assert response.status_code == 400


async def test_garbage_token_is_unauthorized(api):
    result = await api.call("GET", "/contractors/me/leads", token="not.a.jwt")
    assert result["status_code"] == 401
