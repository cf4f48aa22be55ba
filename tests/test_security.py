"""
Tests for operator authentication on the /api routes
"""

from datetime import timedelta

import pytest
from jose import jwt
from fastapi.testclient import TestClient

from ticketdesk.config import get_settings, settings as app_settings
from ticketdesk.database import get_db
from ticketdesk.main import app
from ticketdesk.utils.rate_limiter import limiter
from ticketdesk.utils.security import create_operator_token, verify_operator_token


@pytest.fixture
def anonymous_client(db, settings):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    limiter.enabled = False

    yield TestClient(app)

    app.dependency_overrides.clear()
    limiter.enabled = True


class TestTokens:
    def test_round_trip(self):
        token = create_operator_token("op-1", name="Desk")
        payload = verify_operator_token(token)
        assert payload["sub"] == "op-1"
        assert payload["name"] == "Desk"

    def test_expired_token_rejected(self):
        token = create_operator_token("op-1", expires_delta=timedelta(seconds=-5))
        assert verify_operator_token(token) is None

    def test_garbage_rejected(self):
        assert verify_operator_token("not-a-jwt") is None

    def test_foreign_issuer_rejected(self):
        token = jwt.encode(
            {"sub": "op-1", "type": "operator", "iss": "someone-else"},
            app_settings.secret_key,
            algorithm=app_settings.algorithm,
        )
        assert verify_operator_token(token) is None


class TestOperatorAuth:
    def test_missing_token(self, anonymous_client):
        response = anonymous_client.get("/api/bookings")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_invalid_token(self, anonymous_client):
        response = anonymous_client.get("/api/bookings", headers={"Authorization": "Bearer forged"})
        assert response.status_code == 401

    def test_valid_token(self, anonymous_client):
        token = create_operator_token("op-1", role="desk")
        response = anonymous_client.get("/api/bookings", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_public_routes_need_no_token(self, anonymous_client):
        assert anonymous_client.get("/health").status_code == 200
        assert anonymous_client.get("/t/AAAAAAAA.pdf").status_code == 404
