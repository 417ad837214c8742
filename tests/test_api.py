"""
End-to-end tests for the HTTP API.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from foodiemap.core.config import settings
from foodiemap.core.database import get_db
from foodiemap.models import AccountStatus, User
from foodiemap.routes.dependencies import (
    get_code_issuer,
    get_code_verifier,
    get_dispatcher,
    get_lifecycle_manager,
)
from foodiemap.services.account_lifecycle import AccountLifecycleManager
from foodiemap.services.auth_service import AuthService
from foodiemap.services.code_issuer import CodeIssuer
from foodiemap.services.code_verifier import GENERIC_FAILURE_MESSAGE, CodeVerifier
from main import app

from conftest import PASSWORD, T0, make_admin, make_user

EMAIL = "diner@example.com"


@pytest.fixture
def client(session_factory, clock, dispatcher):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_code_issuer] = lambda: CodeIssuer(dispatcher=dispatcher, clock=clock)
    app.dependency_overrides[get_code_verifier] = lambda: CodeVerifier(clock=clock)
    app.dependency_overrides[get_lifecycle_manager] = lambda: AccountLifecycleManager(clock=clock)
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def login(client, email=EMAIL, password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


class TestEmailVerification:

    @pytest.fixture(autouse=True)
    def setup(self, client, db, clock, dispatcher):
        self.client = client
        self.db = db
        self.clock = clock
        self.dispatcher = dispatcher

    def register(self, email=EMAIL, password=PASSWORD):
        return self.client.post(
            "/api/auth/register",
            json={"name": "Diner", "email": email, "password": password},
        )

    def test_register_then_verify(self):
        """The code mailed at registration verifies the address once."""
        response = self.register()
        assert response.status_code == 201
        assert response.json()["verification_code"] is None

        code = self.dispatcher.last_code(EMAIL)
        self.clock.advance(minutes=4)
        response = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": code})
        assert response.status_code == 200
        assert response.json()["email_verified"] is True

        user = self.db.query(User).filter(User.email == EMAIL).one()
        assert user.email_verified is True
        assert user.email_verified_at == self.clock.now

        replay = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": code})
        assert replay.status_code == 400

    def test_duplicate_registration(self):
        self.register()
        response = self.register()
        assert response.status_code == 400
        assert response.json()["message"] == "Email already registered"

    def test_weak_password(self):
        response = self.register(password="onlyletters")
        assert response.status_code == 400
        assert response.json()["message"] == "Password must contain letters and digits"

    def test_failures_return_one_generic_message(self):
        """Wrong, expired and unknown codes are indistinguishable to the client."""
        self.register()
        code = self.dispatcher.last_code(EMAIL)
        wrong_code = "000000" if code != "000000" else "111111"

        wrong = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": wrong_code})
        unknown = self.client.post("/api/verification/verify-email", json={"email": "x@example.com", "code": code})
        self.clock.advance(minutes=6)
        expired = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": code})

        for response in (wrong, unknown, expired):
            assert response.status_code == 400
            assert response.json() == {"message": GENERIC_FAILURE_MESSAGE}

    def test_resend_supersedes_previous_code(self):
        self.register()
        first = self.dispatcher.last_code(EMAIL)
        self.clock.advance(seconds=31)

        response = self.client.post("/api/verification/resend-email-verification", json={"email": EMAIL})
        assert response.status_code == 200
        second = self.dispatcher.last_code(EMAIL)

        if first != second:
            stale = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": first})
            assert stale.status_code == 400
        fresh = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": second})
        assert fresh.status_code == 200

    def test_resend_inside_cooldown_is_rate_limited(self):
        self.register()
        self.clock.advance(seconds=5)

        response = self.client.post("/api/verification/resend-email-verification", json={"email": EMAIL})
        assert response.status_code == 429
        assert 0 < int(response.headers["Retry-After"]) <= 26

    def test_send_before_registration(self):
        """Ownership of an address can be proven before the account exists."""
        response = self.client.post("/api/verification/send-email-verification", json={"email": "New@Example.com"})
        assert response.status_code == 200
        assert response.json()["email"] == "new@example.com"
        assert self.dispatcher.last_code("new@example.com")

    def test_resend_for_unknown_user(self):
        response = self.client.post("/api/verification/resend-email-verification", json={"email": EMAIL})
        assert response.status_code == 404

    def test_already_verified(self):
        make_user(self.db, email_verified=True)
        response = self.client.post("/api/verification/send-email-verification", json={"email": EMAIL})
        assert response.status_code == 400

    def test_malformed_code_is_rejected_by_schema(self):
        response = self.client.post("/api/verification/verify-email", json={"email": EMAIL, "code": "12ab56"})
        assert response.status_code == 422

    def test_codes_echoed_when_exposed(self, monkeypatch):
        monkeypatch.setattr(settings, "EXPOSE_CODES_IN_RESPONSE", True)
        response = self.register()
        assert response.json()["verification_code"] == self.dispatcher.last_code(EMAIL)


class TestAccountLifecycleApi:

    @pytest.fixture(autouse=True)
    def setup(self, client, db, clock):
        self.client = client
        self.db = db
        self.clock = clock
        self.user = make_user(db)

    def request_deletion(self, reason="not using it"):
        token = login(self.client).json()["token"]
        return self.client.post("/api/account/deletion", json={"reason": reason}, headers=bearer(token)), token

    def test_deletion_blocks_sign_in(self):
        """After the request the old token and new logins are both refused."""
        response, token = self.request_deletion()
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending_deletion"
        assert body["deletion_deadline"] == (T0 + timedelta(days=30)).isoformat()

        refused = login(self.client)
        assert refused.status_code == 403
        status_view = refused.json()["deletion_status"]
        assert status_view["can_recover"] is True
        assert status_view["days_remaining"] == 30

        stale = self.client.get("/api/account/deletion-status", headers=bearer(token))
        assert stale.status_code == 403

    def test_status_for_active_account(self):
        token = login(self.client).json()["token"]
        response = self.client.get("/api/account/deletion-status", headers=bearer(token))
        assert response.status_code == 200
        assert response.json()["status"] == "active"
        assert response.json()["is_deletion_scheduled"] is False

    def test_recover_inside_grace_period(self):
        self.request_deletion()
        self.clock.advance(days=29)

        response = self.client.post("/api/account/recover", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert AuthService.verify_jwt_token(body["token"])["sub"] == str(self.user.id)

        assert login(self.client).status_code == 200

    def test_recover_after_grace_period(self):
        self.request_deletion()
        self.clock.advance(days=31)

        response = self.client.post("/api/account/recover", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 410

    def test_recover_active_account(self):
        response = self.client.post("/api/account/recover", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 409

    def test_recover_requires_password(self):
        self.request_deletion()
        response = self.client.post("/api/account/recover", json={"email": EMAIL, "password": "wrong-pass1"})
        assert response.status_code == 401

    def test_deletion_requires_token(self):
        response = self.client.post("/api/account/deletion", json={})
        assert response.status_code == 401

    def test_admin_token_is_not_a_user_token(self):
        token = AuthService.create_jwt_token(str(self.user.id), EMAIL, scope="admin")
        response = self.client.get("/api/account/deletion-status", headers=bearer(token))
        assert response.status_code == 401


class TestAdminApi:

    @pytest.fixture(autouse=True)
    def setup(self, client, db, clock, dispatcher):
        self.client = client
        self.db = db
        self.clock = clock
        self.dispatcher = dispatcher

    def sign_in(self, email="ops@example.com"):
        response = self.client.post("/api/admin/login", json={"email": email, "password": PASSWORD})
        assert response.status_code == 200
        code = self.dispatcher.last_code(email)
        response = self.client.post("/api/admin/verify-auth", json={"email": email, "code": code})
        assert response.status_code == 200
        return response.json()["token"]

    def test_two_step_sign_in(self):
        admin = make_admin(self.db, permissions=["manage_users"])

        response = self.client.post("/api/admin/login", json={"email": admin.email, "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["requires_verification"] is True

        code = self.dispatcher.last_code(admin.email)
        response = self.client.post("/api/admin/verify-auth", json={"email": admin.email, "code": code})
        assert response.status_code == 200
        body = response.json()
        assert body["admin"]["permissions"] == ["manage_users"]
        assert AuthService.verify_jwt_token(body["token"], scope="admin")["email"] == admin.email

        self.db.refresh(admin)
        assert admin.last_login_at == self.clock.now

        replay = self.client.post("/api/admin/verify-auth", json={"email": admin.email, "code": code})
        assert replay.status_code == 401
        assert replay.json()["message"] == GENERIC_FAILURE_MESSAGE

    def test_wrong_password(self):
        make_admin(self.db)
        response = self.client.post("/api/admin/login", json={"email": "ops@example.com", "password": "nope"})
        assert response.status_code == 401
        assert self.dispatcher.sent == []

    def test_disabled_admin(self):
        make_admin(self.db, is_active=False)
        response = self.client.post("/api/admin/login", json={"email": "ops@example.com", "password": PASSWORD})
        assert response.status_code == 403

    def test_user_deletion_status_requires_permission(self):
        make_admin(self.db, permissions=[])
        user = make_user(self.db, status=AccountStatus.PENDING_DELETION, requested_at=T0 - timedelta(days=10))
        token = self.sign_in()

        response = self.client.get(f"/api/admin/users/{user.id}/deletion-status", headers=bearer(token))
        assert response.status_code == 403

    def test_user_deletion_status(self):
        make_admin(self.db, permissions=["manage_users"])
        user = make_user(self.db, status=AccountStatus.PENDING_DELETION, requested_at=T0 - timedelta(days=10))
        token = self.sign_in()

        response = self.client.get(f"/api/admin/users/{user.id}/deletion-status", headers=bearer(token))
        assert response.status_code == 200
        assert response.json()["days_remaining"] == 20

    def test_malformed_user_id(self):
        make_admin(self.db, permissions=["manage_users"])
        token = self.sign_in()

        response = self.client.get("/api/admin/users/not-a-uuid/deletion-status", headers=bearer(token))
        assert response.status_code == 400
        assert response.json()["field"] == "account_id"

    def test_purge_on_demand(self):
        make_admin(self.db, role="super_admin")
        make_user(self.db, email="old@example.com", status=AccountStatus.PENDING_DELETION,
                  requested_at=T0 - timedelta(days=31))
        make_user(self.db, email="new@example.com", status=AccountStatus.PENDING_DELETION,
                  requested_at=T0 - timedelta(days=5))
        token = self.sign_in()

        response = self.client.post("/api/admin/jobs/purge-expired-accounts", headers=bearer(token))
        assert response.status_code == 200
        assert response.json()["purged_count"] == 1
        assert response.json()["failed_count"] == 0
        assert [u.email for u in self.db.query(User).all()] == ["new@example.com"]

    def test_purge_requires_super_admin(self):
        make_admin(self.db, permissions=["manage_users"])
        token = self.sign_in()

        response = self.client.post("/api/admin/jobs/purge-expired-accounts", headers=bearer(token))
        assert response.status_code == 403


class TestErrorHandling:

    def test_store_outage_maps_to_503(self, client):
        broken = MagicMock()
        broken.query.side_effect = OperationalError("SELECT", {}, Exception("connection timed out"))
        app.dependency_overrides[get_db] = lambda: broken

        response = client.post("/api/verification/send-email-verification", json={"email": EMAIL})
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        broken.rollback.assert_called()

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["purge_scheduler"] == "disabled"
