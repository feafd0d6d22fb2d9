from __future__ import annotations

from dataclasses import replace
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

import lyria.api.server as ws
from lyria.auth.config import ProviderCredentials, load_auth_config
from lyria.auth.errors import ConfigError
from lyria.auth.service import AuthService
from lyria.auth.social import OAuthProvider, ProviderProfile


class _StubGoogle(OAuthProvider):
    name = "google"

    def authorize_url(self, *, redirect_uri: str, state: str, nonce: str, code_challenge: str) -> str:
        return f"https://accounts.example/auth?state={state}&redirect_uri={redirect_uri}"

    def fetch_profile(self, *, code: str, redirect_uri: str, code_verifier: str, nonce: str) -> ProviderProfile:
        if code != "good-code":
            raise ValueError("bad code")
        return ProviderProfile(subject="g-1", email="fan@example.com", email_verified=True, name="Fan")


@pytest.fixture
def client(service):  # type: ignore[no-untyped-def]
    ws.app.state.auth_service = service
    with TestClient(ws.app) as c:
        yield c
    ws.app.state.auth_service = None


@pytest.fixture
def social_client(cfg, store, mailer, clock):  # type: ignore[no-untyped-def]
    cfg = replace(cfg, public_base_url="http://testserver")
    stub = _StubGoogle(ProviderCredentials(name="google", client_id="id", client_secret="s"))
    ws.app.state.auth_service = AuthService(cfg, store, mailer, providers={"google": stub}, clock=clock)
    with TestClient(ws.app) as c:
        yield c
    ws.app.state.auth_service = None


def _sign_in_with_code(client: TestClient, mailer, email: str = "fan@example.com"):  # type: ignore[no-untyped-def]
    r = client.post("/api/auth/email-otp/send-verification-otp", json={"email": email, "type": "sign-in"})
    assert r.status_code == 200
    return client.post("/api/auth/sign-in/email-otp", json={"email": email, "otp": mailer.last_code})


def test_healthz_is_public(client) -> None:
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_auth_mode_lists_enabled_methods(social_client) -> None:
    body = social_client.get("/api/auth/mode").json()
    assert body["ok"] is True
    assert body["emailOtpEnabled"] is True
    assert body["passwordEnabled"] is True
    assert body["providers"] == [{"id": "google", "loginUrl": "/api/auth/sign-in/social?provider=google"}]


def test_protected_api_requires_session(client) -> None:
    r = client.post("/api/auth/change-password", json={"newPassword": "new-s3cret-pass"})
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"
    # No `WWW-Authenticate`: browsers would show a basic-auth modal.
    assert "www-authenticate" not in {k.lower() for k in r.headers.keys()}


@pytest.mark.parametrize(
    "path,location",
    [
        ("/user/my-songs", "/auth/login?next=%2Fuser%2Fmy-songs"),
        ("/ja/user/my-songs", "/ja/auth/login?next=%2Fja%2Fuser%2Fmy-songs"),
        ("/create?style=pop", "/auth/login?next=%2Fcreate%3Fstyle%3Dpop"),
    ],
)
def test_protected_pages_redirect_to_login(client, path, location) -> None:  # type: ignore[no-untyped-def]
    r = client.get(path, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == location


def test_code_sign_in_sets_session_cookie(client, mailer) -> None:
    r = _sign_in_with_code(client, mailer)
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["user"]["email"] == "fan@example.com"
    assert body["user"]["emailVerified"] is True
    set_cookie = r.headers["set-cookie"].lower()
    assert "lyria_session=" in set_cookie
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie

    session = client.get("/api/auth/get-session").json()
    assert session["user"]["email"] == "fan@example.com"
    assert session["session"]["userId"] == body["user"]["id"]

    # Signed-in users pass the page gate.
    assert client.get("/user/my-songs", follow_redirects=False).status_code == 404


def test_wrong_code_is_json_error(client, mailer) -> None:
    client.post("/api/auth/email-otp/send-verification-otp", json={"email": "fan@example.com"})
    wrong = f"{(int(mailer.last_code) + 1) % 1_000_000:06d}"
    r = client.post("/api/auth/sign-in/email-otp", json={"email": "fan@example.com", "otp": wrong})
    assert r.status_code == 400
    assert r.json() == {"ok": False, "code": "code_mismatch", "message": "Invalid code"}


def test_unknown_otp_type_is_rejected(client) -> None:
    r = client.post("/api/auth/email-otp/send-verification-otp", json={"email": "fan@example.com", "type": "bogus"})
    assert r.status_code == 400


def test_delivery_failure_is_502(client, mailer) -> None:
    mailer.fail = True
    r = client.post("/api/auth/email-otp/send-verification-otp", json={"email": "fan@example.com"})
    assert r.status_code == 502
    assert r.json()["code"] == "delivery_failed"


def test_sign_out_clears_session(client, mailer) -> None:
    _sign_in_with_code(client, mailer)
    r = client.post("/api/auth/sign-out")
    assert r.status_code == 200
    assert client.get("/api/auth/get-session").json() == {"session": None, "user": None}
    # Idempotent.
    assert client.post("/api/auth/sign-out").status_code == 200


def test_password_sign_up_and_sign_in(client) -> None:
    r = client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    assert r.status_code == 200
    assert r.json()["user"]["hasPassword"] is True

    r = client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    assert r.status_code == 409
    assert r.json()["code"] == "account_exists"

    r = client.post("/api/auth/sign-in/email", json={"email": "fan@example.com", "password": "wrong-pass"})
    assert r.status_code == 401
    assert r.json()["code"] == "invalid_credentials"
    assert "www-authenticate" not in {k.lower() for k in r.headers.keys()}

    r = client.post("/api/auth/sign-in/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    assert r.status_code == 200


def test_weak_password_sign_up(client) -> None:
    r = client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "short"})
    assert r.status_code == 400
    assert r.json()["code"] == "weak_password"


def test_password_lockout_is_429(client, cfg) -> None:
    client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    client.post("/api/auth/sign-out")
    codes = [
        client.post("/api/auth/sign-in/email", json={"email": "fan@example.com", "password": "nope-nope"}).status_code
        for _ in range(cfg.password_max_attempts)
    ]
    assert codes == [401] * (cfg.password_max_attempts - 1) + [429]


def test_change_password_rotates_session(client) -> None:
    r = client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    old_cookie = r.cookies.get("lyria_session")

    r = client.post(
        "/api/auth/change-password", json={"currentPassword": "s3cret-pass", "newPassword": "new-s3cret-pass"}
    )
    assert r.status_code == 200
    assert r.cookies.get("lyria_session") != old_cookie

    other = TestClient(ws.app)
    other.cookies.set("lyria_session", old_cookie)
    assert other.get("/api/auth/get-session").json()["user"] is None

    r = client.post("/api/auth/sign-in/email", json={"email": "fan@example.com", "password": "new-s3cret-pass"})
    assert r.status_code == 200


def test_reset_password_with_emailed_code(client, mailer) -> None:
    r = client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    old_cookie = r.cookies.get("lyria_session")
    client.post("/api/auth/sign-out")

    r = client.post(
        "/api/auth/email-otp/send-verification-otp", json={"email": "fan@example.com", "type": "forget-password"}
    )
    assert r.status_code == 200
    r = client.post(
        "/api/auth/email-otp/reset-password",
        json={"email": "fan@example.com", "otp": mailer.last_code, "password": "new-s3cret-pass"},
    )
    assert r.status_code == 200
    assert r.json()["user"]["email"] == "fan@example.com"
    assert r.cookies.get("lyria_session") not in (None, old_cookie)
    assert client.get("/api/auth/get-session").json()["user"]["email"] == "fan@example.com"

    r = client.post("/api/auth/sign-in/email", json={"email": "fan@example.com", "password": "new-s3cret-pass"})
    assert r.status_code == 200


def test_reset_password_for_unknown_email_sends_nothing(client, mailer) -> None:
    r = client.post(
        "/api/auth/email-otp/send-verification-otp", json={"email": "nobody@example.com", "type": "forget-password"}
    )
    assert r.status_code == 200
    assert mailer.sent == []
    r = client.post(
        "/api/auth/email-otp/reset-password",
        json={"email": "nobody@example.com", "otp": "123456", "password": "new-s3cret-pass"},
    )
    assert r.status_code == 400
    assert r.json()["code"] == "no_active_challenge"


def test_verify_email_with_emailed_code(client, mailer) -> None:
    r = client.post("/api/auth/sign-up/email", json={"email": "fan@example.com", "password": "s3cret-pass"})
    assert r.json()["user"]["emailVerified"] is False
    client.post(
        "/api/auth/email-otp/send-verification-otp", json={"email": "fan@example.com", "type": "email-verification"}
    )
    r = client.post("/api/auth/email-otp/verify-email", json={"email": "fan@example.com", "otp": mailer.last_code})
    assert r.status_code == 200
    assert r.json()["user"]["emailVerified"] is True


def test_social_sign_in_round_trip(social_client) -> None:
    r = social_client.get("/api/auth/sign-in/social?provider=google&next=/create", follow_redirects=False)
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith("https://accounts.example/auth?")
    state = parse_qs(urlsplit(location).query)["state"][0]
    assert "redirect_uri=http://testserver/api/auth/callback/google" in location

    r = social_client.get(
        "/api/auth/callback/google", params={"code": "good-code", "state": state}, follow_redirects=False
    )
    assert r.status_code == 302
    assert r.headers["location"] == "/create"

    user = social_client.get("/api/auth/get-session").json()["user"]
    assert user["email"] == "fan@example.com"
    assert user["providers"] == ["google"]


def test_social_offsite_next_is_ignored(social_client) -> None:
    r = social_client.get(
        "/api/auth/sign-in/social", params={"provider": "google", "next": "https://evil.example/"}, follow_redirects=False
    )
    state = parse_qs(urlsplit(r.headers["location"]).query)["state"][0]
    r = social_client.get(
        "/api/auth/callback/google", params={"code": "good-code", "state": state}, follow_redirects=False
    )
    assert r.headers["location"] == "/user/my-songs"


def test_social_callback_with_bad_state_returns_to_login(social_client) -> None:
    social_client.get("/api/auth/sign-in/social?provider=google", follow_redirects=False)
    r = social_client.get(
        "/api/auth/callback/google", params={"code": "good-code", "state": "forged"}, follow_redirects=False
    )
    assert r.status_code == 302
    assert r.headers["location"] == "/auth/login?error=provider_error"
    assert social_client.get("/api/auth/get-session").json()["user"] is None


def test_social_denied_returns_to_login(social_client) -> None:
    r = social_client.get("/api/auth/sign-in/social?provider=google", follow_redirects=False)
    state = parse_qs(urlsplit(r.headers["location"]).query)["state"][0]
    r = social_client.get(
        "/api/auth/callback/google", params={"error": "access_denied", "state": state}, follow_redirects=False
    )
    assert r.headers["location"] == "/auth/login?error=provider_error"


def test_disabled_provider_is_404(client) -> None:
    r = client.get("/api/auth/sign-in/social?provider=github", follow_redirects=False)
    assert r.status_code == 404
    assert r.json()["code"] == "provider_not_configured"


def test_startup_builds_service_from_env() -> None:
    ws.app.state.auth_service = None
    try:
        with TestClient(ws.app) as c:
            assert c.get("/healthz").status_code == 200
            assert ws.app.state.auth_service is not None
    finally:
        ws.app.state.auth_service = None


def test_startup_fails_without_secret(monkeypatch) -> None:
    monkeypatch.delenv("AUTH_SESSION_SECRET")
    load_auth_config.cache_clear()
    ws.app.state.auth_service = None
    try:
        with pytest.raises(ConfigError):
            with TestClient(ws.app):
                pass
    finally:
        ws.app.state.auth_service = None
