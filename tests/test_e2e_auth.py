"""E2E tests for authentication flows.

These tests require a running server and are executed in CI or manually.
Run with: pytest -m e2e
"""

import os
import time
import uuid
from typing import Generator

import pytest
import requests

BASE_URL = os.getenv("E2E_BASE_URL", "http://localhost:8080")

pytestmark = pytest.mark.e2e


@pytest.fixture(scope="module")
def wait_for_server() -> Generator[None, None, None]:
    """Wait for server to be ready."""
    max_retries = 30
    for i in range(max_retries):
        try:
            r = requests.get(f"{BASE_URL}/healthz", timeout=2)
            if r.status_code == 200:
                break
        except requests.RequestException:
            if i == max_retries - 1:
                raise Exception("Server failed to start within 30 seconds")
            time.sleep(1)
    yield


def _email() -> str:
    return f"e2e-{uuid.uuid4().hex[:10]}@example.com"


def test_healthz_endpoint(wait_for_server):
    """Test health check endpoint is accessible."""
    r = requests.get(f"{BASE_URL}/healthz", timeout=5)
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_auth_mode_endpoint(wait_for_server):
    """Test auth mode endpoint returns enabled sign-in methods."""
    r = requests.get(f"{BASE_URL}/api/auth/mode", timeout=5)
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["emailOtpEnabled"] is True
    assert isinstance(body["providers"], list)


def test_auth_required_for_protected_endpoints(wait_for_server):
    """Test that protected endpoints require authentication."""
    r = requests.post(f"{BASE_URL}/api/auth/change-password", json={"newPassword": "whatever-123"}, timeout=5)
    assert r.status_code == 401
    assert "www-authenticate" not in {k.lower() for k in r.headers.keys()}


def test_protected_page_redirects_to_login(wait_for_server):
    r = requests.get(f"{BASE_URL}/user/my-songs", allow_redirects=False, timeout=5)
    assert r.status_code == 302
    assert r.headers["location"].startswith("/auth/login?next=")


def test_password_sign_up_session_and_sign_out(wait_for_server):
    """Test the full password flow with a cookie-holding session."""
    s = requests.Session()
    email = _email()

    r = s.post(f"{BASE_URL}/api/auth/sign-up/email", json={"email": email, "password": "e2e-s3cret-pass"}, timeout=10)
    assert r.status_code == 200
    assert r.json()["user"]["email"] == email

    r = s.get(f"{BASE_URL}/api/auth/get-session", timeout=5)
    assert r.json()["user"]["email"] == email

    r = s.post(f"{BASE_URL}/api/auth/sign-out", timeout=5)
    assert r.status_code == 200
    assert s.get(f"{BASE_URL}/api/auth/get-session", timeout=5).json()["user"] is None


def test_invalid_password_sign_in(wait_for_server):
    r = requests.post(
        f"{BASE_URL}/api/auth/sign-in/email", json={"email": _email(), "password": "not-a-real-pass"}, timeout=10
    )
    assert r.status_code == 401
    assert r.json()["code"] == "invalid_credentials"


def test_wrong_code_is_rejected(wait_for_server):
    email = _email()
    r = requests.post(f"{BASE_URL}/api/auth/email-otp/send-verification-otp", json={"email": email}, timeout=10)
    assert r.status_code == 200
    r = requests.post(f"{BASE_URL}/api/auth/sign-in/email-otp", json={"email": email, "otp": "000000"}, timeout=5)
    # A random code is very unlikely to be 000000.
    assert r.status_code in (400, 429)
