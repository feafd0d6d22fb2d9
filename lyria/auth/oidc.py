from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from lyria.auth.util import b64url

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"

_discovery_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}
_jwks_cache: Dict[str, Tuple[float, Optional[Dict[str, Any]]]] = {}


def _get_discovery(discovery_url: str, *, timeout: float = 10) -> Dict[str, Any]:
    """
    Fetch OIDC discovery document from provider.
    Caches result for 1 hour per discovery URL.
    """
    ts, cached = _discovery_cache.get(discovery_url, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < 3600:
        return cached
    r = requests.get(discovery_url, timeout=timeout)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid OIDC discovery document")
    _discovery_cache[discovery_url] = (now, data)
    return data


def _get_jwks(jwks_uri: str, *, timeout: float = 10) -> Dict[str, Any]:
    """
    Fetch JWKS (JSON Web Key Set) from provider.
    Caches result for 1 hour per JWKS URI.
    """
    ts, cached = _jwks_cache.get(jwks_uri, (0.0, None))
    now = time.time()
    if cached is not None and now - ts < 3600:
        return cached
    r = requests.get(jwks_uri, timeout=timeout)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid JWKS")
    _jwks_cache[jwks_uri] = (now, data)
    return data


def build_authorize_url(
    discovery_url: str,
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    nonce: str,
    code_challenge: str,
    timeout: float = 10,
) -> str:
    """
    Build authorization URL for an OIDC provider.
    Supports PKCE (Proof Key for Code Exchange) for security.
    """
    disc = _get_discovery(discovery_url, timeout=timeout)
    auth_endpoint = str(disc.get("authorization_endpoint") or "")
    if not auth_endpoint:
        raise ValueError("OIDC discovery missing authorization_endpoint")

    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "nonce": nonce,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "prompt": "select_account",
    }
    return f"{auth_endpoint}?{urlencode(params)}"


def exchange_code_for_tokens(
    discovery_url: str,
    *,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    code: str,
    code_verifier: str,
    timeout: float = 10,
) -> Dict[str, Any]:
    """
    Exchange authorization code for tokens (id_token, access_token).
    Uses PKCE code_verifier for security.
    """
    disc = _get_discovery(discovery_url, timeout=timeout)
    token_endpoint = str(disc.get("token_endpoint") or "")
    if not token_endpoint:
        raise ValueError("OIDC discovery missing token_endpoint")

    payload = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
    }
    r = requests.post(token_endpoint, data=payload, timeout=timeout)
    if r.status_code >= 400:
        # Avoid leaking sensitive info; include minimal context.
        raise ValueError(f"Token exchange failed (status={r.status_code})")
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError("Invalid token response")
    return data


def validate_id_token(
    discovery_url: str,
    *,
    client_id: str,
    id_token: str,
    expected_nonce: str,
    timeout: float = 10,
) -> Dict[str, Any]:
    """
    Validate ID token from OIDC provider.
    - Verifies JWT signature using provider's public keys
    - Validates issuer, audience, nonce
    """
    disc = _get_discovery(discovery_url, timeout=timeout)
    issuer = str(disc.get("issuer") or "")
    jwks_uri = str(disc.get("jwks_uri") or "")
    if not issuer or not jwks_uri:
        raise ValueError("OIDC discovery missing issuer/jwks_uri")

    hdr = jwt.get_unverified_header(id_token)
    kid = str(hdr.get("kid") or "")
    if not kid:
        raise ValueError("ID token missing kid")

    jwks = _get_jwks(jwks_uri, timeout=timeout)
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        raise ValueError("Invalid JWKS keys")

    jwk = None
    for k in keys:
        if isinstance(k, dict) and str(k.get("kid") or "") == kid:
            jwk = k
            break
    if jwk is None:
        raise ValueError("Unknown signing key (kid)")

    # Construct RSA public key from JWK.
    key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))

    claims = jwt.decode(
        id_token,
        key=key,
        algorithms=["RS256"],
        audience=client_id,
        issuer=issuer,
        options={
            "require": ["exp", "iat", "iss", "aud", "sub"],
        },
    )
    if not isinstance(claims, dict):
        raise ValueError("Invalid ID token claims")

    nonce = str(claims.get("nonce") or "")
    if not nonce or nonce != expected_nonce:
        raise ValueError("Nonce mismatch")

    return claims


def pkce_challenge(verifier: str) -> str:
    """
    Generate PKCE challenge from verifier using SHA256.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return b64url(digest)
