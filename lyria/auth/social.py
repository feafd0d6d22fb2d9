from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests
from itsdangerous import BadSignature, URLSafeTimedSerializer

from lyria.auth import oidc
from lyria.auth.config import AuthConfig, ProviderCredentials
from lyria.auth.errors import ConfigError, ProviderError, ProviderNotConfigured
from lyria.auth.models import Identity
from lyria.auth.util import normalize_email, random_token, sanitize_next_path
from lyria.store.base import CredentialStore

logger = logging.getLogger(__name__)

STATE_SALT = "lyria-oauth-state-v1"
STATE_MAX_AGE_SECONDS = 10 * 60


@dataclass(frozen=True)
class ProviderProfile:
    """What the site needs from a provider account."""

    subject: str
    email: Optional[str]
    email_verified: bool
    name: Optional[str] = None
    image: Optional[str] = None


@dataclass(frozen=True)
class SocialRedirect:
    """
    Where to send the browser, plus the values the web layer keeps in short-lived
    cookies until the provider calls back.
    """

    provider: str
    url: str
    state: str
    nonce: str
    code_verifier: str
    next_path: str


@dataclass(frozen=True)
class ProviderCallback:
    """Query parameters from the provider redirect plus the values the browser carried."""

    provider: str
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    expected_state: Optional[str] = None
    nonce: Optional[str] = None
    code_verifier: Optional[str] = None


class OAuthProvider:
    """Authorization-code flow for one provider: URL builder + callback resolver."""

    name = ""

    def __init__(self, creds: ProviderCredentials, *, timeout: float = 10.0) -> None:
        self.client_id = creds.client_id
        self.client_secret = creds.client_secret
        self.timeout = timeout

    def authorize_url(self, *, redirect_uri: str, state: str, nonce: str, code_challenge: str) -> str:
        raise NotImplementedError

    def fetch_profile(self, *, code: str, redirect_uri: str, code_verifier: str, nonce: str) -> ProviderProfile:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    """Google via OpenID Connect discovery; the profile comes from the validated ID token."""

    name = "google"

    def __init__(
        self, creds: ProviderCredentials, *, timeout: float = 10.0, discovery_url: str = oidc.GOOGLE_DISCOVERY_URL
    ) -> None:
        super().__init__(creds, timeout=timeout)
        self.discovery_url = discovery_url

    def authorize_url(self, *, redirect_uri: str, state: str, nonce: str, code_challenge: str) -> str:
        return oidc.build_authorize_url(
            self.discovery_url,
            client_id=self.client_id,
            redirect_uri=redirect_uri,
            state=state,
            nonce=nonce,
            code_challenge=code_challenge,
            timeout=self.timeout,
        )

    def fetch_profile(self, *, code: str, redirect_uri: str, code_verifier: str, nonce: str) -> ProviderProfile:
        tokens = oidc.exchange_code_for_tokens(
            self.discovery_url,
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=redirect_uri,
            code=code,
            code_verifier=code_verifier,
            timeout=self.timeout,
        )
        id_token = str(tokens.get("id_token") or "").strip()
        if not id_token:
            raise ValueError("Missing id_token in token response")
        claims = oidc.validate_id_token(
            self.discovery_url,
            client_id=self.client_id,
            id_token=id_token,
            expected_nonce=nonce,
            timeout=self.timeout,
        )
        return ProviderProfile(
            subject=str(claims["sub"]),
            email=str(claims.get("email") or "").strip() or None,
            # Some providers omit email_verified; Google always sends it.
            email_verified=claims.get("email_verified") is True,
            name=str(claims.get("name") or "").strip() or None,
            image=str(claims.get("picture") or "").strip() or None,
        )


class GitHubProvider(OAuthProvider):
    name = "github"

    AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
    TOKEN_URL = "https://github.com/login/oauth/access_token"
    API_URL = "https://api.github.com"

    def authorize_url(self, *, redirect_uri: str, state: str, nonce: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": "read:user user:email",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "allow_signup": "true",
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    def _api_get(self, path: str, access_token: str) -> Any:
        r = requests.get(
            f"{self.API_URL}{path}",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            raise ValueError(f"GitHub API {path} failed (status={r.status_code})")
        return r.json()

    def fetch_profile(self, *, code: str, redirect_uri: str, code_verifier: str, nonce: str) -> ProviderProfile:
        r = requests.post(
            self.TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            raise ValueError(f"Token exchange failed (status={r.status_code})")
        data = r.json()
        # GitHub reports exchange errors with 200 + {"error": ...}.
        access_token = str(data.get("access_token") or "") if isinstance(data, dict) else ""
        if not access_token:
            raise ValueError(f"Token exchange failed ({(data or {}).get('error') or 'no access_token'})")

        user = self._api_get("/user", access_token)
        email, verified = self._primary_email(self._api_get("/user/emails", access_token))
        return ProviderProfile(
            subject=str(user["id"]),
            email=email,
            email_verified=verified,
            name=str(user.get("name") or user.get("login") or "").strip() or None,
            image=str(user.get("avatar_url") or "").strip() or None,
        )

    @staticmethod
    def _primary_email(emails: Any) -> Tuple[Optional[str], bool]:
        if not isinstance(emails, list):
            return None, False
        verified = [e for e in emails if isinstance(e, dict) and e.get("verified") is True and e.get("email")]
        for e in verified:
            if e.get("primary") is True:
                return str(e["email"]), True
        if verified:
            return str(verified[0]["email"]), True
        return None, False


class XProvider(OAuthProvider):
    name = "x"

    AUTHORIZE_URL = "https://x.com/i/oauth2/authorize"
    TOKEN_URL = "https://api.x.com/2/oauth2/token"
    ME_URL = "https://api.x.com/2/users/me"

    def authorize_url(self, *, redirect_uri: str, state: str, nonce: str, code_challenge: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": "users.read tweet.read users.email",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.AUTHORIZE_URL}?{urlencode(params)}"

    def fetch_profile(self, *, code: str, redirect_uri: str, code_verifier: str, nonce: str) -> ProviderProfile:
        r = requests.post(
            self.TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            auth=(self.client_id, self.client_secret),
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            raise ValueError(f"Token exchange failed (status={r.status_code})")
        access_token = str((r.json() or {}).get("access_token") or "")
        if not access_token:
            raise ValueError("Token exchange returned no access_token")

        r = requests.get(
            self.ME_URL,
            params={"user.fields": "confirmed_email,profile_image_url,name"},
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout,
        )
        if r.status_code >= 400:
            raise ValueError(f"X users/me failed (status={r.status_code})")
        data = (r.json() or {}).get("data") or {}
        email = str(data.get("confirmed_email") or "").strip() or None
        return ProviderProfile(
            subject=str(data["id"]),
            email=email,
            # X only returns confirmed addresses.
            email_verified=email is not None,
            name=str(data.get("name") or data.get("username") or "").strip() or None,
            image=str(data.get("profile_image_url") or "").strip() or None,
        )


PROVIDER_CLASSES = {
    "google": GoogleProvider,
    "github": GitHubProvider,
    "x": XProvider,
}


def build_providers(cfg: AuthConfig) -> Dict[str, OAuthProvider]:
    """One provider client per enabled provider in the configuration."""
    return {p.name: PROVIDER_CLASSES[p.name](p, timeout=cfg.http_timeout_seconds) for p in cfg.providers}


class SocialBroker:
    """
    Starts social sign-in and turns provider callbacks into Identities.

    The `state` parameter is a signed, time-limited token naming the provider; the web
    layer also keeps it in a cookie so a callback is only accepted by the browser that
    started it.
    """

    def __init__(
        self,
        cfg: AuthConfig,
        store: CredentialStore,
        providers: Optional[Mapping[str, OAuthProvider]] = None,
    ) -> None:
        if not cfg.session_secret:
            raise ConfigError("Social sign-in needs AUTH_SESSION_SECRET to sign OAuth state")
        self._cfg = cfg
        self._store = store
        self._providers: Dict[str, OAuthProvider] = dict(providers if providers is not None else build_providers(cfg))
        self._state_serializer = URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=STATE_SALT)

    @property
    def enabled_providers(self) -> Tuple[str, ...]:
        return tuple(sorted(self._providers))

    def _provider(self, name: str) -> OAuthProvider:
        provider = self._providers.get((name or "").strip().lower())
        if provider is None:
            raise ProviderNotConfigured(f"Sign-in with {name or 'this provider'} is not enabled")
        return provider

    def callback_url(self, provider: str) -> str:
        base = (self._cfg.public_base_url or "").rstrip("/")
        if not base:
            raise ConfigError("AUTH_PUBLIC_BASE_URL is required for social sign-in")
        return f"{base}/api/auth/callback/{provider}"

    def begin_social_sign_in(self, provider: str, return_path: Optional[str], *, default_path: str = "/") -> SocialRedirect:
        """
        Build the provider authorization URL.

        Raises:
            ProviderNotConfigured: Provider unknown or without credentials
            ProviderError: Provider metadata could not be fetched
        """
        p = self._provider(provider)
        nonce = random_token(32)
        verifier = random_token(32)  # 43+ chars (base64url) -> valid PKCE verifier
        state = self._state_serializer.dumps({"p": p.name, "n": random_token(16)})
        try:
            url = p.authorize_url(
                redirect_uri=self.callback_url(p.name),
                state=state,
                nonce=nonce,
                code_challenge=oidc.pkce_challenge(verifier),
            )
        except (requests.RequestException, ValueError) as e:
            logger.warning("Failed to build %s authorization URL: %s", p.name, str(e))
            raise ProviderError(f"Sign-in with {p.name} is temporarily unavailable") from e
        return SocialRedirect(
            provider=p.name,
            url=url,
            state=state,
            nonce=nonce,
            code_verifier=verifier,
            next_path=sanitize_next_path(return_path, default_path),
        )

    def _check_state(self, provider: str, callback: ProviderCallback) -> None:
        state = (callback.state or "").strip()
        if not state or state != (callback.expected_state or "").strip():
            raise ProviderError("Invalid OAuth state")
        try:
            payload = self._state_serializer.loads(state, max_age=STATE_MAX_AGE_SECONDS)
        except BadSignature as e:
            # SignatureExpired is a BadSignature too.
            raise ProviderError("Sign-in link expired. Please try again.") from e
        if not isinstance(payload, dict) or payload.get("p") != provider:
            raise ProviderError("Invalid OAuth state")

    def fetch_callback_profile(self, callback: ProviderCallback) -> Tuple[str, ProviderProfile]:
        """
        Check a provider callback and exchange its code for the account profile.

        Talks to the provider over HTTP, so callers run it outside any store transaction.

        Returns:
            (provider name, verified profile)

        Raises:
            ProviderNotConfigured: Provider unknown or without credentials
            ProviderError: Denied, bad state, exchange failure, or no verified email
        """
        p = self._provider(callback.provider)
        if callback.error:
            logger.info("%s sign-in returned error=%s", p.name, callback.error)
            raise ProviderError(f"Sign-in with {p.name} was cancelled or denied")
        self._check_state(p.name, callback)
        if not callback.code or not callback.code_verifier:
            raise ProviderError("Missing authorization code or verifier")

        try:
            profile = p.fetch_profile(
                code=callback.code,
                redirect_uri=self.callback_url(p.name),
                code_verifier=callback.code_verifier,
                nonce=callback.nonce or "",
            )
        except (requests.RequestException, jwt.PyJWTError, ValueError, KeyError, TypeError) as e:
            logger.warning("%s sign-in failed during code exchange: %s", p.name, str(e))
            raise ProviderError(f"Sign-in with {p.name} failed") from e

        if not normalize_email(profile.email) or not profile.email_verified:
            raise ProviderError(f"Your {p.name} account has no verified email address")
        return p.name, profile

    def resolve_identity(self, provider: str, profile: ProviderProfile) -> Identity:
        """Find the identity for a verified provider profile, linking or creating as needed."""
        email = normalize_email(profile.email)
        with self._store.transaction() as tx:
            identity = tx.get_identity_by_account(provider, profile.subject)
            if identity is None:
                identity, created = tx.find_or_create_identity(
                    email, name=profile.name, image=profile.image, email_verified=True
                )
                identity = tx.link_account(identity.id, provider, profile.subject)
                if created:
                    logger.info("Created identity %s via %s", identity.id, provider)
                else:
                    logger.info("Linked %s account to identity %s", provider, identity.id)
            identity = tx.update_profile(
                identity.id,
                name=profile.name,
                image=profile.image,
                email_verified=True if identity.email == email else None,
            )
        return identity

    def complete_social_sign_in(self, callback: ProviderCallback) -> Identity:
        """Resolve a provider callback to an Identity (see fetch_callback_profile for errors)."""
        provider, profile = self.fetch_callback_profile(callback)
        return self.resolve_identity(provider, profile)
