from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Type, TypeVar, Union

from lyria.auth.errors import (
    CodeMismatch,
    DeliveryError,
    InvalidCredentials,
    NoActiveChallenge,
    ProviderError,
    ProviderNotConfigured,
    TooManyAttempts,
)
from lyria.auth.models import Identity, IssuedSession, SessionMetadata
from lyria.auth.otp import CODE_LENGTH
from lyria.auth.service import AuthService
from lyria.auth.social import SocialRedirect
from lyria.auth.util import normalize_email


@dataclass(frozen=True)
class LoginState:
    """Email entry (plus password and provider buttons)."""

    email: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class VerifyState:
    """Code entry for `email`; `digits` holds what has been typed so far."""

    email: str
    digits: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class Authenticated:
    identity: Identity
    session: IssuedSession
    redirect_to: str


@dataclass(frozen=True)
class ExternalRedirect:
    """Leave the flow for a provider's consent page."""

    url: str
    social: SocialRedirect


FlowState = Union[LoginState, VerifyState]
FlowOutcome = Union[LoginState, VerifyState, Authenticated, ExternalRedirect]

_S = TypeVar("_S", LoginState, VerifyState)


class InvalidTransition(Exception):
    """An operation was called from a state that does not offer it."""


class AuthFlowController:
    """
    Drives one browser's login screen through LOGIN and VERIFY.

    Operations return the next outcome: a new state, or one of the two exits
    (`Authenticated`, `ExternalRedirect`). After an exit the controller is back at an
    empty `LoginState`.
    """

    def __init__(
        self,
        service: AuthService,
        return_path: Optional[str] = None,
        *,
        locale: Optional[str] = None,
        metadata: Optional[SessionMetadata] = None,
    ) -> None:
        self._service = service
        self._return_path = return_path
        self._locale = locale
        self._metadata = metadata
        self.state: FlowState = LoginState()

    @property
    def redirect_to(self) -> str:
        return self._service.resolve_return_path(self._return_path, self._locale)

    def _expect(self, cls: Type[_S], op: str) -> _S:
        if not isinstance(self.state, cls):
            raise InvalidTransition(f"{op}() is not available in {type(self.state).__name__}")
        return self.state

    def _move(self, state: FlowState) -> FlowState:
        self.state = state
        return state

    def _exit(self, outcome: Union[Authenticated, ExternalRedirect]) -> Union[Authenticated, ExternalRedirect]:
        self.state = LoginState()
        return outcome

    # --- LOGIN --------------------------------------------------------------

    def submit_email(self, email: str) -> FlowOutcome:
        self._expect(LoginState, "submit_email")
        email = normalize_email(email)
        try:
            self._service.request_code(email)
        except (InvalidCredentials, DeliveryError) as e:
            return self._move(LoginState(email=email, error=e.message))
        return self._move(VerifyState(email=email))

    def submit_credentials(self, email: str, password: str) -> FlowOutcome:
        self._expect(LoginState, "submit_credentials")
        email = normalize_email(email)
        try:
            identity, issued = self._service.sign_in_with_password(email, password, metadata=self._metadata)
        except (InvalidCredentials, TooManyAttempts) as e:
            return self._move(LoginState(email=email, error=e.message))
        return self._exit(Authenticated(identity=identity, session=issued, redirect_to=self.redirect_to))

    def choose_provider(self, provider: str) -> FlowOutcome:
        state = self._expect(LoginState, "choose_provider")
        try:
            social = self._service.begin_social_sign_in(provider, self._return_path, locale=self._locale)
        except (ProviderNotConfigured, ProviderError) as e:
            return self._move(replace(state, error=e.message))
        return self._exit(ExternalRedirect(url=social.url, social=social))

    # --- VERIFY -------------------------------------------------------------

    def enter_digits(self, digits: str) -> FlowOutcome:
        """Append typed or pasted characters; anything but ASCII digits is ignored."""
        state = self._expect(VerifyState, "enter_digits")
        typed = "".join(ch for ch in (digits or "") if ch.isascii() and ch.isdigit())
        state = self._move(VerifyState(email=state.email, digits=(state.digits + typed)[:CODE_LENGTH]))
        if len(state.digits) == CODE_LENGTH:
            return self.verify()
        return state

    def verify(self) -> FlowOutcome:
        state = self._expect(VerifyState, "verify")
        if len(state.digits) != CODE_LENGTH:
            return state
        try:
            identity, issued = self._service.sign_in_with_code(state.email, state.digits, metadata=self._metadata)
        except (CodeMismatch, NoActiveChallenge, TooManyAttempts) as e:
            return self._move(VerifyState(email=state.email, error=e.message))
        return self._exit(Authenticated(identity=identity, session=issued, redirect_to=self.redirect_to))

    def resend(self) -> FlowOutcome:
        state = self._expect(VerifyState, "resend")
        try:
            self._service.request_code(state.email)
        except DeliveryError as e:
            return self._move(VerifyState(email=state.email, error=e.message))
        return self._move(VerifyState(email=state.email))

    def back(self) -> FlowOutcome:
        state = self._expect(VerifyState, "back")
        return self._move(LoginState(email=state.email))
