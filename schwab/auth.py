from __future__ import annotations

import base64
import json
import logging
import os
import threading
import time
import webbrowser
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from rich.console import Console
from rich.prompt import Prompt

from file_io import atomic_write_json
from options import ClientOptions
from schwab.errors import AuthenticationFailed, Cancelled, LoginFailed

AUTH_SERVER = os.getenv("SCHWAB_AUTH_SERVER", "https://api.schwabapi.com/v1").rstrip("/")
TOKEN_URL = f"{AUTH_SERVER}/oauth/token"
AUTHORIZE_URL = f"{AUTH_SERVER}/oauth/authorize"
REQUEST_TIMEOUT = float(os.getenv("SCHWAB_TIMEOUT", "10"))  # seconds
REFRESH_FRACTION = float(os.getenv("SCHWAB_REFRESH_FRACTION", "0.10"))
REFRESH_MIN_BUFFER = int(os.getenv("SCHWAB_REFRESH_MIN_BUFFER", "30"))
LOCK_POLL_S = 0.1

log = logging.getLogger("schwab.auth")


@dataclass(frozen=True)
class AuthCredential:
    """Persisted OAuth token set; ``expires_at``/``issued_at`` are epoch seconds."""

    code: str = ""
    session: str = ""
    token_type: str = ""
    scope: str = ""
    access_token: str = ""
    refresh_token: str = ""
    id_token: str = ""
    expires_at: float = 0.0
    issued_at: float = 0.0

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "AuthCredential":
        """Build a credential from the persisted JSON payload (unknown keys ignored)."""
        return AuthCredential(
            code=str(d.get("code") or ""),
            session=str(d.get("session") or ""),
            token_type=str(d.get("token_type") or ""),
            scope=str(d.get("scope") or ""),
            access_token=str(d.get("access_token") or ""),
            refresh_token=str(d.get("refresh_token") or ""),
            id_token=str(d.get("id_token") or ""),
            expires_at=float(d.get("expires_at") or 0),
            issued_at=float(d.get("issued_at") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "session": self.session,
            "token_type": self.token_type,
            "scope": self.scope,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "id_token": self.id_token,
            "expires_at": self.expires_at,
            "issued_at": self.issued_at,
        }

    def refresh_margin_s(self) -> float:
        lifetime = max(0.0, self.expires_at - self.issued_at)
        return max(REFRESH_MIN_BUFFER, lifetime * REFRESH_FRACTION)

    def is_valid(self, now: float) -> bool:
        """True when an access token is present and not within the refresh margin of expiry."""
        if not self.access_token or self.expires_at <= 0:
            return False
        return now < self.expires_at - self.refresh_margin_s()

    def ttl_remaining_s(self, now: float) -> Optional[int]:
        if self.expires_at <= 0:
            return None
        return max(0, int(self.expires_at - now))


@dataclass(frozen=True)
class AuthorizationGrant:
    """Authorization code and session returned by the login callback."""

    code: str
    session: str = ""


class LoginProvider(Protocol):
    def obtain_authorization_code(self, options: ClientOptions) -> AuthorizationGrant:
        """Run an interactive login; raise ``LoginFailed`` when no code is obtained."""
        ...


def authorize_url(options: ClientOptions, base: str = AUTHORIZE_URL) -> str:
    query = urlencode({
        "client_id": options.developer_app_key,
        "redirect_uri": options.developer_app_callback_url,
    })
    return f"{base}?{query}"


def parse_callback_url(url: str) -> AuthorizationGrant:
    """Extract ``code`` and ``session`` from the URL the browser was redirected to."""
    query = parse_qs(urlparse(url.strip()).query)
    code = (query.get("code") or [""])[0]
    if not code:
        raise LoginFailed("Callback URL has no 'code' parameter.")
    session = (query.get("session") or [""])[0]
    return AuthorizationGrant(code=code, session=session)


class ConsoleLoginProvider:
    """Human-in-the-loop login: show the authorize URL, read back the callback URL."""

    def __init__(self, console: Optional[Console] = None, open_browser: bool = True):
        self.console = console or Console()
        self.open_browser = open_browser

    def obtain_authorization_code(self, options: ClientOptions) -> AuthorizationGrant:
        url = authorize_url(options)
        self.console.print("[bold]Schwab login required[/bold]")
        self.console.print("Sign in and approve access, then paste the URL you are redirected to.")
        self.console.print(url, soft_wrap=True)
        if self.open_browser:
            webbrowser.open(url)
        pasted = Prompt.ask("Callback URL", console=self.console, default="", show_default=False)
        if not pasted.strip():
            raise LoginFailed("No callback URL provided.")
        return parse_callback_url(pasted)


class TokenStore:
    """JSON file holding the current ``AuthCredential``."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> AuthCredential:
        """Return the stored credential, or an empty one when missing or unreadable."""
        if not self.path.exists():
            return AuthCredential()
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("token file is not a JSON object")
            return AuthCredential.from_dict(data)
        except (OSError, ValueError, TypeError) as exc:
            log.warning("Ignoring unreadable token file %s: %s", self.path, exc)
            return AuthCredential()

    def save(self, credential: AuthCredential) -> None:
        """Replace the token file atomically; raises ``PersistenceFailure``."""
        atomic_write_json(self.path, credential.to_dict())


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("authentication cancelled")


class TokenManager:
    """Owns the credential and keeps it valid, refreshing or logging in as needed.

    One authentication attempt runs at a time; callers that arrive while it
    runs wait for it and share its result.
    """

    def __init__(self,
                 options: ClientOptions,
                 store: TokenStore,
                 login_provider: LoginProvider,
                 http: Optional[requests.Session] = None,
                 token_url: str = TOKEN_URL,
                 clock: Callable[[], float] = time.time):
        self.options = options
        self.store = store
        self.login_provider = login_provider
        self.http = http or requests.Session()
        self.token_url = token_url
        self._clock = clock
        self._lock = threading.Lock()
        self._credential = store.load()
        self._generation = 0
        self._authenticating = False
        self.refresh_count = 0
        self.login_count = 0
        self.last_refresh: Optional[int] = None

    @property
    def credential(self) -> AuthCredential:
        return self._credential

    @property
    def state(self) -> AuthState:
        if self._authenticating:
            return AuthState.AUTHENTICATING
        cred = self._credential
        if not cred.access_token:
            return AuthState.UNAUTHENTICATED
        if cred.is_valid(self._clock()):
            return AuthState.AUTHENTICATED
        return AuthState.EXPIRED

    def ttl_remaining_s(self) -> Optional[int]:
        return self._credential.ttl_remaining_s(self._clock())

    def auth_headers(self, credential: Optional[AuthCredential] = None) -> Dict[str, str]:
        """Return the Authorization header for ``credential`` (default: the current one)."""
        cred = credential or self._credential
        return {"Authorization": f"{cred.token_type or 'Bearer'} {cred.access_token}"}

    def ensure_valid(self, cancel: Optional[threading.Event] = None, force_refresh: bool = False) -> AuthCredential:
        """Return a currently valid credential, refreshing or logging in when needed.

        ``force_refresh`` skips the validity check (used after a 401) unless
        another caller already replaced the credential while this one waited.
        """
        _check_cancel(cancel)
        seen_generation = self._generation
        cred = self._credential
        if not force_refresh and cred.is_valid(self._clock()):
            return cred

        self._acquire(cancel)
        try:
            cred = self._credential
            if cred.is_valid(self._clock()) and (not force_refresh or self._generation != seen_generation):
                return cred
            self._authenticating = True
            try:
                return self._authenticate(cancel)
            finally:
                self._authenticating = False
        finally:
            self._lock.release()

    def _acquire(self, cancel: Optional[threading.Event]) -> None:
        while not self._lock.acquire(timeout=LOCK_POLL_S):
            _check_cancel(cancel)
        if cancel is not None and cancel.is_set():
            self._lock.release()
            raise Cancelled("authentication cancelled")

    def _authenticate(self, cancel: Optional[threading.Event]) -> AuthCredential:
        if self._credential.refresh_token:
            refreshed = self._refresh(cancel)
            if refreshed is not None:
                return refreshed
            log.info("Refresh token rejected; falling back to interactive login.")
        else:
            log.info("No refresh token available; interactive login required.")

        _check_cancel(cancel)
        grant = self.login_provider.obtain_authorization_code(self.options)
        _check_cancel(cancel)
        self.login_count += 1
        return self._create(grant, cancel)

    def _refresh(self, cancel: Optional[threading.Event]) -> Optional[AuthCredential]:
        """Exchange the refresh token; ``None`` when the server rejects it."""
        data = self._post_token({
            "grant_type": "refresh_token",
            "refresh_token": self._credential.refresh_token,
        }, cancel)
        if data is None or not data.get("access_token"):
            return None
        cred = self._apply(data, self._credential)
        self.refresh_count += 1
        self.last_refresh = int(self._clock())
        log.info("Access token refreshed; TTL=%ss", int(cred.expires_at - cred.issued_at))
        return cred

    def _create(self, grant: AuthorizationGrant, cancel: Optional[threading.Event]) -> AuthCredential:
        data = self._post_token({
            "grant_type": "authorization_code",
            "code": grant.code,
            "redirect_uri": self.options.developer_app_callback_url,
        }, cancel)
        if data is None:
            raise AuthenticationFailed("Authorization code exchange was rejected.")
        if not data.get("access_token"):
            raise AuthenticationFailed("Malformed token response: missing access_token.")
        base = replace(self._credential, code=grant.code, session=grant.session or self._credential.session)
        cred = self._apply(data, base)
        log.info("Access token created from authorization code; TTL=%ss", int(cred.expires_at - cred.issued_at))
        return cred

    def _basic_auth(self) -> str:
        raw = f"{self.options.developer_app_key}:{self.options.developer_app_secret}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def _post_token(self, form: Dict[str, str], cancel: Optional[threading.Event]) -> Optional[Dict[str, Any]]:
        """POST ``form`` to the token endpoint.

        Network errors are retried once and then raise ``AuthenticationFailed``.
        A non-200 status or a non-JSON body returns ``None``.
        """
        headers = {
            "Authorization": f"Basic {self._basic_auth()}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        resp = None
        for attempt in (1, 2):
            _check_cancel(cancel)
            try:
                resp = self.http.post(self.token_url, data=form, headers=headers, timeout=REQUEST_TIMEOUT)
                break
            except requests.RequestException as exc:
                if attempt == 2:
                    raise AuthenticationFailed(f"Network error calling token endpoint: {exc}") from exc
                log.warning("Token endpoint unreachable (%s); retrying once.", exc)

        if resp.status_code != 200:
            log.warning("Token endpoint rejected %s (HTTP %s): %s", form["grant_type"], resp.status_code, resp.text[:200])
            return None
        try:
            data = resp.json()
        except ValueError:
            log.warning("Token endpoint returned a non-JSON body for %s.", form["grant_type"])
            return None
        return data if isinstance(data, dict) else None

    def _apply(self, data: Dict[str, Any], base: AuthCredential) -> AuthCredential:
        """Fold a token response into ``base``, install it and persist it."""
        now = self._clock()
        try:
            expires_in = float(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0.0
        cred = replace(
            base,
            token_type=data.get("token_type") or base.token_type or "Bearer",
            scope=data.get("scope") or base.scope,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or base.refresh_token,
            id_token=data.get("id_token") or base.id_token,
            issued_at=now,
            expires_at=now + expires_in,
        )
        self._credential = cred
        self._generation += 1
        self.store.save(cred)
        return cred


__all__ = [
    "AuthCredential",
    "AuthorizationGrant",
    "LoginProvider",
    "ConsoleLoginProvider",
    "authorize_url",
    "parse_callback_url",
    "TokenStore",
    "AuthState",
    "TokenManager",
    "TOKEN_URL",
    "AUTHORIZE_URL",
]
