import base64
import json
import threading

import pytest

from conftest import FakeHttp, FakeLogin, FakeResponse
from schwab.auth import (
    AuthCredential,
    AuthState,
    TokenManager,
    TokenStore,
    authorize_url,
    parse_callback_url,
)
from schwab.errors import AuthenticationFailed, Cancelled, LoginFailed, PersistenceFailure

NOW = 1_700_000_000.0


def valid_credential(now=NOW, **overrides):
    fields = dict(code="c", session="s", token_type="Bearer", scope="api",
                  access_token="access-1", refresh_token="refresh-1", id_token="id-1",
                  issued_at=now - 60, expires_at=now + 1740)
    fields.update(overrides)
    return AuthCredential(**fields)


def make_manager(client_options, http, login=None, credential=None, now=NOW):
    store = TokenStore(client_options.auth_tokens_file_location)
    if credential is not None:
        store.save(credential)
    clock = [now]
    manager = TokenManager(client_options, store, login or FakeLogin(), http=http, clock=lambda: clock[0])
    return manager, store, clock


# TokenStore

def test_store_load_missing_file_returns_empty(tmp_path):
    assert TokenStore(tmp_path / "nope.json").load() == AuthCredential()


def test_store_load_corrupt_file_returns_empty(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text("{not json", encoding="utf-8")
    assert TokenStore(path).load() == AuthCredential()
    path.write_text("[1, 2]", encoding="utf-8")
    assert TokenStore(path).load() == AuthCredential()


def test_store_save_then_load(tmp_path):
    store = TokenStore(tmp_path / "nested" / "tokens.json")
    cred = valid_credential()
    store.save(cred)
    assert store.load() == cred
    assert not (tmp_path / "nested" / "tokens.json.tmp").exists()


def test_store_save_failure_raises_persistence_failure(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        TokenStore(blocker / "tokens.json").save(valid_credential())


# AuthCredential

def test_credential_validity_uses_safety_margin():
    cred = AuthCredential(access_token="a", issued_at=1000, expires_at=2800)
    assert cred.is_valid(2000)
    assert not cred.is_valid(2700)  # inside the last 10%
    assert not AuthCredential(issued_at=1000, expires_at=2800).is_valid(2000)
    assert not AuthCredential(access_token="a").is_valid(0)


# TokenManager

def test_valid_credential_is_returned_without_io(client_options):
    http = FakeHttp()
    manager, _, _ = make_manager(client_options, http, credential=valid_credential())
    assert manager.state is AuthState.AUTHENTICATED
    cred = manager.ensure_valid()
    assert cred.access_token == "access-1"
    assert http.calls == []


def test_expired_credential_is_refreshed_and_persisted(client_options, token_payload):
    http = FakeHttp([FakeResponse(200, token_payload)])
    login = FakeLogin()
    expired = valid_credential(issued_at=NOW - 4000, expires_at=NOW - 100)
    manager, store, _ = make_manager(client_options, http, login=login, credential=expired)
    assert manager.state is AuthState.EXPIRED

    cred = manager.ensure_valid()

    assert cred.access_token == "access-2"
    assert cred.refresh_token == "refresh-2"
    assert cred.expires_at == NOW + 1800
    assert cred.code == "c"
    assert login.calls == 0
    assert manager.refresh_count == 1
    assert manager.state is AuthState.AUTHENTICATED
    assert store.load() == cred

    call = http.calls[0]
    assert call["method"] == "POST"
    assert call["url"].endswith("/oauth/token")
    assert call["data"] == {"grant_type": "refresh_token", "refresh_token": "refresh-1"}
    expected = base64.b64encode(b"app-key:app-secret").decode("ascii")
    assert call["headers"]["Authorization"] == f"Basic {expected}"


def test_refresh_response_keeps_missing_optional_fields(client_options):
    http = FakeHttp([FakeResponse(200, {"access_token": "access-3", "expires_in": 1800})])
    expired = valid_credential(issued_at=NOW - 4000, expires_at=NOW - 100)
    manager, _, _ = make_manager(client_options, http, credential=expired)
    cred = manager.ensure_valid()
    assert cred.refresh_token == "refresh-1"
    assert cred.id_token == "id-1"
    assert cred.token_type == "Bearer"


def test_rejected_refresh_falls_back_to_login(client_options, token_payload):
    http = FakeHttp([FakeResponse(400, text="invalid_grant"), FakeResponse(200, token_payload)])
    login = FakeLogin()
    expired = valid_credential(issued_at=NOW - 4000, expires_at=NOW - 100)
    manager, store, _ = make_manager(client_options, http, login=login, credential=expired)

    cred = manager.ensure_valid()

    assert login.calls == 1
    assert cred.code == "auth-code"
    assert cred.session == "sess-1"
    assert cred.access_token == "access-2"
    assert http.calls[1]["data"] == {
        "grant_type": "authorization_code",
        "code": "auth-code",
        "redirect_uri": "https://127.0.0.1/callback",
    }
    assert json.loads(client_options.auth_tokens_file_location.read_text())["code"] == "auth-code"


def test_without_refresh_token_goes_straight_to_login(client_options, token_payload):
    http = FakeHttp([FakeResponse(200, token_payload)])
    login = FakeLogin()
    manager, _, _ = make_manager(client_options, http, login=login)
    assert manager.state is AuthState.UNAUTHENTICATED

    cred = manager.ensure_valid()

    assert login.calls == 1
    assert len(http.calls) == 1
    assert http.calls[0]["data"]["grant_type"] == "authorization_code"
    assert cred.access_token == "access-2"


def test_code_exchange_rejected_raises(client_options):
    http = FakeHttp([FakeResponse(401, text="bad code")])
    manager, _, _ = make_manager(client_options, http)
    with pytest.raises(AuthenticationFailed):
        manager.ensure_valid()
    assert manager.state is AuthState.UNAUTHENTICATED


def test_login_failure_propagates_unchanged(client_options, login_failed):
    manager, _, _ = make_manager(client_options, FakeHttp(), login=FakeLogin(error=login_failed))
    with pytest.raises(LoginFailed) as info:
        manager.ensure_valid()
    assert info.value is login_failed


def test_network_error_is_retried_once(client_options, connection_error, token_payload):
    http = FakeHttp([connection_error, FakeResponse(200, token_payload)])
    expired = valid_credential(issued_at=NOW - 4000, expires_at=NOW - 100)
    manager, _, _ = make_manager(client_options, http, credential=expired)
    assert manager.ensure_valid().access_token == "access-2"
    assert len(http.calls) == 2


def test_repeated_network_error_raises_authentication_failed(client_options, connection_error):
    http = FakeHttp([connection_error, connection_error])
    login = FakeLogin()
    expired = valid_credential(issued_at=NOW - 4000, expires_at=NOW - 100)
    manager, _, _ = make_manager(client_options, http, login=login, credential=expired)
    with pytest.raises(AuthenticationFailed):
        manager.ensure_valid()
    assert login.calls == 0
    assert len(http.calls) == 2


def test_force_refresh_skips_validity_check(client_options, token_payload):
    http = FakeHttp([FakeResponse(200, token_payload)])
    manager, _, _ = make_manager(client_options, http, credential=valid_credential())
    cred = manager.ensure_valid(force_refresh=True)
    assert cred.access_token == "access-2"
    assert http.calls[0]["data"]["grant_type"] == "refresh_token"


def test_credential_goes_stale_as_clock_advances(client_options, token_payload):
    http = FakeHttp([FakeResponse(200, token_payload)])
    manager, _, clock = make_manager(client_options, http, credential=valid_credential())
    assert manager.ensure_valid().access_token == "access-1"
    clock[0] = NOW + 1700
    assert manager.state is AuthState.EXPIRED
    assert manager.ensure_valid().access_token == "access-2"


def test_concurrent_callers_share_one_authentication(client_options, token_payload):
    http = FakeHttp([FakeResponse(200, token_payload)], delay_s=0.2)
    login = FakeLogin()
    manager, _, _ = make_manager(client_options, http, login=login)
    results = []
    errors = []

    def worker():
        try:
            results.append(manager.ensure_valid())
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert login.calls == 1
    assert len(http.calls) == 1
    assert {c.access_token for c in results} == {"access-2"}


def test_concurrent_force_refresh_collapses(client_options, token_payload):
    http = FakeHttp([FakeResponse(200, token_payload)], delay_s=0.2)
    manager, _, _ = make_manager(client_options, http, credential=valid_credential())
    results = []
    threads = [threading.Thread(target=lambda: results.append(manager.ensure_valid(force_refresh=True)))
               for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert len(http.calls) == 1
    assert {c.access_token for c in results} == {"access-2"}


def test_cancelled_before_authentication(client_options):
    http = FakeHttp()
    manager, _, _ = make_manager(client_options, http)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        manager.ensure_valid(cancel)
    assert http.calls == []


def test_auth_headers_use_token_type(client_options):
    manager, _, _ = make_manager(client_options, FakeHttp(), credential=valid_credential())
    assert manager.auth_headers() == {"Authorization": "Bearer access-1"}


# Login helpers

def test_authorize_url_carries_app_key_and_callback(client_options):
    url = authorize_url(client_options)
    assert url.startswith("https://api.schwabapi.com/v1/oauth/authorize?")
    assert "client_id=app-key" in url
    assert "redirect_uri=https%3A%2F%2F127.0.0.1%2Fcallback" in url


def test_parse_callback_url_decodes_code_and_session():
    grant = parse_callback_url("https://127.0.0.1/callback?code=C0.abc%40&session=xyz-1")
    assert grant.code == "C0.abc@"
    assert grant.session == "xyz-1"


def test_parse_callback_url_without_code_fails():
    with pytest.raises(LoginFailed):
        parse_callback_url("https://127.0.0.1/callback?error=access_denied")
