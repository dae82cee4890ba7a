from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from auth.api_client import ENDPOINTS, ApiClient
from auth.errors import AuthError, AuthErrorKind
from auth.handshake import AttemptCallbacks, AuthOrchestrator
from auth.models import Credentials, TeamMemberOverlay
from auth.session_store import COOKIE_SESSION_MARKER
from fakes import make_response
from services.cache import ContentCache
from services.push import PushRegistrar

API = "https://app.test/api"
ACCOUNTS = "https://accounts.test"
BACKEND = "https://accounts.test/backend"

LOGIN_PAGE = ("GET", "accounts.test/login")
LOGIN_POST = ("POST", "/backend/login")
ACCESS_POST = ("POST", "/backend/access")
ACCESS_GET = ("GET", "/backend/access")
VERIFY = ("GET", "/backend/verify/session")
OAUTH_VERIFY = ("POST", "/backend/google/verify")

CREDS = Credentials(email="ana@example.com", password="s3cret")

USER = {"_id": "u1", "name": "Ana", "settingId": "s1"}


def exchange_ok(token: str = "eyJapp", user: dict = USER) -> requests.Response:
    return make_response(200, json={"status": "success", "data": {"token": token, "user": user}})


def session_ok(**data) -> requests.Response:
    payload = {"user": USER}
    payload.update(data)
    return make_response(200, json={"status": "success", "data": payload})


@pytest.fixture
def push() -> MagicMock:
    return MagicMock(spec=PushRegistrar)


@pytest.fixture
def cache() -> MagicMock:
    return MagicMock(spec=ContentCache)


@pytest.fixture
def auth(store, api_http, provider_http, push, cache) -> AuthOrchestrator:
    api = ApiClient(store, base_url=API, timeout=5, http=api_http)
    return AuthOrchestrator(
        store,
        api,
        push=push,
        cache=cache,
        http_factory=lambda: provider_http,
        accounts_url=ACCOUNTS,
        accounts_backend_url=BACKEND,
        project="pcf",
        timeout=5,
    )


@pytest.fixture
def callbacks() -> AttemptCallbacks:
    return AttemptCallbacks(on_success=MagicMock(), on_error=MagicMock(), on_close=MagicMock())


def _route_provider(http, **outcomes) -> None:
    defaults = {
        "login_page": make_response(200, text='<form><input name="_token" value="csrf123"></form>'),
        "login_post": make_response(200, text="<html><body>Welcome</body></html>"),
        "access_post": make_response(200, json={"status": "success"}),
        "access_get": make_response(200, json={"status": "success"}),
        "verify": make_response(200, json={"status": "error", "message": "No session"}),
    }
    defaults.update(outcomes)
    http.route(*LOGIN_PAGE, defaults["login_page"])
    http.route(*LOGIN_POST, defaults["login_post"])
    http.route(*ACCESS_POST, defaults["access_post"])
    http.route(*ACCESS_GET, defaults["access_get"])
    http.route(*VERIFY, defaults["verify"])


# ----------------------------------------------------------------------
# Provider fallback chain
# ----------------------------------------------------------------------


def test_token_on_first_login_post(auth, store, api_http, provider_http, callbacks) -> None:
    _route_provider(provider_http, login_post=make_response(200, json={"data": {"token": "eyJprovider"}}))
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())
    store.create_session = MagicMock(wraps=store.create_session)

    auth.run_attempt(auth.sign_in_provider, callbacks, CREDS)

    assert api_http.count("GET", ENDPOINTS["token_auth"]) == 1
    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"] == {"token": "eyJprovider", "s": "pcf"}
    assert store.create_session.call_count == 1
    callbacks.on_success.assert_called_once_with()
    callbacks.on_error.assert_not_called()
    assert provider_http.count(*ACCESS_POST) == 0
    assert store.get_token() == "eyJapp"
    assert store.get_setting_id() == "s1"


def test_html_login_then_access_redirect_location(auth, store, api_http, provider_http) -> None:
    _route_provider(
        provider_http,
        access_post=make_response(302, headers={"Location": "https://app.test/?token=abc123"}),
    )
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    session = auth.sign_in_provider(CREDS)

    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"]["token"] == "abc123"
    assert provider_http.count(*ACCESS_GET) == 0
    assert session.user == USER
    assert provider_http.last_call(*ACCESS_POST)["allow_redirects"] is False


def test_chain_reaches_access_get_before_succeeding(auth, api_http, provider_http) -> None:
    _route_provider(
        provider_http,
        access_get=make_response(200, json={"redirectUrl": "https://app.test/login?token=eyJget"}),
    )
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    auth.sign_in_provider(CREDS)

    assert provider_http.count(*LOGIN_PAGE) == 1
    assert provider_http.count(*LOGIN_POST) == 1
    assert provider_http.count(*ACCESS_POST) == 1
    assert provider_http.count(*ACCESS_GET) == 1
    assert provider_http.count(*VERIFY) == 0
    assert provider_http.last_call(*ACCESS_GET)["params"] == {"project": "pcf"}
    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"]["token"] == "eyJget"


def test_provider_session_verify_is_last_resort(auth, api_http, provider_http) -> None:
    _route_provider(provider_http, verify=make_response(200, json={"data": "eyJverified"}))
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    auth.sign_in_provider(CREDS)

    assert provider_http.count(*VERIFY) == 1
    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"]["token"] == "eyJverified"


def test_exhausted_chain_is_token_not_found(auth, store, api_http, provider_http) -> None:
    _route_provider(provider_http)

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_provider(CREDS)

    assert excinfo.value.kind is AuthErrorKind.TOKEN_NOT_FOUND
    assert provider_http.count(*VERIFY) == 1
    assert api_http.calls == []
    assert store.restore_session() is None


def test_step_failures_are_swallowed(auth, api_http, provider_http) -> None:
    _route_provider(
        provider_http,
        login_page=requests.ConnectionError("reset"),
        access_post=requests.Timeout("slow"),
        access_get=make_response(302, headers={"Location": "/callback?token=eyJlate"}),
    )
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    auth.sign_in_provider(CREDS)

    assert "_token" not in provider_http.last_call(*LOGIN_POST)["data"]
    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"]["token"] == "eyJlate"


def test_unreachable_provider_is_provider_unavailable(auth, provider_http) -> None:
    down = requests.ConnectionError("no route to host")
    _route_provider(
        provider_http, login_page=down, login_post=down, access_post=down, access_get=down, verify=down
    )

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_provider(CREDS)

    assert excinfo.value.kind is AuthErrorKind.PROVIDER_UNAVAILABLE


def test_csrf_and_credentials_are_posted(auth, api_http, provider_http) -> None:
    _route_provider(provider_http, login_post=make_response(200, json={"token": "eyJp"}))
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    auth.sign_in_provider(CREDS)

    posted = provider_http.last_call(*LOGIN_POST)
    assert posted["data"] == {
        "email": "ana@example.com",
        "password": "s3cret",
        "project": "pcf",
        "_token": "csrf123",
    }
    assert posted["allow_redirects"] is False
    assert provider_http.closed is True


def test_json_error_fails_fast_with_server_message(auth, provider_http) -> None:
    _route_provider(
        provider_http,
        login_post=make_response(200, json={"status": "error", "message": "Wrong password for this account"}),
    )

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_provider(CREDS)

    assert excinfo.value.kind is AuthErrorKind.INVALID_CREDENTIALS
    assert excinfo.value.message == "Wrong password for this account"
    assert provider_http.count(*ACCESS_POST) == 0


def test_html_failure_phrase_is_invalid_credentials(auth, provider_http) -> None:
    _route_provider(
        provider_http,
        login_post=make_response(200, text="<div class='error'>Invalid credentials</div>"),
    )

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_provider(CREDS)

    assert excinfo.value.kind is AuthErrorKind.INVALID_CREDENTIALS
    assert provider_http.count(*ACCESS_POST) == 0


def test_redirect_after_login_continues_chain(auth, api_http, provider_http) -> None:
    _route_provider(
        provider_http,
        login_post=make_response(302, headers={"Location": "https://accounts.test/dashboard"}),
        access_post=make_response(200, json={"data": {"token": "eyJgrant"}}),
    )
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    auth.sign_in_provider(CREDS)

    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"]["token"] == "eyJgrant"


def test_rejected_exchange_is_exchange_failed(auth, store, api_http, provider_http) -> None:
    _route_provider(provider_http, login_post=make_response(200, json={"token": "eyJp"}))
    api_http.route(
        "GET", ENDPOINTS["token_auth"], make_response(200, json={"status": "error", "message": "Bad token"})
    )

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_provider(CREDS)

    assert excinfo.value.kind is AuthErrorKind.EXCHANGE_FAILED
    assert excinfo.value.message == "Bad token"
    assert store.restore_session() is None


# ----------------------------------------------------------------------
# Other credential forms
# ----------------------------------------------------------------------


def test_direct_sign_in_hydrates_user(auth, store, api_http) -> None:
    api_http.route("POST", ENDPOINTS["sign_in"], make_response(200, json={"status": "success", "data": "eyJdirect"}))
    api_http.route("GET", ENDPOINTS["session"], session_ok())

    session = auth.sign_in_direct(CREDS)

    assert session.token == "eyJdirect"
    assert session.user == USER
    assert api_http.last_call("GET", ENDPOINTS["session"])["headers"]["Authorization"] == "Bearer eyJdirect"


def test_direct_sign_in_tolerates_hydration_failure(auth, store, api_http) -> None:
    api_http.route("POST", ENDPOINTS["sign_in"], make_response(200, json={"accessToken": "eyJdirect"}))
    api_http.route("GET", ENDPOINTS["session"], make_response(500, json={"message": "boom"}))

    session = auth.sign_in_direct(CREDS)

    assert session.token == "eyJdirect"
    assert store.is_valid() is True


def test_direct_sign_in_rejected(auth, api_http) -> None:
    api_http.route("POST", ENDPOINTS["sign_in"], make_response(401, json={"message": "Invalid email or password"}))

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_direct(CREDS)

    assert excinfo.value.kind is AuthErrorKind.INVALID_CREDENTIALS


def test_transport_timeout_is_normalized(auth, api_http) -> None:
    api_http.route("POST", ENDPOINTS["sign_in"], requests.Timeout("read timed out"))

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_direct(CREDS)

    assert excinfo.value.kind is AuthErrorKind.TIMEOUT
    assert auth.attempt_in_progress is False


def test_oauth_sign_in_exchanges_provider_token(auth, api_http, provider_http) -> None:
    provider_http.route(*OAUTH_VERIFY, make_response(200, json={"status": "success", "data": {"token": "eyJg"}}))
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    session = auth.sign_in_oauth("google-id-token", "google-access")

    assert provider_http.last_call(*OAUTH_VERIFY)["json"]["idToken"] == "google-id-token"
    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"]["token"] == "eyJg"
    assert session.token == "eyJapp"


def test_oauth_sign_in_rejected(auth, provider_http) -> None:
    provider_http.route(
        *OAUTH_VERIFY, make_response(401, json={"status": "error", "message": "Invalid Google token"})
    )

    with pytest.raises(AuthError) as excinfo:
        auth.sign_in_oauth("bad")

    assert excinfo.value.kind is AuthErrorKind.INVALID_CREDENTIALS
    assert excinfo.value.message == "Invalid Google token"


def test_token_auth_forwards_accompanying_fields(auth, api_http) -> None:
    api_http.route("GET", ENDPOINTS["token_auth"], exchange_ok())

    auth.token_auth("eyJx", {"pl": "plan1", "token": "ignored", "empty": ""})

    assert api_http.last_call("GET", ENDPOINTS["token_auth"])["params"] == {
        "pl": "plan1",
        "token": "eyJx",
        "s": "pcf",
    }


def test_cookie_only_exchange_stores_local_marker(auth, store, api_http) -> None:
    api_http.route("GET", ENDPOINTS["token_auth"], make_response(200, json={"status": "success"}))
    api_http.route("GET", ENDPOINTS["session"], session_ok())

    session = auth.token_auth("eyJx")

    assert session.token == COOKIE_SESSION_MARKER
    assert session.user == USER
    assert store.bearer_token() is None


def test_cookie_only_exchange_without_session_fails(auth, store, api_http) -> None:
    api_http.route("GET", ENDPOINTS["token_auth"], make_response(200, json={"status": "success"}))
    api_http.route("GET", ENDPOINTS["session"], make_response(200, json={"status": "success", "data": {}}))

    with pytest.raises(AuthError) as excinfo:
        auth.token_auth("eyJx")

    assert excinfo.value.kind is AuthErrorKind.TOKEN_NOT_FOUND


def test_team_member_login(auth, store, api_http, cache) -> None:
    store.create_session(token="eyJowner", user=USER, setting_id="s1")
    api_http.route("POST", ENDPOINTS["team_member_login"], make_response(200, json={"status": "success"}))
    api_http.route(
        "GET",
        ENDPOINTS["session"],
        session_ok(user={"_id": "u1", "settingId": "s7"}, teamMemberStatus={"loggedIn": True, "name": "Ravi"}),
    )

    session = auth.login_team_member({"settingId": "s7", "teamMemberId": "tm1"})

    assert session.setting_id == "s7"
    assert store.get_team_member().name == "Ravi"
    assert api_http.last_call("POST", ENDPOINTS["team_member_login"])["json"]["teamMemberId"] == "tm1"
    cache.clear_all.assert_called_once_with()


def test_team_member_login_rejected(auth, api_http) -> None:
    api_http.route(
        "POST", ENDPOINTS["team_member_login"], make_response(403, json={"message": "Access revoked"})
    )

    with pytest.raises(AuthError) as excinfo:
        auth.login_team_member({"settingId": "s7"})

    assert excinfo.value.kind is AuthErrorKind.EXCHANGE_FAILED


# ----------------------------------------------------------------------
# Single-flight & callbacks
# ----------------------------------------------------------------------


def test_concurrent_attempt_is_rejected(auth, provider_http) -> None:
    with auth.attempt():
        with pytest.raises(AuthError) as excinfo:
            auth.sign_in_provider(CREDS)

    assert excinfo.value.kind is AuthErrorKind.LOGIN_IN_PROGRESS
    assert provider_http.calls == []
    assert auth.attempt_in_progress is False


def test_run_attempt_reports_error_once(auth, provider_http, callbacks) -> None:
    _route_provider(provider_http)

    result = auth.run_attempt(auth.sign_in_provider, callbacks, CREDS)

    assert result is None
    callbacks.on_success.assert_not_called()
    callbacks.on_error.assert_called_once()
    kind, message = callbacks.on_error.call_args.args
    assert kind is AuthErrorKind.TOKEN_NOT_FOUND
    assert message


def test_run_attempt_normalizes_foreign_exceptions(auth, callbacks) -> None:
    def explode():
        raise RuntimeError("kaboom")

    auth.run_attempt(explode, callbacks)

    callbacks.on_error.assert_called_once_with(AuthErrorKind.PROVIDER_UNAVAILABLE, "kaboom")


# ----------------------------------------------------------------------
# check_session / restore
# ----------------------------------------------------------------------


def test_check_session_cookie_session_writes_marker(auth, store, api_http) -> None:
    api_http.route("GET", ENDPOINTS["session"], session_ok(timeZone="Asia/Kolkata"))

    auth.check_session()

    assert store.get_token() == COOKIE_SESSION_MARKER
    assert store.restore_session().user == USER
    assert store.get_timezone() == "Asia/Kolkata"
    assert "Authorization" not in api_http.last_call("GET", ENDPOINTS["session"])["headers"]


def test_check_session_keeps_real_token(auth, store, api_http) -> None:
    store.create_session(token="eyJapp")
    api_http.route("GET", ENDPOINTS["session"], session_ok())

    auth.check_session()

    assert store.get_token() == "eyJapp"
    assert store.get_user() == USER
    assert store.should_verify_with_server() is False


def test_check_session_registers_push(auth, api_http, push) -> None:
    api_http.route("GET", ENDPOINTS["session"], session_ok())

    auth.check_session()

    push.register.assert_called_once_with("u1", "s1")


def test_check_session_survives_push_failure(auth, api_http, push) -> None:
    push.register.side_effect = RuntimeError("push sdk missing")
    api_http.route("GET", ENDPOINTS["session"], session_ok())

    result = auth.check_session()

    assert result.setting_id == "s1"


def test_check_session_team_member_saved_then_cleared(auth, store, api_http) -> None:
    api_http.route(
        "GET",
        ENDPOINTS["session"],
        [
            session_ok(teamMemberStatus={"loggedIn": True, "name": "Ravi", "role": "agent"}),
            session_ok(teamMemberStatus={"loggedIn": False}),
        ],
    )

    auth.check_session()
    assert store.get_team_member().logged_in is True

    auth.check_session()
    assert store.get_team_member().logged_in is False


def test_check_session_without_overlay_keeps_team_member(auth, store, api_http) -> None:
    store.create_session(token="eyJapp", user=USER, setting_id="s1")
    store.save_team_member(TeamMemberOverlay(logged_in=True, name="Ravi", role="agent"))
    api_http.route("GET", ENDPOINTS["session"], session_ok(settingId="s1"))

    auth.check_session()

    overlay = store.get_team_member()
    assert overlay.logged_in is True
    assert overlay.name == "Ravi"
    assert overlay.role == "agent"


def test_restore_without_overlay_keeps_team_member(auth, store, api_http, clock) -> None:
    store.create_session(token="eyJapp", user=USER, setting_id="s1")
    store.save_team_member(TeamMemberOverlay(logged_in=True, name="Ravi"))
    clock.advance(2 * 3600)
    api_http.route("GET", ENDPOINTS["session"], session_ok())

    assert auth.restore() is not None
    assert api_http.count("GET", ENDPOINTS["session"]) == 1
    assert store.get_team_member().name == "Ravi"


def test_check_session_clears_missing_setting_id(auth, store, api_http) -> None:
    store.create_session(token="eyJapp", setting_id="old")
    api_http.route("GET", ENDPOINTS["session"], session_ok(user={"_id": "u1"}))

    auth.check_session()

    assert store.get_setting_id() is None


def test_check_session_rejected(auth, store, api_http) -> None:
    store.create_session(token="eyJapp", setting_id="s1")
    api_http.route("GET", ENDPOINTS["session"], make_response(401, json={"message": "Session expired"}))

    with pytest.raises(AuthError) as excinfo:
        auth.check_session()

    assert excinfo.value.kind is AuthErrorKind.SESSION_EXPIRED
    assert store.get_setting_id() is None
    assert store.should_verify_with_server() is True


def test_check_session_server_error(auth, api_http) -> None:
    api_http.route("GET", ENDPOINTS["session"], make_response(503, json={"message": "maintenance"}))

    with pytest.raises(AuthError) as excinfo:
        auth.check_session()

    assert excinfo.value.kind is AuthErrorKind.PROVIDER_UNAVAILABLE


def test_check_session_past_expiry_is_session_expired(auth, store, api_http, clock) -> None:
    store.create_session(token="eyJapp")
    api_http.route("GET", ENDPOINTS["session"], session_ok(tokenExpiresAt=int(clock()) - 10))

    with pytest.raises(AuthError) as excinfo:
        auth.check_session()

    assert excinfo.value.kind is AuthErrorKind.SESSION_EXPIRED
    assert store.restore_session() is None


def test_restore_without_session(auth, api_http) -> None:
    assert auth.restore() is None
    assert api_http.calls == []


def test_restore_skips_server_while_throttled(auth, store, api_http) -> None:
    store.create_session(token="eyJapp", user=USER)

    session = auth.restore()

    assert session.token == "eyJapp"
    assert api_http.calls == []


def test_restore_keeps_session_when_server_unreachable(auth, store, api_http, clock) -> None:
    store.create_session(token="eyJapp", user=USER)
    clock.advance(2 * 3600)
    api_http.route("GET", ENDPOINTS["session"], requests.ConnectionError("offline"))

    session = auth.restore()

    assert session is not None
    assert session.token == "eyJapp"


def test_restore_drops_rejected_session(auth, store, api_http, clock) -> None:
    store.create_session(token="eyJapp", user=USER)
    clock.advance(2 * 3600)
    api_http.route("GET", ENDPOINTS["session"], make_response(401, json={"message": "Session expired"}))

    assert auth.restore() is None


# ----------------------------------------------------------------------
# Logout & account switching
# ----------------------------------------------------------------------


def test_logout_clears_everything(auth, store, api_http, push, cache) -> None:
    store.create_session(token="eyJapp", user=USER, setting_id="s1")
    api_http.route("GET", ENDPOINTS["logout"], make_response(200, json={"status": "success"}))

    auth.logout()

    push.unregister.assert_called_once_with()
    cache.clear_all.assert_called_once_with()
    assert store.restore_session() is None


@pytest.mark.parametrize(
    "outcome",
    [requests.ConnectionError("offline"), make_response(500, json={"message": "boom"})],
)
def test_logout_clears_local_state_when_remote_fails(auth, store, api_http, cache, outcome) -> None:
    store.create_session(token="eyJapp", user=USER, setting_id="s1")
    api_http.route("GET", ENDPOINTS["logout"], outcome)

    with pytest.raises(AuthError) as excinfo:
        auth.logout()

    assert excinfo.value.kind is AuthErrorKind.LOGOUT_PARTIAL_FAILURE
    assert store.restore_session() is None
    cache.clear_all.assert_called_once_with()


def test_logout_continues_past_push_failure(auth, store, api_http, push) -> None:
    store.create_session(token="eyJapp")
    push.unregister.side_effect = RuntimeError("sdk gone")
    api_http.route("GET", ENDPOINTS["logout"], make_response(200, json={"status": "success"}))

    auth.logout()

    assert api_http.count("GET", ENDPOINTS["logout"]) == 1
    assert store.restore_session() is None


def test_logout_team_member(auth, store, api_http, cache) -> None:
    store.create_session(token="eyJapp")
    store.save_team_member(TeamMemberOverlay(logged_in=True, name="Ravi"))
    api_http.route("GET", ENDPOINTS["team_member_logout"], make_response(200, json={"status": "success"}))

    auth.logout_team_member()

    assert store.get_team_member().logged_in is False
    assert store.get_token() == "eyJapp"
    cache.clear_all.assert_called_once_with()


def test_access_business_account(auth, store, api_http) -> None:
    store.create_session(token="eyJapp", setting_id="s1")
    api_http.route(
        "GET", f"{ENDPOINTS['access_business_account']}/s9", make_response(200, json={"status": "success"})
    )

    auth.access_business_account("s9")

    assert store.get_setting_id() == "s9"


def test_access_business_account_refused(auth, store, api_http) -> None:
    store.create_session(token="eyJapp", setting_id="s1")
    api_http.route(
        "GET", f"{ENDPOINTS['access_business_account']}/s9", make_response(403, json={"message": "No access"})
    )

    with pytest.raises(AuthError):
        auth.access_business_account("s9")

    assert store.get_setting_id() == "s1"
