from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from auth.api_client import ENDPOINTS, ApiClient
from auth.session_store import COOKIE_SESSION_MARKER
from fakes import make_response


@pytest.fixture
def api(store, api_http) -> ApiClient:
    return ApiClient(store, base_url="https://chatflow.test/api", timeout=7, http=api_http)


def test_call_sends_bearer_and_setting_id(store, api, api_http) -> None:
    store.create_session(token="eyJapp", setting_id="s1")
    api_http.route("GET", "inbox/contacts", make_response(200, json={"status": "success", "data": [1, 2]}))

    response = api.call("inbox/contacts")

    assert response.ok
    assert response.data == [1, 2]
    method, url, kwargs = api_http.calls[-1]
    assert url == "https://chatflow.test/api/inbox/contacts"
    assert kwargs["headers"]["Authorization"] == "Bearer eyJapp"
    assert kwargs["headers"]["settingId"] == "s1"
    assert kwargs["timeout"] == 7


def test_auth_endpoints_skip_setting_id(store, api, api_http) -> None:
    store.create_session(token="eyJapp", setting_id="s1")
    api_http.route("GET", ENDPOINTS["session"], make_response(200, json={"status": "success"}))

    api.call(ENDPOINTS["session"])

    headers = api_http.last_call("GET", ENDPOINTS["session"])["headers"]
    assert "settingId" not in headers


def test_cookie_marker_is_never_sent(store, api, api_http) -> None:
    store.create_session(token=COOKIE_SESSION_MARKER, user={"_id": "u1"})
    api_http.route("GET", "inbox/contacts", make_response(200, json={"status": "success"}))

    api.call("inbox/contacts")

    headers = api_http.last_call("GET", "inbox/contacts")["headers"]
    assert "Authorization" not in headers
    assert COOKIE_SESSION_MARKER not in headers.values()


def test_http_error_is_normalized(api, api_http) -> None:
    api_http.route("POST", ENDPOINTS["sign_in"], make_response(422, json={"message": "Invalid credentials"}))

    response = api.call(ENDPOINTS["sign_in"], "POST", {"email": "a@b.c"})

    assert not response.ok
    assert response.status_code == 422
    assert response.message == "Invalid credentials"


def test_non_dict_body_is_wrapped(api, api_http) -> None:
    api_http.route("GET", "things", make_response(200, json=["a", "b"]))

    response = api.call("things")

    assert response.ok
    assert response.data == ["a", "b"]


def test_401_session_message_marks_session_expired(store, api, api_http) -> None:
    callback = MagicMock()
    store.on_session_expired(callback)
    store.create_session(token="eyJapp")
    api_http.route("GET", "inbox/contacts", make_response(401, json={"message": "Session expired"}))

    response = api.call("inbox/contacts")

    assert response.status_code == 401
    assert store.is_valid() is False
    callback.assert_called_once_with("Session expired")


def test_401_unrelated_message_keeps_session(store, api, api_http) -> None:
    store.create_session(token="eyJapp")
    api_http.route("GET", "inbox/contacts", make_response(401, json={"message": "Plan limit reached"}))

    api.call("inbox/contacts")

    assert store.is_valid() is True


def test_transport_errors_propagate(api, api_http) -> None:
    api_http.route("GET", "inbox/contacts", requests.ConnectionError("down"))

    with pytest.raises(requests.ConnectionError):
        api.call("inbox/contacts")
