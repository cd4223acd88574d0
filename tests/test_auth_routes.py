"""
tests/test_auth_routes.py -- Integration tests for the Steam login flow, /api/me and logout.

Everything runs through the real ASGI stack (TestClient, follow_redirects=False)
with Steam and the remote directory served by tests/fakes.py. Cookies are sent
as an explicit Cookie header: every cookie the app sets for "testserver" is
Secure, so the client jar would never send it back over http://.

Coverage:
  - /auth/steam: 302 to Steam with return_to/realm, state cookie, no-store
  - Forwarded headers decide the return_to origin
  - Login kill switch on both legs
  - Callback success: session cookie set, state cookie cleared, /?login=ok
  - Callback failures: missing/mismatched/forged/expired state, wrong mode,
    rejected assertion, bad claimed_id -> /?error=steam-callback, both cookies cleared
  - /api/me anonymous, signed in (sliding cookie), expired/forged cookie cleared
  - Remote policy denial: /api/me carries adminError, /api/admins is 503
  - /api/me stays 200 on a missing table, server error, timeout or local store error
  - Startup survives a missing remote table
  - Logout clears both cookies
  - Login legs are rate limited
"""

from __future__ import annotations

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from auth.tokens import SessionTokens
from core.models import SessionUser
from directory.store import LocalAdminStore
from fakes import DEV_ID, OTHER_ID, STEAM_OPENID_URL, FakeUpstream, make_settings, remote_settings

STEAM_ID_URL = "https://steamcommunity.com/openid/id/"


def _set_cookies(resp) -> list[str]:
    return resp.headers.get_list("set-cookie")


def _cookie_header(resp, name: str) -> str:
    """Return the Set-Cookie header for one cookie name, or "" if absent."""
    for header in _set_cookies(resp):
        if header.startswith(f"{name}="):
            return header
    return ""


def _cookie_value(resp, name: str) -> str:
    header = _cookie_header(resp, name)
    if not header:
        return ""
    return header.split(";", 1)[0].split("=", 1)[1].strip('"')


def _is_cleared(resp, name: str) -> bool:
    header = _cookie_header(resp, name)
    return bool(header) and _cookie_value(resp, name) == "" and "Max-Age=0" in header


def _assertion(state: str, steam_id: str = OTHER_ID, mode: str = "id_res") -> dict[str, str]:
    claimed = f"{STEAM_ID_URL}{steam_id}"
    return {
        "state": state,
        "openid.ns": "http://specs.openid.net/auth/2.0",
        "openid.mode": mode,
        "openid.op_endpoint": STEAM_OPENID_URL,
        "openid.claimed_id": claimed,
        "openid.identity": claimed,
        "openid.return_to": f"https://testserver/auth/steam/return?state={state}",
        "openid.response_nonce": "2024-01-01T00:00:00ZnonceA",
        "openid.assoc_handle": "1234567890",
        "openid.signed": "signed,op_endpoint,claimed_id,identity,return_to,response_nonce,assoc_handle",
        "openid.sig": "c2lnbmF0dXJl",
    }


def _start_login(client: TestClient) -> str:
    resp = client.get("/auth/steam")
    assert resp.status_code == 302
    state = _cookie_value(resp, "steam_auth_state")
    assert state
    return state


# ---------------------------------------------------------------------------
# Login start
# ---------------------------------------------------------------------------


class TestLoginStart:
    def test_redirects_to_steam(self, client: TestClient) -> None:
        """GET /auth/steam must 302 to Steam with checkid_setup and our return_to."""
        resp = client.get("/auth/steam")
        assert resp.status_code == 302
        assert resp.headers["cache-control"] == "no-store"

        location = urlparse(resp.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == STEAM_OPENID_URL
        params = {k: v[0] for k, v in parse_qs(location.query).items()}
        assert params["openid.mode"] == "checkid_setup"
        assert params["openid.realm"] == "https://testserver"
        assert params["openid.claimed_id"] == "http://specs.openid.net/auth/2.0/identifier_select"
        assert params["openid.return_to"].startswith("https://testserver/auth/steam/return?state=")

    def test_state_cookie_matches_return_to(self, client: TestClient) -> None:
        """The state cookie and the state embedded in return_to are the same token."""
        resp = client.get("/auth/steam")
        header = _cookie_header(resp, "steam_auth_state")
        assert "HttpOnly" in header
        assert "SameSite=lax" in header
        assert "Max-Age=600" in header

        return_to = parse_qs(urlparse(resp.headers["location"]).query)["openid.return_to"][0]
        state_in_url = parse_qs(urlparse(return_to).query)["state"][0]
        assert state_in_url == _cookie_value(resp, "steam_auth_state")

    def test_forwarded_headers_pick_origin(self, client: TestClient) -> None:
        """Behind a proxy the return_to uses X-Forwarded-Proto/Host, and the cookie is not Secure."""
        resp = client.get(
            "/auth/steam",
            headers={"x-forwarded-proto": "http", "x-forwarded-host": "localhost:3000"},
        )
        params = parse_qs(urlparse(resp.headers["location"]).query)
        assert params["openid.realm"] == ["http://localhost:3000"]
        assert params["openid.return_to"][0].startswith("http://localhost:3000/auth/steam/return?state=")
        assert "Secure" not in _cookie_header(resp, "steam_auth_state")

    def test_login_disabled(self, make_client) -> None:
        """STEAM_LOGIN_ENABLED=off short-circuits both legs to /?error=steam-disabled."""
        client = make_client(make_settings(steam_login_enabled="off"))
        start = client.get("/auth/steam")
        assert start.status_code == 302
        assert start.headers["location"] == "/?error=steam-disabled"
        assert _set_cookies(start) == []

        callback = client.get("/auth/steam/return", params=_assertion("anything"))
        assert callback.headers["location"] == "/?error=steam-disabled"


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------


class TestCallbackSuccess:
    def test_valid_assertion_starts_session(self, client: TestClient, upstream: FakeUpstream) -> None:
        """A confirmed assertion with matching state sets admin_auth and lands on /?login=ok."""
        upstream.steam.profiles[OTHER_ID] = ("Robin", "https://avatars.test/robin.jpg")
        state = _start_login(client)

        resp = client.get(
            "/auth/steam/return",
            params=_assertion(state),
            headers={"cookie": f"steam_auth_state={state}"},
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?login=ok"
        assert resp.headers["cache-control"] == "no-store"
        assert _is_cleared(resp, "steam_auth_state")
        session = _cookie_value(resp, "admin_auth")
        assert session
        assert "Max-Age=2592000" in _cookie_header(resp, "admin_auth")

        # Steam was asked to confirm, with mode switched to check_authentication.
        assert len(upstream.steam.verify_forms) == 1
        form = upstream.steam.verify_forms[0]
        assert form["openid.mode"] == "check_authentication"
        assert form["openid.sig"] == "c2lnbmF0dXJl"
        assert "state" not in form

        me = client.get("/api/me", headers={"cookie": f"admin_auth={session}"}).json()
        assert me["authenticated"] is True
        assert me["isAdmin"] is False
        assert me["user"] == {
            "steamId": OTHER_ID,
            "displayName": "Robin",
            "avatar": "https://avatars.test/robin.jpg",
        }

    def test_profile_failure_falls_back_to_id(self, client: TestClient) -> None:
        """Without a Steam profile the session still starts, named by the Steam id."""
        state = _start_login(client)
        resp = client.get(
            "/auth/steam/return",
            params=_assertion(state, steam_id=DEV_ID),
            headers={"cookie": f"steam_auth_state={state}"},
        )
        assert resp.headers["location"] == "/?login=ok"
        session = _cookie_value(resp, "admin_auth")
        me = client.get("/api/me", headers={"cookie": f"admin_auth={session}"}).json()
        assert me["user"]["steamId"] == DEV_ID
        assert me["isAdmin"] is True
        assert me["role"] == "developer"


class TestCallbackFailures:
    """Every failure: 302 /?error=steam-callback, both cookies cleared, no session."""

    def _assert_rejected(self, resp) -> None:
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?error=steam-callback"
        assert resp.headers["cache-control"] == "no-store"
        assert _is_cleared(resp, "admin_auth")
        assert _is_cleared(resp, "steam_auth_state")

    def test_missing_state_everywhere(self, client: TestClient, upstream: FakeUpstream) -> None:
        params = _assertion("")
        del params["state"]
        resp = client.get("/auth/steam/return", params=params)
        self._assert_rejected(resp)
        assert upstream.steam.verify_forms == []

    def test_missing_state_cookie(self, client: TestClient, upstream: FakeUpstream) -> None:
        """A valid state in the URL alone is not enough; the cookie must be present."""
        state = _start_login(client)
        resp = client.get("/auth/steam/return", params=_assertion(state))
        self._assert_rejected(resp)
        assert upstream.steam.verify_forms == []

    def test_missing_state_query(self, client: TestClient) -> None:
        state = _start_login(client)
        params = _assertion(state)
        del params["state"]
        resp = client.get("/auth/steam/return", params=params, headers={"cookie": f"steam_auth_state={state}"})
        self._assert_rejected(resp)

    def test_state_mismatch(self, client: TestClient, upstream: FakeUpstream) -> None:
        """Two genuine state tokens that differ must still be rejected."""
        first = _start_login(client)
        second = _start_login(client)
        resp = client.get(
            "/auth/steam/return",
            params=_assertion(first),
            headers={"cookie": f"steam_auth_state={second}"},
        )
        self._assert_rejected(resp)
        assert upstream.steam.verify_forms == []

    def test_forged_state(self, client: TestClient) -> None:
        """Query and cookie agree but the value was never signed by us."""
        resp = client.get(
            "/auth/steam/return",
            params=_assertion("forged"),
            headers={"cookie": "steam_auth_state=forged"},
        )
        self._assert_rejected(resp)

    def test_expired_state(self, client: TestClient) -> None:
        old = SessionTokens.from_settings(make_settings(), clock=lambda: time.time() - 601)
        state = old.issue_state_token()
        resp = client.get(
            "/auth/steam/return",
            params=_assertion(state),
            headers={"cookie": f"steam_auth_state={state}"},
        )
        self._assert_rejected(resp)

    def test_cancelled_login(self, client: TestClient, upstream: FakeUpstream) -> None:
        state = _start_login(client)
        resp = client.get(
            "/auth/steam/return",
            params=_assertion(state, mode="cancel"),
            headers={"cookie": f"steam_auth_state={state}"},
        )
        self._assert_rejected(resp)
        assert upstream.steam.verify_forms == []

    def test_assertion_rejected_by_steam(self, client: TestClient, upstream: FakeUpstream) -> None:
        upstream.steam.assertion_body = "ns:http://specs.openid.net/auth/2.0\nis_valid:false\n"
        state = _start_login(client)
        resp = client.get(
            "/auth/steam/return",
            params=_assertion(state),
            headers={"cookie": f"steam_auth_state={state}"},
        )
        self._assert_rejected(resp)
        assert _cookie_value(resp, "admin_auth") == ""

    def test_steam_verification_error(self, client: TestClient, upstream: FakeUpstream) -> None:
        upstream.steam.assertion_status = 500
        state = _start_login(client)
        resp = client.get(
            "/auth/steam/return",
            params=_assertion(state),
            headers={"cookie": f"steam_auth_state={state}"},
        )
        self._assert_rejected(resp)

    def test_claimed_id_not_steam(self, client: TestClient) -> None:
        state = _start_login(client)
        params = _assertion(state)
        params["openid.claimed_id"] = "https://evil.test/openid/id/12345"
        params["openid.identity"] = "https://evil.test/openid/id/12345"
        resp = client.get(
            "/auth/steam/return",
            params=params,
            headers={"cookie": f"steam_auth_state={state}"},
        )
        self._assert_rejected(resp)


# ---------------------------------------------------------------------------
# /api/me and logout
# ---------------------------------------------------------------------------


class TestMe:
    def test_anonymous(self, client: TestClient) -> None:
        """Anonymous callers get 200 with authenticated=false and no cookies touched."""
        resp = client.get("/api/me")
        assert resp.status_code == 200
        body = resp.json()
        assert body["authenticated"] is False
        assert body["isAdmin"] is False
        assert body["role"] == ""
        assert body["user"] is None
        assert body["adminStorage"] == "local"
        assert body["steamLoginReady"] is True
        assert set(body["permissions"]) == {
            "manageStaff",
            "publishGame",
            "editGame",
            "removeGame",
            "manageMaintenance",
        }
        assert not any(body["permissions"].values())
        assert _set_cookies(resp) == []

    def test_signed_in_slides_session(self, client: TestClient, login_cookie) -> None:
        """Every /api/me for a signed-in user re-issues the session cookie."""
        resp = client.get("/api/me", headers=login_cookie())
        body = resp.json()
        assert body["authenticated"] is True
        assert body["isAdmin"] is True
        assert body["role"] == "developer"
        assert body["permissions"]["manageStaff"] is True
        assert body["user"]["displayName"] == "Tester"
        assert _cookie_value(resp, "admin_auth")
        assert "Max-Age=2592000" in _cookie_header(resp, "admin_auth")

    def test_forged_cookie_is_cleared(self, client: TestClient, login_cookie) -> None:
        header = login_cookie()["cookie"]
        tampered = header[:-2] + ("AA" if not header.endswith("AA") else "BB")
        resp = client.get("/api/me", headers={"cookie": tampered})
        assert resp.json()["authenticated"] is False
        assert _is_cleared(resp, "admin_auth")

    def test_expired_cookie_is_cleared(self, client: TestClient) -> None:
        old = SessionTokens.from_settings(make_settings(), clock=lambda: time.time() - 2_592_001)
        token = old.issue_session_token(SessionUser(DEV_ID, "Tester", "https://avatars.test/a.jpg"))
        resp = client.get("/api/me", headers={"cookie": f"admin_auth={token}"})
        assert resp.json()["authenticated"] is False
        assert _is_cleared(resp, "admin_auth")

    def test_remote_policy_denial(self, make_client, upstream: FakeUpstream, login_cookie) -> None:
        """A 403 from the remote directory is an outage, not "you are not staff"."""
        upstream.directory.fail_status = 403
        client = make_client(remote_settings())
        cookie = login_cookie(OTHER_ID)

        me = client.get("/api/me", headers=cookie).json()
        assert me["authenticated"] is True
        assert me["isAdmin"] is False
        assert me["adminError"]
        assert me["adminStorage"] == "remote"

        resp = client.get("/api/admins", headers=cookie)
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "admin_storage_unavailable"

    @pytest.mark.parametrize(
        "failure",
        [{"fail_status": 404}, {"fail_status": 500}, {"fail_exc": httpx.ReadTimeout}],
        ids=["missing-table", "server-error", "timeout"],
    )
    def test_remote_failure_keeps_me_200(self, make_client, upstream: FakeUpstream, login_cookie, failure) -> None:
        """Whatever the directory failure, /api/me answers 200 and reports it in adminError."""
        client = make_client(remote_settings())
        for attr, value in failure.items():
            setattr(upstream.directory, attr, value)

        resp = client.get("/api/me", headers=login_cookie(OTHER_ID))

        assert resp.status_code == 200
        body = resp.json()
        assert body["authenticated"] is True
        assert body["isAdmin"] is False
        assert body["adminError"]

    def test_local_store_error_keeps_me_200(self, make_client, login_cookie, monkeypatch) -> None:
        store = LocalAdminStore("sqlite://")
        client = make_client(store=store)

        def broken(*args):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store, "get", broken)
        resp = client.get("/api/me", headers=login_cookie(OTHER_ID))

        assert resp.status_code == 200
        assert resp.json()["authenticated"] is True
        assert resp.json()["adminError"] == "Local admin store unavailable."

    def test_startup_survives_missing_table(self, make_client, upstream: FakeUpstream, login_cookie) -> None:
        """A 404 on the directory list during startup leaves the service up and degraded."""
        upstream.directory.fail_status = 404
        client = make_client(remote_settings())

        assert client.get("/api/health").status_code == 200
        me = client.get("/api/me", headers=login_cookie(OTHER_ID))
        assert me.status_code == 200
        assert me.json()["adminError"]


class TestLogout:
    def test_logout_clears_cookies(self, client: TestClient, login_cookie) -> None:
        resp = client.post("/api/logout", headers=login_cookie())
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert _is_cleared(resp, "admin_auth")
        assert _is_cleared(resp, "steam_auth_state")

    def test_logout_without_session(self, client: TestClient) -> None:
        resp = client.post("/api/logout")
        assert resp.status_code == 200
        assert _is_cleared(resp, "admin_auth")


class TestLoginRateLimit:
    def test_login_start_is_rate_limited(self, client: TestClient) -> None:
        """The 31st login start within a minute from one address gets 429."""
        for _ in range(30):
            assert client.get("/auth/steam").status_code == 302
        resp = client.get("/auth/steam")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
