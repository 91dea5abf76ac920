"""
Tests for the request engine: validation, caching, coalescing, retry and
the 401/403 re-authentication protocol.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from vocab_client.api_client import ApiClient, RequestRun, RequestState
from vocab_client.errors import ClientError, Err, ErrorKind, Ok
from vocab_client.token_manager import TokenManager

from conftest import (
    BASE_URL,
    NEW_TOKEN,
    OLD_TOKEN,
    make_response,
    refresh_ok,
    by_token,
    wait_for,
)


# =============================================================================
# Validation Boundary
# =============================================================================

class TestValidation:
    """Caller input is rejected before any network activity."""

    def test_post_without_body_fails_fast(self, api, session):
        with pytest.raises(ClientError) as exc:
            api.post("/vocabs", None)
        assert exc.value.kind == ErrorKind.VALIDATION
        assert session.calls == []

    def test_put_without_body_fails_fast(self, api, session):
        with pytest.raises(ClientError) as exc:
            api.put("/config/user/theme")
        assert exc.value.kind == ErrorKind.VALIDATION
        assert session.calls == []

    def test_endpoint_without_leading_slash(self, api, session):
        with pytest.raises(ClientError) as exc:
            api.get("not-a-path")
        assert exc.value.kind == ErrorKind.VALIDATION
        assert "start with '/'" in exc.value.message
        assert session.calls == []

    def test_empty_endpoint(self, api):
        with pytest.raises(ClientError) as exc:
            api.get("")
        assert exc.value.kind == ErrorKind.VALIDATION

    def test_validation_error_is_not_retried(self, api, sleeps):
        with pytest.raises(ClientError):
            api.post("/vocabs")
        assert sleeps == []

    def test_request_result_returns_err(self, api):
        outcome = api.request_result("POST", "/vocabs")
        assert isinstance(outcome, Err)
        assert not outcome.is_ok
        assert outcome.error.kind == ErrorKind.VALIDATION


# =============================================================================
# Request Basics
# =============================================================================

class TestRequests:
    """Headers, bodies and response decoding."""

    def test_get_attaches_bearer_token(self, api, session, signed_in):
        session.route("GET", "/subjects", [make_response(200, {"data": []})])

        assert api.get("/subjects") == {"data": []}

        call = session.calls[0]
        assert call.headers["Authorization"] == f"Bearer {OLD_TOKEN}"
        assert call.headers["Content-Type"] == "application/json"
        assert call.timeout == 30.0

    def test_no_authorization_header_without_token(self, api, session):
        session.route("GET", "/languages", [make_response(200, [])])
        api.get("/languages")
        assert "Authorization" not in session.calls[0].headers

    def test_post_sends_json_body(self, api, session, signed_in):
        session.route("POST", "/vocabs", [make_response(201, {"id": "v1"})])

        result = api.post("/vocabs", {"textSource": "hola"})

        assert result == {"id": "v1"}
        assert session.calls[0].json == {"textSource": "hola"}

    def test_extra_headers_override_defaults(self, api, session):
        session.route("GET", "/languages", [make_response(200, [])])
        api.get("/languages", headers={"Accept-Language": "de"})
        assert session.calls[0].headers["Accept-Language"] == "de"

    def test_empty_success_body_decodes_to_none(self, api, session, signed_in):
        session.route("DELETE", "/subjects/1", [make_response(204)])
        assert api.delete("/subjects/1") is None

    def test_api_error_uses_message_field(self, api, session):
        session.route("GET", "/missing", [make_response(404, {"message": "Folder not found"})])

        with pytest.raises(ClientError) as exc:
            api.get("/missing")

        assert exc.value.kind == ErrorKind.API
        assert exc.value.status == 404
        assert exc.value.message == "Folder not found"

    def test_api_error_falls_back_to_reason(self, api, session):
        session.route("GET", "/broken", [make_response(422, raw=b"<html>oops</html>")])

        with pytest.raises(ClientError) as exc:
            api.get("/broken")

        assert exc.value.message == "Unprocessable Entity"

    def test_api_error_joins_message_list(self, api, session):
        session.route(
            "POST", "/subjects",
            [make_response(400, {"message": ["name must be a string", "name is too long"]})],
        )
        with pytest.raises(ClientError) as exc:
            api.post("/subjects", {"name": 1})
        assert exc.value.message == "name must be a string; name is too long"

    def test_request_result_returns_ok(self, api, session):
        session.route("GET", "/languages", [make_response(200, ["en"])])
        outcome = api.request_result("GET", "/languages")
        assert isinstance(outcome, Ok)
        assert outcome.unwrap() == ["en"]


# =============================================================================
# Read Cache
# =============================================================================

class TestCaching:
    """TTL cache for GET requests."""

    def test_cached_read_within_ttl(self, api, session, mono_clock):
        session.route("GET", "/subjects", [make_response(200, {"data": [1]})])

        first = api.get("/subjects")
        mono_clock.advance(59)
        second = api.get("/subjects")

        assert first == second == {"data": [1]}
        assert len(session.calls_to("GET", "/subjects")) == 1

    def test_expired_entry_refetches_once(self, api, session, mono_clock):
        session.route("GET", "/subjects", [
            make_response(200, {"data": [1]}),
            make_response(200, {"data": [2]}),
        ])

        api.get("/subjects")
        mono_clock.advance(60)
        assert api.get("/subjects") == {"data": [2]}
        assert api.get("/subjects") == {"data": [2]}
        assert len(session.calls_to("GET", "/subjects")) == 2

    def test_use_cache_false_bypasses_cache(self, api, session):
        session.route("GET", "/auth/verify", lambda call: make_response(200, {"id": "u1"}))

        api.get("/auth/verify", use_cache=False)
        api.get("/auth/verify", use_cache=False)

        assert len(session.calls) == 2

    def test_writes_are_not_cached(self, api, session):
        session.route("POST", "/subjects", lambda call: make_response(201, {"id": "s"}))

        api.post("/subjects", {"name": "a"})
        api.post("/subjects", {"name": "a"})

        assert len(session.calls) == 2

    def test_failed_reads_are_not_cached(self, api, session):
        session.route("GET", "/subjects", [
            make_response(404, {"message": "nope"}),
            make_response(200, {"data": []}),
        ])

        with pytest.raises(ClientError):
            api.get("/subjects")
        assert api.get("/subjects") == {"data": []}

    def test_clear_cache_on_empty_cache(self, api):
        api.clear_cache()
        api.clear_cache()

    def test_clear_cache_forces_fresh_call(self, api, session):
        session.route("GET", "/subjects", lambda call: make_response(200, {"data": []}))

        api.get("/subjects")
        api.clear_cache()
        api.get("/subjects")

        assert len(session.calls) == 2

    def test_invalidate_single_key(self, api, session):
        session.route("GET", "/subjects", lambda call: make_response(200, {"data": []}))
        session.route("GET", "/word-types", lambda call: make_response(200, {"data": []}))

        api.get("/subjects")
        api.get("/word-types")
        assert api.invalidate("GET", "/subjects") is True
        api.get("/subjects")
        api.get("/word-types")

        assert len(session.calls_to("GET", "/subjects")) == 2
        assert len(session.calls_to("GET", "/word-types")) == 1


# =============================================================================
# Request Coalescing
# =============================================================================

def _pending_waiters(api, key):
    return api.get_stats()["pending"]["waiters"].get(key, 0)


class TestDeduplication:
    """Concurrent identical requests share one call sequence."""

    CALLERS = 5

    def test_concurrent_gets_share_one_call(self, api, session):
        key = ("GET", "/language-folders/my")

        def handler(call):
            assert wait_for(lambda: _pending_waiters(api, key) == self.CALLERS - 1)
            return make_response(200, {"data": ["folder"]})

        session.route("GET", "/language-folders/my", handler)

        with ThreadPoolExecutor(max_workers=self.CALLERS) as pool:
            futures = [
                pool.submit(api.get, "/language-folders/my", False)
                for _ in range(self.CALLERS)
            ]
            results = [f.result(timeout=10) for f in futures]

        assert len(session.calls) == 1
        assert all(r == {"data": ["folder"]} for r in results)
        assert api.get_stats()["pending"]["active_requests"] == 0

    def test_concurrent_callers_share_failure(self, api, session):
        key = ("GET", "/subjects")

        def handler(call):
            assert wait_for(lambda: _pending_waiters(api, key) == self.CALLERS - 1)
            return make_response(404, {"message": "gone"})

        session.route("GET", "/subjects", handler)

        def call():
            try:
                api.get("/subjects")
            except ClientError as e:
                return e
            return None

        with ThreadPoolExecutor(max_workers=self.CALLERS) as pool:
            errors = [f.result(timeout=10) for f in [pool.submit(call) for _ in range(self.CALLERS)]]

        assert len(session.calls) == 1
        assert all(isinstance(e, ClientError) and e.status == 404 for e in errors)
        assert api.get_stats()["pending"]["active_requests"] == 0

    def test_pending_slot_released_after_settle(self, api, session):
        session.route("GET", "/subjects", [
            make_response(400, {"message": "bad"}),
            make_response(200, {"data": []}),
        ])

        with pytest.raises(ClientError):
            api.get("/subjects")
        assert api.get("/subjects") == {"data": []}
        assert len(session.calls) == 2

    def test_join_timeout_covers_every_attempt(self, api):
        # 4 attempts of (2 sends + 1 refresh, each connect + read) plus 3 capped waits
        assert api.join_timeout == 4 * (2 * 60 + 2 * 10) + 3 * 10

    def test_joiner_gives_up_on_stalled_leader(self, credentials, session, events):
        manager = TokenManager(credentials, session, BASE_URL, refresh_timeout=0.01)
        client = ApiClient(
            BASE_URL, manager, session=session, events=events,
            request_timeout=0.01, max_retries=0, sleep=lambda seconds: None,
        )
        release = threading.Event()

        def handler(call):
            release.wait(5)
            return make_response(200, {"data": []})

        session.route("GET", "/subjects", handler)

        with ThreadPoolExecutor(max_workers=1) as pool:
            leader = pool.submit(client.get, "/subjects")
            assert wait_for(lambda: client.get_stats()["pending"]["active_requests"] == 1)
            try:
                with pytest.raises(ClientError) as exc:
                    client.get("/subjects")
            finally:
                release.set()
            assert leader.result(timeout=5) == {"data": []}

        assert exc.value.kind == ErrorKind.TIMEOUT
        assert len(session.calls) == 1


# =============================================================================
# Retry / Backoff
# =============================================================================

class TestRetry:
    """Exponential backoff for transient failures."""

    def test_503_twice_then_success(self, api, session, sleeps):
        session.route("GET", "/subjects", [
            make_response(503),
            make_response(503),
            make_response(200, {"data": ["ok"]}),
        ])

        assert api.get("/subjects") == {"data": ["ok"]}
        assert sleeps == [1, 2]
        assert len(session.calls) == 3

    def test_400_is_never_retried(self, api, session, sleeps):
        session.route("POST", "/vocabs", [make_response(400, {"message": "Invalid vocab"})])

        with pytest.raises(ClientError) as exc:
            api.post("/vocabs", {"textSource": ""})

        assert exc.value.status == 400
        assert sleeps == []
        assert len(session.calls) == 1

    def test_retries_exhausted(self, api, session, sleeps):
        session.route("GET", "/subjects", lambda call: make_response(500, {"message": "boom"}))

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.kind == ErrorKind.API
        assert exc.value.status == 500
        assert len(session.calls) == 4
        assert sleeps == [1, 2, 4]

    def test_backoff_is_capped(self, token_manager, session, events, mono_clock):
        waits = []
        client = ApiClient(
            BASE_URL, token_manager, session=session, events=events,
            max_retries=6, sleep=waits.append, clock=mono_clock,
        )
        session.route("GET", "/subjects", lambda call: make_response(502))

        with pytest.raises(ClientError):
            client.get("/subjects")

        assert waits == [1, 2, 4, 8, 10, 10]

    def test_timeout_is_classified_and_retried(self, api, session, sleeps):
        session.route("GET", "/subjects", [
            requests.Timeout("read timed out"),
            make_response(200, {"data": []}),
        ])

        assert api.get("/subjects") == {"data": []}
        assert sleeps == [1]

    def test_timeout_surfaces_after_retries(self, api, session):
        session.route("GET", "/subjects", lambda call: requests.ReadTimeout("slow"))

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.kind == ErrorKind.TIMEOUT
        assert isinstance(exc.value.cause, requests.Timeout)
        assert len(session.calls) == 4

    def test_connect_timeout_is_a_timeout(self, api, session):
        session.route("GET", "/subjects", lambda call: requests.ConnectTimeout("no route"))

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.kind == ErrorKind.TIMEOUT

    def test_network_error_keeps_cause(self, api, session):
        cause = requests.ConnectionError("connection refused")
        session.route("GET", "/subjects", lambda call: cause)

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.kind == ErrorKind.NETWORK
        assert exc.value.cause is cause

    def test_malformed_json_is_retried_as_network(self, api, session, sleeps):
        session.route("GET", "/subjects", [
            make_response(200, raw=b"{not json"),
            make_response(200, {"data": []}),
        ])

        assert api.get("/subjects") == {"data": []}
        assert sleeps == [1]


# =============================================================================
# Re-authentication
# =============================================================================

class TestAuthRetry:
    """Transparent token refresh on 401/403."""

    def test_401_refreshes_and_retries(self, api, session, signed_in, logouts):
        session.route("GET", "/subjects", by_token(NEW_TOKEN, {"data": []}))
        session.route("POST", "/auth/refresh", refresh_ok)

        assert api.get("/subjects") == {"data": []}

        calls = session.calls_to("GET", "/subjects")
        assert [c.token for c in calls] == [OLD_TOKEN, NEW_TOKEN]
        assert len(session.calls_to("POST", "/auth/refresh")) == 1
        assert signed_in.get("accessToken") == NEW_TOKEN
        assert logouts == []

    def test_403_also_triggers_refresh(self, api, session, signed_in):
        session.route("GET", "/subjects", by_token(NEW_TOKEN, {"data": []}, status_otherwise=403))
        session.route("POST", "/auth/refresh", refresh_ok)

        assert api.get("/subjects") == {"data": []}

    def test_second_401_ends_session_once(self, api, session, token_manager, signed_in, logouts, monkeypatch):
        clears = []
        original_clear = token_manager.clear_tokens

        def counting_clear():
            clears.append(1)
            original_clear()

        monkeypatch.setattr(token_manager, "clear_tokens", counting_clear)
        session.route("GET", "/subjects", lambda call: make_response(401, {"message": "no"}))
        session.route("POST", "/auth/refresh", refresh_ok)

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.kind == ErrorKind.API
        assert exc.value.status == 401
        assert len(logouts) == 1
        assert len(clears) == 1
        assert len(session.calls_to("POST", "/auth/refresh")) == 1
        assert len(session.calls_to("GET", "/subjects")) == 2
        assert signed_in.get("accessToken") is None

    def test_rejected_refresh_ends_session(self, api, session, signed_in, kv, logouts):
        kv.set("user", {"id": "u1", "email": "a@b.co"})
        session.route("GET", "/subjects", lambda call: make_response(401))
        session.route("POST", "/auth/refresh", [make_response(401, {"message": "expired"})])

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.status == 401
        assert exc.value.message == "Session expired. Please login again."
        assert len(logouts) == 1
        assert signed_in.get("accessToken") is None
        assert signed_in.get("refreshToken") is None
        assert kv.get("user") is None

    def test_refresh_timeout_goes_through_retry_policy(self, api, session, signed_in, sleeps, logouts):
        session.route("GET", "/subjects", by_token(NEW_TOKEN, {"data": []}))
        session.route("POST", "/auth/refresh", [
            requests.Timeout("refresh slow"),
            refresh_ok(None),
        ])

        assert api.get("/subjects") == {"data": []}
        assert sleeps == [1]
        assert len(session.calls_to("POST", "/auth/refresh")) == 2
        assert logouts == []

    def test_unauthenticated_request_does_not_refresh(self, api, session, signed_in, logouts):
        session.route("POST", "/auth/signin", [make_response(401, {"message": "Invalid credentials"})])

        with pytest.raises(ClientError) as exc:
            api.post("/auth/signin", {"email": "a@b.co"}, authenticated=False)

        assert exc.value.message == "Invalid credentials"
        assert "Authorization" not in session.calls[0].headers
        assert session.calls_to("POST", "/auth/refresh") == []
        assert logouts == []

    def test_concurrent_401s_share_one_refresh(self, api, session, token_manager, signed_in, logouts):
        endpoints = ["/a", "/b", "/c"]
        for endpoint in endpoints:
            session.route("GET", endpoint, by_token(NEW_TOKEN, {"endpoint": endpoint}))

        def refresh_handler(call):
            assert wait_for(
                lambda: token_manager.refresh_stats()["waiters"].get("auth:refresh", 0) == 2
            )
            return refresh_ok(call)

        session.route("POST", "/auth/refresh", refresh_handler)

        with ThreadPoolExecutor(max_workers=3) as pool:
            futures = {e: pool.submit(api.get, e) for e in endpoints}
            results = {e: f.result(timeout=10) for e, f in futures.items()}

        assert len(session.calls_to("POST", "/auth/refresh")) == 1
        for endpoint in endpoints:
            assert results[endpoint] == {"endpoint": endpoint}
            tokens = [c.token for c in session.calls_to("GET", endpoint)]
            assert tokens == [OLD_TOKEN, NEW_TOKEN]
        assert not token_manager.refresh_in_progress
        assert logouts == []

    def test_auth_retry_is_used_once_across_backoff(self, api, session, signed_in, sleeps, logouts):
        session.route("GET", "/subjects", [
            make_response(401, {"message": "Unauthorized"}),
            make_response(503),
            make_response(401, {"message": "Unauthorized"}),
        ])
        session.route("POST", "/auth/refresh", refresh_ok)

        with pytest.raises(ClientError) as exc:
            api.get("/subjects")

        assert exc.value.kind == ErrorKind.API
        assert exc.value.status == 401
        assert len(session.calls_to("POST", "/auth/refresh")) == 1
        assert len(logouts) == 1
        assert sleeps == [1]
        tokens = [c.token for c in session.calls_to("GET", "/subjects")]
        assert tokens == [OLD_TOKEN, NEW_TOKEN, NEW_TOKEN]


# =============================================================================
# State Machine
# =============================================================================

class TestRequestRun:
    """Per-request state transitions."""

    def test_auth_retry_path(self):
        run = RequestRun("GET", "/subjects")
        for state in (
            RequestState.SENDING,
            RequestState.AUTH_RETRY,
            RequestState.SENDING,
            RequestState.SUCCESS,
        ):
            run.transition(state)
        assert run.history[0] == RequestState.IDLE
        assert run.state == RequestState.SUCCESS

    def test_retry_path(self):
        run = RequestRun("GET", "/subjects")
        run.transition(RequestState.SENDING)
        run.transition(RequestState.RETRYING)
        run.transition(RequestState.SENDING)
        run.transition(RequestState.FAILED)
        assert run.state == RequestState.FAILED

    def test_terminal_states_are_final(self):
        run = RequestRun("GET", "/subjects")
        run.transition(RequestState.SENDING)
        run.transition(RequestState.SUCCESS)
        with pytest.raises(RuntimeError):
            run.transition(RequestState.SENDING)

    def test_cannot_skip_sending(self):
        run = RequestRun("GET", "/subjects")
        with pytest.raises(RuntimeError):
            run.transition(RequestState.SUCCESS)
