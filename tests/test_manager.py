import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import fakeredis
import pytest
from fastapi import HTTPException, Request, Response
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from cachesession.main import create_app
from cachesession.manager import (
    SessionConfigError,
    SessionManager,
    create_default_manager,
    create_manager,
)
from cachesession.session_store import RedisSessionStore
from cachesession.session_store_base import InMemorySessionStore, SessionDecodeError
from cachesession.values import Cookie, Values


def _request(cookies=None):
    headers = []
    if cookies:
        raw = "; ".join(f"{k}={v}" for k, v in cookies.items())
        headers.append((b"cookie", raw.encode("latin-1")))
    return Request({"type": "http", "method": "GET", "path": "/", "query_string": b"", "headers": headers})


@pytest.fixture
def redis_manager():
    return create_manager(fakeredis.FakeRedis(server=fakeredis.FakeServer()), key_prefix="test")


@pytest.fixture
def stub_manager():
    return create_manager(None, key_prefix="test")


def test_no_cookie_yields_fresh_session_and_sets_cookie(redis_manager):
    response = Response()
    ssn = redis_manager.resolve(_request(), response)
    assert len(ssn.key) == 44
    assert ssn.values == {}
    header = response.headers["set-cookie"]
    assert header.startswith(f"test_sessionid={ssn.key}")
    assert "Max-Age=1800" in header
    assert "Path=/" in header
    assert ssn.cookie.value == ssn.key


def test_empty_cookie_value_is_treated_as_missing(stub_manager):
    ssn = stub_manager.resolve(_request({"test_sessionid": ""}), Response())
    assert ssn.key
    assert ssn.values == {}


def test_empty_cookie_name_is_a_configuration_error():
    manager = SessionManager(InMemorySessionStore(), cookie=Cookie(name=""))
    with pytest.raises(SessionConfigError):
        manager.resolve(_request(), Response())
    with pytest.raises(HTTPException) as exc:
        manager.must_resolve(_request(), Response())
    assert exc.value.status_code == 500


def test_remote_miss_readopts_cookie_key(redis_manager):
    ssn = redis_manager.resolve(_request({"test_sessionid": "stale"}), Response())
    assert ssn.key == "stale"
    assert ssn.values == {}


def test_stub_miss_mints_new_key(stub_manager):
    ssn = stub_manager.resolve(_request({"test_sessionid": "stale"}), Response())
    assert ssn.key != "stale"
    assert ssn.values == {}


def test_decode_error_propagates_from_resolve():
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer())
    manager = create_manager(client, key_prefix="test")
    client.set("test:session:k1", b"garbage")
    with pytest.raises(SessionDecodeError):
        manager.resolve(_request({"test_sessionid": "k1"}), Response())
    with pytest.raises(HTTPException):
        manager.must_resolve(_request({"test_sessionid": "k1"}), Response())


def test_decode_error_from_decoding_client_aborts_and_counts():
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    manager = create_manager(client, key_prefix="test")
    client.set("test:session:k1", b"\xff\xfe")

    def load_errors():
        return REGISTRY.get_sample_value(
            "cachesession_store_errors_total", {"operation": "load"}
        ) or 0.0

    before = load_errors()
    with pytest.raises(HTTPException) as exc:
        manager.must_resolve(_request({"test_sessionid": "k1"}), Response())
    assert exc.value.status_code == 500
    assert isinstance(exc.value.__cause__, SessionDecodeError)
    assert load_errors() == before + 1


def test_commit_does_not_touch_the_response(redis_manager):
    ssn = redis_manager.resolve(_request(), Response())
    response = Response()
    redis_manager.commit(response, ssn)
    assert "set-cookie" not in response.headers


def test_remote_commit_then_expire():
    manager = create_manager(fakeredis.FakeRedis(server=fakeredis.FakeServer()), key_prefix="test")
    manager.expiration = timedelta(seconds=2)

    ssn = manager.resolve(_request({"test_sessionid": "k1"}), Response())
    ssn.values["v"] = "abc123"
    manager.commit(Response(), ssn)

    again = manager.resolve(_request({"test_sessionid": "k1"}), Response())
    assert again.key == "k1"
    assert again.values == {"v": "abc123"}

    time.sleep(3)

    expired = manager.resolve(_request({"test_sessionid": "k1"}), Response())
    assert expired.key == "k1"
    assert expired.values == {}


def test_stub_sessions_never_expire(stub_manager):
    stub_manager.expiration = timedelta(seconds=1)
    ssn = stub_manager.resolve(_request(), Response())
    ssn.values["v"] = "abc123"
    stub_manager.commit(Response(), ssn)

    time.sleep(1.5)

    again = stub_manager.resolve(_request({"test_sessionid": ssn.key}), Response())
    assert again.key == ssn.key
    assert again.values == {"v": "abc123"}


def test_session_context_skips_commit_when_body_raises(stub_manager):
    request = _request()
    with pytest.raises(RuntimeError):
        with stub_manager.session(request, Response()) as ssn:
            ssn.values["v"] = 1
            raise RuntimeError("handler failed")
    assert stub_manager.store.load(ssn.key) == (None, False)


def test_managers_do_not_share_stub_storage():
    first = create_manager(None)
    second = create_manager(None)
    ssn = first.resolve(_request(), Response())
    ssn.values["v"] = "x"
    first.commit(Response(), ssn)
    assert second.store.load(ssn.key) == (None, False)


def test_session_context_commits_on_http_exception(stub_manager):
    with pytest.raises(HTTPException):
        with stub_manager.session(_request(), Response()) as ssn:
            ssn.values["v"] = "abc123"
            raise HTTPException(status_code=303, headers={"Location": "/"})
    values, found = stub_manager.store.load(ssn.key)
    assert found is True
    assert values == {"v": "abc123"}


def test_concurrent_requests_keep_their_own_sessions(stub_manager):
    def worker(n):
        ssn = stub_manager.resolve(_request(), Response())
        ssn.values["owner"] = n
        stub_manager.commit(Response(), ssn)
        for _ in range(25):
            ssn = stub_manager.resolve(_request({"test_sessionid": ssn.key}), Response())
            ssn.values["count"] = ssn.values.get_int("count") + 1
            stub_manager.commit(Response(), ssn)
        return ssn.key

    with ThreadPoolExecutor(max_workers=16) as pool:
        keys = list(pool.map(worker, range(32)))

    assert len(set(keys)) == 32
    for n, key in enumerate(keys):
        ssn = stub_manager.resolve(_request({"test_sessionid": key}), Response())
        assert ssn.key == key
        assert ssn.values == {"owner": n, "count": 25}


@pytest.mark.parametrize("make_manager", ["redis_manager", "stub_manager"])
def test_values_persist_across_requests(make_manager, request):
    manager = request.getfixturevalue(make_manager)
    client = TestClient(create_app(manager))

    r = client.get("/")
    assert r.status_code == 200
    assert r.text == ""
    assert "test_sessionid=" in r.headers["set-cookie"]

    r = client.get("/", params={"v": "abc123"})
    assert r.text == "abc123"

    r = client.get("/")
    assert r.text == "abc123"
    # cookie is refreshed on every request
    assert "test_sessionid=" in r.headers["set-cookie"]


def test_flash_messages_drain_once(stub_manager):
    client = TestClient(create_app(stub_manager))
    client.post("/flash", params={"msg": "a"})
    client.post("/flash", params={"msg": "b"})

    r = client.get("/flashes")
    assert r.json() == {"flashes": ["a", "b"]}
    r = client.get("/flashes")
    assert r.json() == {"flashes": []}


def test_default_manager_reads_environment(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("SESSION_KEY_PREFIX", "shop")
    monkeypatch.setenv("SESSION_EXPIRATION_SECONDS", "60")
    monkeypatch.setenv("SESSION_COOKIE_MAX_AGE", "120")

    manager = create_default_manager()
    assert isinstance(manager.store, InMemorySessionStore)
    assert manager.cookie.name == "shop_sessionid"
    assert manager.cookie.max_age == 120
    assert manager.expiration == timedelta(seconds=60)


def test_explicit_store_injection():
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer())
    manager = SessionManager(RedisSessionStore(client, prefix="app"), key_prefix="app")
    ssn = manager.resolve(_request(), Response())
    ssn.values.set_int("n", 3)
    manager.commit(Response(), ssn)
    loaded = manager.resolve(_request({"app_sessionid": ssn.key}), Response())
    assert loaded.values.get_int("n") == 3
    assert isinstance(loaded.values, Values)
