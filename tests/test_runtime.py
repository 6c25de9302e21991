import pytest

from reprox import db
from reprox.runtime import Route, RuntimeState, build_routes, routes_changed, validate_host


def test_route_is_a_value_object():
    assert Route("a.example.com", "web1") == Route("a.example.com", "web1")
    assert Route("a.example.com", "web1") != Route("a.example.com", "web2")
    with pytest.raises(ValueError):
        Route("", "web1")
    with pytest.raises(ValueError):
        Route("a.example.com", "")


def test_routes_changed_is_order_sensitive():
    a = Route("a.example.com", "web1")
    b = Route("b.example.com", "web2")
    assert routes_changed([], []) is False
    assert routes_changed([a, b], [a, b]) is False
    assert routes_changed([a, b], [b, a]) is True
    assert routes_changed([a], [a, b]) is True
    assert routes_changed([a, b], [a]) is True
    assert routes_changed([a], [Route("a.example.com", "web9")]) is True


def test_duplicate_host_last_wins_keeps_first_position():
    table = build_routes(
        [
            Route("a.example.com", "web1"),
            Route("b.example.com", "api"),
            Route("a.example.com", "web2"),
        ],
        policy="last",
    )
    assert table == (Route("a.example.com", "web2"), Route("b.example.com", "api"))
    events = db.latest_events(5)
    assert any("Duplicate host" in e["message"] and e["host"] == "a.example.com" for e in events)


def test_duplicate_host_first_wins():
    table = build_routes([Route("a.example.com", "web1"), Route("a.example.com", "web2")], policy="first")
    assert table == (Route("a.example.com", "web1"),)


def test_build_routes_hosts_are_unique():
    candidates = [Route(f"h{i % 3}.example.com", f"c{i}") for i in range(10)]
    hosts = [r.host for r in build_routes(candidates)]
    assert len(hosts) == len(set(hosts)) == 3


def test_unknown_policy_rejected():
    with pytest.raises(ValueError):
        build_routes([], policy="reject-all")


def test_runtime_snapshot_is_immutable_copy():
    rt = RuntimeState()
    table = [Route("a.example.com", "web1")]
    assert rt.commit(table) is True
    snap = rt.snapshot()
    table.append(Route("b.example.com", "web2"))
    assert snap.routes == (Route("a.example.com", "web1"),)
    assert rt.snapshot().routes == (Route("a.example.com", "web1"),)
    assert snap.version == 1
    assert snap.hosts == ["a.example.com"]


def test_commit_refuses_stale_version():
    rt = RuntimeState()
    changed, version = rt.differs([Route("a.example.com", "web1")])
    assert changed is True and version == 0
    rt.commit([Route("b.example.com", "web2")])
    assert rt.commit([Route("a.example.com", "web1")], expected_version=version) is False
    assert rt.snapshot().routes == (Route("b.example.com", "web2"),)


@pytest.mark.parametrize("host", ["a.example.com", "localhost", "x-1.y.example.org"])
def test_validate_host_accepts(host):
    validate_host(host)


@pytest.mark.parametrize("host", ["", "../etc", "a/b.example.com", "-bad.example.com", "a..b", "a b.com"])
def test_validate_host_rejects(host):
    with pytest.raises(ValueError):
        validate_host(host)
