import asyncio
import json

import httpx
import pytest

from headscale_admin.services.aggregator import Aggregator, unwrap_entity, unwrap_list
from headscale_admin.services.snapshot_cache import SnapshotCache
from headscale_admin.services.upstream import ControlApiClient, UpstreamError, UpstreamErrorKind

from conftest import CONTROL_URL, FakeControlApi

NODES = [
    {
        "id": "1",
        "name": "alpha",
        "givenName": "alpha-laptop",
        "online": True,
        "lastSeen": "2024-05-01T12:00:00.123456789Z",
        "user": {"id": "10", "name": "alice"},
        "ipAddresses": ["100.64.0.1"],
        "forcedTags": ["tag:server"],
        "validTags": ["tag:prod"],
    },
    {"id": "2", "name": "beta", "online": False, "lastSeen": None},
    {"id": "3", "name": "gamma", "online": True},
]
USERS = [{"id": "10", "name": "alice"}, {"id": "11", "name": "bob"}]
KEYS = [{"id": "5", "user": "alice", "key": "k1", "reusable": True}]


def _run(api: FakeControlApi, action, cache=None):
    async def run():
        client = ControlApiClient(CONTROL_URL, "key", transport=api.transport)
        try:
            return await action(Aggregator(client, cache))
        finally:
            await client.close()

    return asyncio.run(run())


def _full_api() -> FakeControlApi:
    return FakeControlApi(
        {
            ("GET", "/api/v1/node"): (200, {"nodes": NODES}),
            ("GET", "/api/v1/user"): (200, USERS),
            ("GET", "/api/v1/preauthkey"): (200, {"preAuthKeys": KEYS}),
        }
    )


def test_snapshot_counts_all_fields():
    snapshot = _run(_full_api(), lambda agg: agg.fetch_snapshot())

    assert snapshot.to_payload() == {
        "totalNodes": 3,
        "onlineNodes": 2,
        "totalUsers": 2,
        "totalPreauthKeys": 1,
    }
    assert not snapshot.health.degraded


def test_snapshot_failed_call_contributes_zero_without_aborting_others():
    api = _full_api()
    api.routes[("GET", "/api/v1/user")] = (500, {"message": "boom"})

    snapshot = _run(api, lambda agg: agg.fetch_snapshot())

    assert snapshot.total_users == 0
    assert snapshot.total_nodes == 3
    assert snapshot.online_nodes == 2
    assert snapshot.total_preauth_keys == 1
    assert snapshot.health.users is False
    assert snapshot.health.degraded


def test_snapshot_nodes_failure_zeroes_online_count():
    api = _full_api()
    api.routes[("GET", "/api/v1/node")] = (0, httpx.ConnectTimeout("timed out"))

    snapshot = _run(api, lambda agg: agg.fetch_snapshot())

    assert snapshot.total_nodes == 0
    assert snapshot.online_nodes == 0
    assert snapshot.total_users == 2


def test_snapshot_all_failed_is_zero_and_never_raises():
    api = FakeControlApi()

    snapshot = _run(api, lambda agg: agg.fetch_snapshot())

    assert snapshot.to_payload() == {
        "totalNodes": 0,
        "onlineNodes": 0,
        "totalUsers": 0,
        "totalPreauthKeys": 0,
    }
    assert sorted(api.paths()) == ["/api/v1/node", "/api/v1/preauthkey", "/api/v1/user"]


def test_refresh_snapshot_writes_cache_and_returns_nodes():
    cache = SnapshotCache()

    refresh = _run(_full_api(), lambda agg: agg.refresh_snapshot(), cache=cache)

    assert refresh.accepted is True
    assert cache.get() == refresh.snapshot
    assert cache.sequence == refresh.sequence
    assert [node.id for node in refresh.nodes] == ["1", "2", "3"]


def test_refresh_snapshot_discards_stale_result():
    cache = SnapshotCache()
    api = _full_api()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_nodes(request):
        entered.set()
        await release.wait()
        return httpx.Response(200, json={"nodes": []})

    async def scenario():
        client = ControlApiClient(
            CONTROL_URL,
            "key",
            transport=httpx.MockTransport(_async_dispatch(api, slow_nodes)),
        )
        aggregator = Aggregator(client, cache)
        try:
            slow = asyncio.create_task(aggregator.refresh_snapshot())
            await entered.wait()
            fast = await aggregator.refresh_snapshot()
            release.set()
            stale = await slow
            return fast, stale
        finally:
            await client.close()

    fast, stale = asyncio.run(scenario())

    assert fast.accepted is True
    assert stale.accepted is False
    assert stale.sequence < fast.sequence
    assert cache.get().total_nodes == 3
    assert stale.snapshot.total_nodes == 3


def _async_dispatch(api: FakeControlApi, slow_nodes):
    """Route the first node listing through ``slow_nodes``; the rest through ``api``."""
    state = {"slow_used": False}

    async def handler(request):
        if request.url.path == "/api/v1/node" and not state["slow_used"]:
            state["slow_used"] = True
            return await slow_nodes(request)
        return api(request)

    return handler


def test_user_detail_returns_none_when_user_call_fails():
    api = FakeControlApi(
        {
            ("GET", "/api/v1/user/42/node"): (200, {"nodes": NODES}),
            ("GET", "/api/v1/user/42/preauthkey"): (200, {"preAuthKeys": KEYS}),
        }
    )

    assert _run(api, lambda agg: agg.fetch_user_detail("42")) is None


def test_user_detail_tolerates_secondary_failures():
    api = FakeControlApi({("GET", "/api/v1/user/10"): (200, {"user": USERS[0]})})

    detail = _run(api, lambda agg: agg.fetch_user_detail("10"))

    assert detail.user.name == "alice"
    assert detail.nodes == []
    assert detail.preauth_keys == []


def test_node_parsing_flattens_upstream_shape():
    api = FakeControlApi({("GET", "/api/v1/node/1"): (200, {"node": NODES[0]})})

    node = _run(api, lambda agg: agg.fetch_node("1"))

    assert node.display_name == "alpha-laptop"
    assert node.user_name == "alice"
    assert node.user_id == "10"
    assert node.tags == ["tag:server", "tag:prod"]
    assert node.last_seen.microsecond == 123456


def test_single_entity_errors_propagate():
    api = FakeControlApi({("GET", "/api/v1/node/99"): (404, {"message": "node not found"})})

    with pytest.raises(UpstreamError) as caught:
        _run(api, lambda agg: agg.fetch_node("99"))

    assert caught.value.kind is UpstreamErrorKind.NOT_FOUND


def test_malformed_entity_raises_upstream_fault():
    api = FakeControlApi(
        {
            ("GET", "/api/v1/node/7"): (200, {"node": {"name": "x"}}),
            ("GET", "/api/v1/user/7"): (200, {"user": {"name": "x"}}),
        }
    )

    for action in (lambda agg: agg.fetch_node("7"), lambda agg: agg.fetch_user("7")):
        with pytest.raises(UpstreamError) as caught:
            _run(api, action)
        assert caught.value.kind is UpstreamErrorKind.UPSTREAM_FAULT


def test_list_reads_accept_bare_and_enveloped_shapes():
    bare = FakeControlApi({("GET", "/api/v1/user"): (200, USERS)})
    wrapped = FakeControlApi({("GET", "/api/v1/user"): (200, {"users": USERS})})

    assert _run(bare, lambda agg: agg.fetch_user_list()) == _run(
        wrapped, lambda agg: agg.fetch_user_list()
    )


def test_preauth_key_list_resolves_owner_reference():
    api = FakeControlApi(
        {
            ("GET", "/api/v1/preauthkey"): (
                200,
                {"preAuthKeys": [KEYS[0], {"id": 6, "user": {"id": "11", "name": "bob"}}]},
            )
        }
    )

    keys = _run(api, lambda agg: agg.fetch_preauth_key_list())

    assert [(key.id, key.user, key.reusable) for key in keys] == [
        ("5", "alice", True),
        ("6", "bob", False),
    ]


def test_rename_strips_name_and_rejects_blank():
    api = FakeControlApi({("POST", "/api/v1/node/1/rename"): (200, {"node": NODES[0]})})

    _run(api, lambda agg: agg.rename_node("1", "  edge  "))
    assert json.loads(api.calls[0].content) == {"name": "edge"}

    with pytest.raises(ValueError):
        _run(api, lambda agg: agg.rename_node("1", "   "))
    assert len(api.calls) == 1


def test_retag_splits_comma_string():
    api = FakeControlApi({("POST", "/api/v1/node/1/tags"): (200, {"node": NODES[0]})})

    _run(api, lambda agg: agg.retag_node("1", "tag:a, tag:b,, ,tag:a"))

    assert json.loads(api.calls[0].content) == {"tags": ["tag:a", "tag:b"]}


def test_create_preauth_key_defaults():
    created = {"preAuthKey": {"id": "9", "user": "alice", "key": "abc", "reusable": False}}
    api = FakeControlApi({("POST", "/api/v1/preauthkey"): (200, created)})

    key = _run(api, lambda agg: agg.create_preauth_key("10"))

    assert json.loads(api.calls[0].content) == {
        "user": "10",
        "expiration": "24h",
        "reusable": False,
        "tags": [],
    }
    assert key.key == "abc"


def test_user_mutations_use_expected_verbs():
    api = FakeControlApi(
        {
            ("POST", "/api/v1/user"): (200, {"user": USERS[1]}),
            ("PUT", "/api/v1/user/11"): (200, {"user": USERS[1]}),
            ("DELETE", "/api/v1/user/11"): (200, {}),
        }
    )

    async def action(agg):
        await agg.create_user(" bob ")
        await agg.update_user("11", "robert")
        await agg.delete_user("11")

    _run(api, action)

    assert [(r.method, r.url.path) for r in api.calls] == [
        ("POST", "/api/v1/user"),
        ("PUT", "/api/v1/user/11"),
        ("DELETE", "/api/v1/user/11"),
    ]
    assert json.loads(api.calls[0].content) == {"name": "bob"}


def test_unwrap_helpers():
    assert unwrap_list([1, 2], "nodes") == [1, 2]
    assert unwrap_list({"nodes": [1]}, "nodes") == [1]
    assert unwrap_list(None, "nodes") == []
    assert unwrap_list({"unexpected": 1}, "nodes") is None
    assert unwrap_entity({"node": {"id": "1"}}, "node") == {"id": "1"}
    assert unwrap_entity({"id": "1"}, "node") == {"id": "1"}
