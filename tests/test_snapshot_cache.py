from headscale_admin.services.snapshot_cache import SnapshotCache
from headscale_admin.services.snapshots import Snapshot, fold_snapshot


def test_empty_cache():
    cache = SnapshotCache()

    assert cache.get() is None
    assert cache.entry() is None
    assert cache.sequence == 0


def test_newer_sequence_wins_and_stale_write_is_discarded():
    cache = SnapshotCache()
    first = cache.next_sequence()
    second = cache.next_sequence()

    assert cache.set(Snapshot(total_nodes=2), sequence=second) is True
    assert cache.set(Snapshot(total_nodes=1), sequence=first) is False

    assert cache.get().total_nodes == 2
    assert cache.sequence == second


def test_write_without_sequence_always_wins():
    cache = SnapshotCache()
    cache.set(Snapshot(total_users=1), sequence=cache.next_sequence())

    assert cache.set(Snapshot(total_users=5)) is True
    assert cache.get().total_users == 5


def test_entry_is_replaced_not_mutated():
    cache = SnapshotCache()
    cache.set(Snapshot(total_nodes=1))
    before = cache.entry()

    cache.set(Snapshot(total_nodes=4))

    assert before.snapshot.total_nodes == 1
    assert cache.entry() is not before
    assert cache.entry().stored_at >= before.stored_at


def test_fold_snapshot_marks_failed_fields():
    snapshot = fold_snapshot([{"online": True}, {"online": "false"}], None, [])

    assert snapshot.total_nodes == 2
    assert snapshot.online_nodes == 1
    assert snapshot.total_users == 0
    assert snapshot.total_preauth_keys == 0
    assert snapshot.to_payload(include_health=True)["health"] == {
        "nodes": True,
        "users": False,
        "preauthKeys": True,
    }
