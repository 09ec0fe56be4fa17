import itertools

from ledger_sync.conflict import Resolution, resolve_conflict


def test_remote_wins_only_when_strictly_newer():
    assert resolve_conflict(1, 2) is Resolution.REMOTE_WINS
    assert resolve_conflict(2, 2) is Resolution.KEEP_LOCAL
    assert resolve_conflict(3, 2) is Resolution.KEEP_LOCAL


def test_resolution_is_a_pure_function_of_versions():
    """Re-running the policy on the same inputs always yields the same winner."""
    versions = range(0, 6)
    for local, remote in itertools.product(versions, versions):
        first = resolve_conflict(local, remote)
        for _ in range(3):
            assert resolve_conflict(local, remote) is first
        expected = Resolution.REMOTE_WINS if remote > local else Resolution.KEEP_LOCAL
        assert first is expected
