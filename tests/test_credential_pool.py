import json

from copilot_server.backend.component.credential_pool import (
    BlockedCredentialStore,
    CredentialPool,
    CredentialPoolSettings,
    fingerprint_secret,
    load_credential_buckets,
)
from fakes import FakeClock, permission_denied, rate_limited, transient


def _pool(keys=None, clock=None, **kwargs):
    """Helper for a pool over a fake clock."""
    return CredentialPool(
        keys if keys is not None else {"general": ["key-a", "key-b", "key-c"]},
        time_fn=clock or FakeClock(),
        **kwargs,
    )


def test_load_buckets_from_env():
    """Test load buckets from env."""
    env = {
        "GROQ_API_KEY": "a, b ,,c",
        "GROQ_KEYS_70B": "big-1,big-2",
        "GROQ_KEYS_8B": "",
    }

    buckets = load_credential_buckets(env)

    assert buckets == {"general": ["a", "b", "c"], "70b": ["big-1", "big-2"]}


def test_general_bucket_falls_back_to_other_variable():
    """Test general bucket falls back to other variable."""
    buckets = load_credential_buckets({"GROQ_KEYS_8B": "small-1"})

    assert buckets["general"] == ["small-1"]
    assert buckets["8b"] == ["small-1"]


def test_no_keys_configured():
    """Test no keys configured."""
    pool = _pool(keys={})

    assert load_credential_buckets({}) == {}
    assert pool.has_credentials() is False
    assert pool.next("llama-3.1-8b-instant") is None


def test_round_robin_order():
    """Test round robin order."""
    pool = _pool()

    labels = [pool.next("any-model").label for _ in range(4)]

    assert labels == ["general#1", "general#2", "general#3", "general#1"]


def test_cooling_credential_is_skipped():
    """Test cooling credential is skipped."""
    clock = FakeClock()
    pool = _pool(clock=clock)
    first = pool.next("m")
    pool.record_failure(first, "m", rate_limited())

    labels = [pool.next("m").label for _ in range(3)]

    assert "general#1" not in labels
    clock.advance(61)
    assert [pool.next("m").label for _ in range(3)].count("general#1") == 1


def test_all_cooling_returns_soonest():
    """Test all cooling returns soonest."""
    clock = FakeClock()
    pool = _pool(keys={"general": ["key-a", "key-b"]}, clock=clock)
    first = pool.next("m")
    second = pool.next("m")
    pool.cooldown(first, 30)
    pool.cooldown(second, 5)

    assert pool.next("m") is second


def test_failure_policy():
    """Test failure policy."""
    clock = FakeClock()
    pool = _pool(clock=clock)
    credential = pool.next("m")

    pool.record_failure(credential, "m", transient())
    assert credential.cooldown_until == clock.now + 10.0
    assert pool.is_blocked(credential, "m") is False

    pool.record_failure(credential, "m", rate_limited())
    assert credential.cooldown_until == clock.now + 60.0

    pool.record_failure(credential, "m", permission_denied())
    assert pool.is_blocked(credential, "m") is True
    assert pool.is_blocked(credential, "other-model") is False
    assert credential.error_count == 3


def test_block_clears_verification():
    """Test block clears verification."""
    pool = _pool()
    credential = pool.next("m")
    pool.mark_verified(credential, "m")
    assert pool.is_verified(credential, "m") is True

    pool.mark_blocked(credential, "m")

    assert pool.is_verified(credential, "m") is False


def test_block_expires_after_max_age():
    """Test block expires after max age."""
    clock = FakeClock()
    pool = _pool(clock=clock, settings=CredentialPoolSettings(block_max_age_sec=100))
    credential = pool.next("m")
    pool.mark_blocked(credential, "m")

    clock.advance(101)

    assert pool.is_blocked(credential, "m") is False


def test_bucket_routing():
    """Test bucket routing."""
    pool = _pool(keys={"general": ["g"], "70b": ["big"], "8b": ["small"]})

    assert pool.bucket_for("llama-3.3-70b-versatile") == "70b"
    assert pool.bucket_for("llama-3.1-8b-instant") == "8b"
    assert pool.bucket_for("whisper-large-v3-turbo") == "8b"
    assert pool.bucket_for("mixtral") == "general"
    assert pool.next("llama-3.3-70b-versatile").label == "70b#1"


def test_route_to_missing_bucket_falls_back_to_general():
    """Test route to missing bucket falls back to general."""
    pool = _pool(keys={"general": ["g"]})

    assert pool.bucket_for("llama-3.3-70b-versatile") == "general"


def test_shared_key_is_one_credential():
    """Test shared key is one credential."""
    clock = FakeClock()
    pool = _pool(keys={"general": ["shared"], "8b": ["shared"]}, clock=clock)
    general = pool.next("m")
    pool.cooldown(general, 30)

    assert pool.next("llama-3.1-8b-instant") is general


def test_block_persists_and_restores(tmp_path):
    """Test block persists and restores."""
    clock = FakeClock()
    cache = tmp_path / "blocked.json"
    store = BlockedCredentialStore(cache, time_fn=clock)
    pool = _pool(keys={"general": ["key-a", "key-b"]}, clock=clock, block_store=store)
    credential = pool.next("m")
    pool.mark_blocked(credential, "m")

    data = json.loads(cache.read_text(encoding="utf-8"))
    assert data["blocked"] == {"m": [fingerprint_secret("key-a")]}
    assert "key-a" not in cache.read_text(encoding="utf-8")

    restored = _pool(
        keys={"general": ["key-a", "key-b"]}, clock=clock, block_store=store
    )
    first = restored.candidates("m")[0]
    assert restored.is_blocked(first, "m") is True
    assert restored.next("m").label == "general#2"


def test_store_drops_expired_entries(tmp_path):
    """Test store drops expired entries."""
    clock = FakeClock()
    cache = tmp_path / "blocked.json"
    cache.write_text(
        json.dumps(
            {
                "blocked": {"m": ["old", "new"]},
                "timestamps": {"m": {"old": clock.now - 500, "new": clock.now - 5}},
            }
        ),
        encoding="utf-8",
    )
    store = BlockedCredentialStore(cache, max_age_sec=100, time_fn=clock)

    assert store.load() == {"m": {"new": clock.now - 5}}


def test_store_accepts_per_model_timestamp(tmp_path):
    """Test store accepts per model timestamp."""
    clock = FakeClock()
    cache = tmp_path / "blocked.json"
    cache.write_text(
        json.dumps({"blocked": {"m": ["fp"]}, "timestamps": {"m": clock.now - 1}}),
        encoding="utf-8",
    )

    assert BlockedCredentialStore(cache, time_fn=clock).load() == {
        "m": {"fp": clock.now - 1}
    }


def test_store_tolerates_corrupt_file(tmp_path):
    """Test store tolerates corrupt file."""
    cache = tmp_path / "blocked.json"
    cache.write_text("{not json", encoding="utf-8")

    assert BlockedCredentialStore(cache).load() == {}
    assert BlockedCredentialStore(tmp_path / "missing.json").load() == {}


def test_snapshot_never_exposes_secrets():
    """Test snapshot never exposes secrets."""
    pool = _pool(keys={"general": ["super-secret"]})
    credential = pool.next("m")
    pool.mark_verified(credential, "m")

    snapshot = pool.snapshot()

    assert snapshot == {
        "general": [
            {
                "label": "general#1",
                "cooling": False,
                "error_count": 0,
                "verified_models": ["m"],
                "blocked_models": [],
            }
        ]
    }
    assert "super-secret" not in repr(credential)
