"""Run store tests: cache semantics, Redis mirroring and restart recovery."""

import asyncio

import redis

from app.models.council import RankingEntry, UsedSignals
from app.pipeline.run_state import (
    BackendFailure,
    ChairmanSynthesis,
    MemberAnswer,
    RequestState,
    Stage1State,
    Stage2State,
)
from app.pipeline.state_store import RedisRunPersistence, RunStore


def _store(fake_redis, prefix="test"):
    return RunStore(RedisRunPersistence(key_prefix=prefix, client=fake_redis))


def _full_state(request_id="req-1", created_at="2026-01-01T00:00:00+00:00"):
    return RequestState(
        request_id=request_id,
        query="What is entropy?",
        created_at=created_at,
        stage1=Stage1State(
            answers_by_url={
                "http://a": MemberAnswer(answer_text="a", latency_ms=5),
                "http://b": BackendFailure(error="Request timed out after 500ms", error_type="BackendTimeoutError"),
            },
            anon_map={"A": "http://a"},
        ),
        stage2=Stage2State(aggregated_ranking=[RankingEntry(anon_id="A", score=0)]),
        stage3=ChairmanSynthesis(
            chairman_url="http://chair",
            chairman_id="chair-1",
            final_answer="final",
            rationale="because",
            used_signals=UsedSignals(top_ranked=["A"]),
            latency_ms=9,
        ),
    )


def _get(store, request_id):
    return asyncio.run(store.get(request_id))


def _list(store, limit=20):
    return asyncio.run(store.list(limit))


def test_chairman_synthesis_defaults_used_signals():
    synthesis = ChairmanSynthesis(
        chairman_url="http://chair",
        chairman_id="chair-1",
        final_answer="final",
        rationale="because",
        latency_ms=1,
    )
    assert synthesis.used_signals == UsedSignals()


def test_create_then_get_without_persistence():
    store = RunStore()

    created = store.create("req-1", "q")
    fetched = _get(store, "req-1")

    assert fetched.request_id == "req-1"
    assert fetched.query == "q"
    assert fetched.stage3 is None
    assert fetched.stage1.answers_by_url == {}
    assert created == fetched
    assert not store.persistence_enabled


def test_get_unknown_returns_none(fake_redis):
    assert _get(_store(fake_redis), "missing") is None
    assert _get(RunStore(), "missing") is None


def test_get_returns_a_copy():
    store = RunStore()
    store.create("req-1", "q")

    copy = _get(store, "req-1")
    copy.query = "mutated"
    copy.stage1.anon_map["A"] = "http://x"

    again = _get(store, "req-1")
    assert again.query == "q"
    assert again.stage1.anon_map == {}


def test_replace_overwrites_whole_record():
    store = RunStore()
    state = store.create("req-1", "q")

    state.stage1 = Stage1State(anon_map={"A": "http://a"})
    store.replace(state)
    state.stage1 = Stage1State()
    store.replace(state)

    assert _get(store, "req-1").stage1.anon_map == {}


def test_replace_mirrors_to_redis(fake_redis):
    store = _store(fake_redis)
    store.replace(_full_state())

    record = fake_redis.hashes["test:run:req-1"]
    assert record["request_id"] == "req-1"
    assert record["query"] == "What is entropy?"
    assert record["created_at"] == "2026-01-01T00:00:00+00:00"
    assert "test:runs" in fake_redis.zsets
    assert RequestState.model_validate_json(record["state_json"]) == _full_state()


def test_mirror_writes_keep_call_order_inside_a_loop(fake_redis):
    store = _store(fake_redis)

    async def main():
        state = store.create("req-1", "q")
        state.stage1 = Stage1State(anon_map={"A": "http://a"})
        store.replace(state)
        state.stage1 = Stage1State(anon_map={"A": "http://b"})
        store.replace(state)
        # Cache is updated before the mirror catches up
        cached = await store.get("req-1")
        await store.flush()
        return cached

    cached = asyncio.run(main())

    assert cached.stage1.anon_map == {"A": "http://b"}
    persisted = RedisRunPersistence(key_prefix="test", client=fake_redis).load("req-1")
    assert persisted.stage1.anon_map == {"A": "http://b"}


def test_delete_after_pending_write_leaves_nothing(fake_redis):
    store = _store(fake_redis)

    async def main():
        store.replace(_full_state())
        store.delete("req-1")
        missing = await store.get("req-1")
        await store.flush()
        return missing

    assert asyncio.run(main()) is None
    assert fake_redis.hashes == {}
    assert fake_redis.zsets["test:runs"] == {}


def test_restart_recovers_full_state(fake_redis):
    _store(fake_redis).replace(_full_state())

    restarted = _store(fake_redis)
    state = _get(restarted, "req-1")

    assert state == _full_state()
    assert isinstance(state.stage1.answers_by_url["http://b"], BackendFailure)
    assert isinstance(state.stage3, ChairmanSynthesis)
    assert state.stage3.used_signals.top_ranked == ["A"]


def test_bootstrap_loads_recent_runs(fake_redis):
    first = _store(fake_redis)
    for i in range(5):
        first.replace(_full_state(f"req-{i}", f"2026-01-0{i + 1}T00:00:00+00:00"))

    restarted = _store(fake_redis)
    loaded = asyncio.run(restarted.bootstrap(3))

    assert loaded == 3
    assert set(restarted._runs) == {"req-4", "req-3", "req-2"}


def test_bootstrap_without_persistence_is_noop():
    assert asyncio.run(RunStore().bootstrap(20)) == 0


def test_list_is_newest_first(fake_redis):
    store = _store(fake_redis)
    store.replace(_full_state("old", "2026-01-01T00:00:00+00:00"))
    store.replace(_full_state("new", "2026-03-01T00:00:00+00:00"))
    store.replace(_full_state("mid", "2026-02-01T00:00:00+00:00"))

    runs = _list(store)

    assert [run.request_id for run in runs] == ["new", "mid", "old"]
    assert runs[0].query == "What is entropy?"
    assert [run.request_id for run in _list(store, 2)] == ["new", "mid"]


def test_list_in_memory_is_newest_first():
    store = RunStore()
    store.replace(_full_state("old", "2026-01-01T00:00:00+00:00"))
    store.replace(_full_state("new", "2026-03-01T00:00:00+00:00"))

    assert [run.request_id for run in _list(store, 10)] == ["new", "old"]
    assert [run.request_id for run in _list(store, 0)] == ["new"]


def test_list_falls_back_to_cache_when_redis_fails(fake_redis):
    store = _store(fake_redis)
    fake_redis.fail = True
    store.replace(_full_state())

    assert [run.request_id for run in _list(store)] == ["req-1"]


def test_delete_clears_both_layers(fake_redis):
    store = _store(fake_redis)
    store.replace(_full_state())

    store.delete("req-1")

    assert _get(store, "req-1") is None
    assert "test:run:req-1" not in fake_redis.hashes
    assert "req-1" not in fake_redis.zsets["test:runs"]
    assert _get(_store(fake_redis), "req-1") is None


def test_delete_unknown_is_silent(fake_redis):
    _store(fake_redis).delete("missing")


def test_redis_failure_does_not_break_cache(fake_redis):
    store = _store(fake_redis)
    fake_redis.fail = True

    store.create("req-1", "q")

    assert _get(store, "req-1").query == "q"
    assert fake_redis.hashes == {}


def test_save_reports_failure(fake_redis):
    persistence = RedisRunPersistence(client=fake_redis)
    fake_redis.fail = True

    assert persistence.save(_full_state()) is False
    assert persistence.load("req-1") is None
    assert persistence.list_runs() is None
    assert persistence.delete("req-1") is False


def test_corrupt_record_is_ignored(fake_redis):
    fake_redis.hset("test:run:bad", mapping={"state_json": "{not json"})

    assert _get(_store(fake_redis), "bad") is None


def test_unreachable_redis_disables_persistence(mocker):
    mocker.patch(
        "app.pipeline.state_store.redis.from_url",
        side_effect=redis.ConnectionError("refused"),
    )
    store = RunStore(RedisRunPersistence(redis_url="redis://nowhere:6379/0"))

    assert not store.persistence_enabled
    store.create("req-1", "q")
    assert _get(store, "req-1").query == "q"
    assert asyncio.run(store.bootstrap(20)) == 0
