"""
Run Store - In-memory cache of council runs with Redis-backed persistence.

The cache is authoritative for the running process. When persistence is
enabled, every write is mirrored to Redis so runs survive a restart; Redis
failures are logged and never roll back the cache.

Redis layout (one record per run, indexed by creation time):
    {prefix}:run:{request_id}  hash  request_id, created_at, query, state_json
    {prefix}:runs              zset  request_id scored by created_at epoch
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Optional

import redis
from pydantic import ValidationError

from app.pipeline.run_state import RequestState, RunSummary

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_KEY_PREFIX = "council"
DEFAULT_LIST_LIMIT = 20


def _created_at_score(created_at: str) -> float:
    try:
        return datetime.fromisoformat(created_at).timestamp()
    except ValueError:
        return 0.0


class RedisRunPersistence:
    """Durable run records in Redis."""

    def __init__(
        self,
        redis_url: str = DEFAULT_REDIS_URL,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        client: Optional[redis.Redis] = None,
    ):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis: Optional[redis.Redis] = client
        self._unavailable = False

    def _get_redis(self) -> Optional[redis.Redis]:
        """Lazy initialization of Redis connection."""
        if self._unavailable:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
                self._redis.ping()
                logger.info(f"Connected to Redis at {self._redis_url}")
            except redis.RedisError as e:
                logger.warning(f"Persistence disabled, Redis unavailable: {e}")
                self._redis = None
                self._unavailable = True
                return None
        return self._redis

    @property
    def available(self) -> bool:
        return self._get_redis() is not None

    def _run_key(self, request_id: str) -> str:
        return f"{self._prefix}:run:{request_id}"

    def _index_key(self) -> str:
        return f"{self._prefix}:runs"

    def save(self, state: RequestState) -> bool:
        """Upsert the full run record. Returns False if it could not be written."""
        r = self._get_redis()
        if r is None:
            return False

        try:
            r.hset(
                self._run_key(state.request_id),
                mapping={
                    "request_id": state.request_id,
                    "created_at": state.created_at,
                    "query": state.query,
                    "state_json": state.model_dump_json(),
                },
            )
            r.zadd(self._index_key(), {state.request_id: _created_at_score(state.created_at)})
            logger.debug(f"Persisted run {state.request_id}")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to persist run {state.request_id}: {e}")
            return False

    def load(self, request_id: str) -> Optional[RequestState]:
        r = self._get_redis()
        if r is None:
            return None

        try:
            raw = r.hget(self._run_key(request_id), "state_json")
        except redis.RedisError as e:
            logger.error(f"Failed to load run {request_id}: {e}")
            return None

        if not raw:
            return None

        try:
            return RequestState.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Failed to parse stored run {request_id}: {e}")
            return None

    def list_runs(self, limit: int = DEFAULT_LIST_LIMIT) -> Optional[list[RunSummary]]:
        """Most recent runs first. None when Redis cannot be read."""
        r = self._get_redis()
        if r is None:
            return None

        summaries: list[RunSummary] = []
        try:
            request_ids = r.zrevrange(self._index_key(), 0, max(limit, 1) - 1)
            for request_id in request_ids:
                created_at, query = r.hmget(self._run_key(request_id), ["created_at", "query"])
                if created_at is None or query is None:
                    continue
                summaries.append(
                    RunSummary(request_id=request_id, created_at=created_at, query=query)
                )
        except redis.RedisError as e:
            logger.error(f"Failed to list runs: {e}")
            return None
        return summaries

    def delete(self, request_id: str) -> bool:
        r = self._get_redis()
        if r is None:
            return False

        try:
            r.delete(self._run_key(request_id))
            r.zrem(self._index_key(), request_id)
            logger.info(f"Deleted persisted run {request_id}")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to delete run {request_id}: {e}")
            return False


class RunStore:
    """
    Owned state container for council runs.

    Readers get deep copies; writers replace whole records. Only the
    orchestrator writes.

    Writes land in the cache immediately. The Redis mirror runs on a worker
    thread in the background so a slow or dead Redis never stalls the event
    loop; mirror writes for one request id are applied in call order.

    Usage:
        store = RunStore(RedisRunPersistence(redis_url))
        await store.bootstrap(20)
        state = store.create(request_id, query)
        store.replace(state)
        await store.flush()
    """

    def __init__(self, persistence: Optional[RedisRunPersistence] = None):
        self._runs: dict[str, RequestState] = {}
        self._persistence = persistence
        self._pending: dict[str, asyncio.Task] = {}

    @property
    def persistence_enabled(self) -> bool:
        return self._persistence is not None and self._persistence.available

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(self, request_id: str, query: str) -> RequestState:
        state = RequestState(request_id=request_id, query=query)
        self.replace(state)
        return state.model_copy(deep=True)

    def replace(self, state: RequestState) -> None:
        """Full overwrite keyed by request id, mirrored to Redis when enabled."""
        snapshot = state.model_copy(deep=True)
        self._runs[state.request_id] = snapshot
        if self._persistence is not None:
            self._mirror(state.request_id, partial(self._persistence.save, snapshot))

    def delete(self, request_id: str) -> None:
        self._runs.pop(request_id, None)
        if self._persistence is not None:
            self._mirror(request_id, partial(self._persistence.delete, request_id))

    def _mirror(self, request_id: str, write: Callable[[], Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (scripts, sync callers): write inline
            write()
            return

        previous = self._pending.get(request_id)
        task = loop.create_task(self._run_mirror(previous, write))
        self._pending[request_id] = task
        task.add_done_callback(lambda done: self._mirror_done(request_id, done))

    @staticmethod
    async def _run_mirror(previous: Optional[asyncio.Task], write: Callable[[], Any]) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        await asyncio.to_thread(write)

    def _mirror_done(self, request_id: str, task: asyncio.Task) -> None:
        if self._pending.get(request_id) is task:
            del self._pending[request_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Mirror write for run {request_id} failed: {task.exception()}")

    async def flush(self) -> None:
        """Wait for every queued mirror write to finish."""
        while self._pending:
            await asyncio.wait(set(self._pending.values()))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, request_id: str) -> Optional[RequestState]:
        state = self._runs.get(request_id)
        if state is None and self._persistence is not None and request_id not in self._pending:
            state = await asyncio.to_thread(self._persistence.load, request_id)
            if state is not None:
                logger.info(f"Loaded run {request_id} from persistence")
                self._runs.setdefault(request_id, state)
        if state is None:
            return None
        return state.model_copy(deep=True)

    async def bootstrap(self, limit: int = DEFAULT_LIST_LIMIT) -> int:
        """Load the most recent persisted runs into the cache. Returns the count."""
        if self._persistence is None:
            return 0

        states = await asyncio.to_thread(self._load_recent, limit)
        for state in states:
            self._runs[state.request_id] = state
        logger.info(f"Bootstrapped {len(states)} run(s) from persistence")
        return len(states)

    def _load_recent(self, limit: int) -> list[RequestState]:
        states = []
        for summary in self._persistence.list_runs(limit) or []:
            state = self._persistence.load(summary.request_id)
            if state is not None:
                states.append(state)
        return states

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> list[RunSummary]:
        limit = max(limit, 1)
        if self._persistence is not None:
            await self.flush()
            summaries = await asyncio.to_thread(self._persistence.list_runs, limit)
            if summaries is not None:
                return summaries

        ordered = sorted(
            self._runs.values(),
            key=lambda state: _created_at_score(state.created_at),
            reverse=True,
        )
        return [
            RunSummary(request_id=s.request_id, created_at=s.created_at, query=s.query)
            for s in ordered[:limit]
        ]
