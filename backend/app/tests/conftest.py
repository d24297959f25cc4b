import asyncio
import fnmatch
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import pytest
import redis

# Add backend directory to sys.path to allow imports from app
backend_path = Path(__file__).parent.parent.parent.resolve()
sys.path.append(str(backend_path))

from app.config import Settings

MEMBER_A = "http://member-a.local:8001"
MEMBER_B = "http://member-b.local:8002"
MEMBER_C = "http://member-c.local:8003"
CHAIRMAN = "http://chairman.local:9100"


class FakeRedis:
    """In-memory double covering the Redis commands the run store issues."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis down")

    def ping(self):
        self._check()
        return True

    def hset(self, key, mapping):
        self._check()
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    def hget(self, key, field):
        self._check()
        return self.hashes.get(key, {}).get(field)

    def hmget(self, key, fields):
        self._check()
        record = self.hashes.get(key, {})
        return [record.get(field) for field in fields]

    def zadd(self, key, mapping):
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrevrange(self, key, start, end):
        self._check()
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: (-item[1], item[0]))
        names = [name for name, _ in members]
        return names[start:end + 1] if end >= 0 else names[start:]

    def zrem(self, key, *names):
        self._check()
        zset = self.zsets.get(key, {})
        return sum(1 for name in names if zset.pop(name, None) is not None)

    def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.hashes.pop(key, None) is not None)

    def keys(self, pattern="*"):
        return [key for key in list(self.hashes) + list(self.zsets) if fnmatch.fnmatch(key, pattern)]


class FakeCouncil:
    """
    Scriptable member and chairman services behind an httpx.MockTransport.

    answers / reviews / synthesis hold either a response body (dict), an
    int HTTP status to fail with, or the string "timeout" to hang.
    """

    def __init__(self):
        self.answers: Dict[str, Any] = {}
        self.reviews: Dict[str, Any] = {}
        self.synthesis: Any = None
        self.health: Dict[str, Any] = {}
        self.requests: list[tuple[str, str, Optional[dict]]] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        base = f"{request.url.scheme}://{request.url.host}:{request.url.port}"
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((base, path, body))

        if path == "/health":
            behavior = self.health.get(base, {"ok": True, "id": base})
        elif path == "/answer":
            behavior = self.answers.get(base, 500)
        elif path == "/review":
            behavior = self.reviews.get(base, 500)
        elif path == "/synthesize":
            behavior = self.synthesis if self.synthesis is not None else 500
        else:
            behavior = 404

        if behavior == "timeout":
            await asyncio.sleep(10)
            return httpx.Response(200, json={})
        if isinstance(behavior, int):
            return httpx.Response(behavior, text="backend exploded")
        if isinstance(behavior, Exception):
            raise behavior
        return httpx.Response(200, json=behavior)

    def calls_to(self, path: str) -> list[tuple[str, str, Optional[dict]]]:
        return [call for call in self.requests if call[1] == path]


def answer_body(member_id: str, text: str, latency_ms: int = 12) -> dict:
    return {
        "member_id": member_id,
        "answer_text": text,
        "latency_ms": latency_ms,
        "token_usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
    }


def review_body(member_id: str, rankings: list[str], confidence: float = 0.8) -> dict:
    return {
        "member_id": member_id,
        "rankings": rankings,
        "critiques": {anon_id: f"critique of {anon_id}" for anon_id in rankings},
        "confidence": confidence,
        "latency_ms": 7,
    }


def synthesis_body() -> dict:
    return {
        "chairman_id": "chairman-1",
        "final_answer": "The council agrees.",
        "rationale": "A was ranked highest.",
        "used_signals": {"top_ranked": ["A"], "disagreements": [], "notes": ["unanimous"]},
        "latency_ms": 40,
    }


@pytest.fixture
def fake_council():
    return FakeCouncil()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def settings():
    return Settings(
        member_urls=[MEMBER_A, MEMBER_B, MEMBER_C],
        chairman_url=CHAIRMAN,
        timeout_ms=500,
        heartbeat_interval_ms=60000,
        heartbeat_timeout_ms=500,
        persistence_enabled=True,
    )
