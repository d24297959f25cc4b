"""
Heartbeat Monitor - Background liveness probes for every council backend.

Runs on its own asyncio task, decoupled from request traffic. Each round
probes all members and the chairman concurrently. Rounds are single-flight:
a round that comes due while another is still running is skipped, not queued.

Status records are immutable and replaced whole, so a snapshot never
contains a half-updated record.
"""

import asyncio
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from app.pipeline.run_state import utc_now_iso
from app.services.backend_client import BackendClient, CallFailure

logger = logging.getLogger(__name__)


class HeartbeatStatus(BaseModel):
    status: Literal["unknown", "ok", "error"] = "unknown"
    last_checked_at: Optional[str] = None
    last_ok_at: Optional[str] = None
    last_error_at: Optional[str] = None
    last_latency_ms: Optional[int] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_response: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(frozen=True)

    def mark_ok(self, latency_ms: int, response: Dict[str, Any]) -> "HeartbeatStatus":
        now = utc_now_iso()
        return self.model_copy(update={
            "status": "ok",
            "last_checked_at": now,
            "last_ok_at": now,
            "last_latency_ms": latency_ms,
            "consecutive_failures": 0,
            "last_error": None,
            "last_response": response,
        })

    def mark_error(self, latency_ms: Optional[int], message: str) -> "HeartbeatStatus":
        now = utc_now_iso()
        return self.model_copy(update={
            "status": "error",
            "last_checked_at": now,
            "last_error_at": now,
            "last_latency_ms": latency_ms,
            "consecutive_failures": self.consecutive_failures + 1,
            "last_error": message,
        })


class HeartbeatMonitor:
    """
    Periodic health poller.

    Usage:
        monitor = HeartbeatMonitor(client, member_urls, chairman_url)
        monitor.start()          # first round runs immediately
        snapshot = monitor.snapshot()
        monitor.stop()
    """

    def __init__(
        self,
        client: BackendClient,
        member_urls: List[str],
        chairman_url: str,
        interval_ms: int = 15000,
        timeout_ms: int = 5000,
    ):
        self._client = client
        self._member_urls = list(member_urls)
        self._chairman_url = chairman_url
        self.interval_ms = interval_ms
        self.timeout_ms = timeout_ms

        self._members: Dict[str, HeartbeatStatus] = {
            url: HeartbeatStatus() for url in self._member_urls
        }
        self._chairman = HeartbeatStatus()
        self._updated_at = utc_now_iso()

        self._round_in_flight = False
        self._scheduler: Optional[asyncio.Task] = None
        self._rounds: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    def start(self) -> None:
        """Start polling. Must be called from inside a running event loop."""
        if self.running:
            return
        self._scheduler = asyncio.get_running_loop().create_task(self._schedule())
        logger.info(
            f"Heartbeat monitor started: {len(self._member_urls)} member(s), "
            f"interval={self.interval_ms}ms timeout={self.timeout_ms}ms"
        )

    def stop(self) -> None:
        """Cancel the interval. Probes already in flight are left to finish."""
        if self._scheduler is not None:
            self._scheduler.cancel()
            self._scheduler = None
            logger.info("Heartbeat monitor stopped")

    async def _schedule(self) -> None:
        while True:
            if not self._round_in_flight:
                task = asyncio.get_running_loop().create_task(self.run_round())
                self._rounds.add(task)
                task.add_done_callback(self._rounds.discard)
            else:
                logger.debug("Heartbeat round still in flight, skipping")
            await asyncio.sleep(self.interval_ms / 1000)

    async def run_round(self) -> bool:
        """
        Probe every backend once.

        Returns False without probing if another round is in progress.
        """
        if self._round_in_flight:
            return False
        self._round_in_flight = True
        try:
            await asyncio.gather(
                *(self._probe_member(url) for url in self._member_urls),
                self._probe_chairman(),
            )
            self._updated_at = utc_now_iso()
        finally:
            self._round_in_flight = False
        return True

    async def _probe(self, url: str, previous: HeartbeatStatus) -> HeartbeatStatus:
        result = await self._client.health(url, self.timeout_ms)
        if isinstance(result, CallFailure):
            if previous.consecutive_failures == 0:
                logger.warning(f"Heartbeat failed for {url}: {result.message}")
            return previous.mark_error(result.latency_ms, result.message)

        if previous.status == "error":
            logger.info(f"Heartbeat recovered for {url} after {previous.consecutive_failures} failure(s)")
        return previous.mark_ok(result.latency_ms, result.data.model_dump(exclude_none=True))

    async def _probe_member(self, url: str) -> None:
        self._members[url] = await self._probe(url, self._members[url])

    async def _probe_chairman(self) -> None:
        self._chairman = await self._probe(self._chairman_url, self._chairman)

    def member_status(self, url: str) -> HeartbeatStatus:
        return self._members[url]

    def chairman_status(self) -> HeartbeatStatus:
        return self._chairman

    def snapshot(self) -> Dict[str, Any]:
        members = dict(self._members)
        return {
            "interval_ms": self.interval_ms,
            "timeout_ms": self.timeout_ms,
            "updated_at": self._updated_at,
            "members": {url: status.model_dump() for url, status in members.items()},
            "chairman": {
                "url": self._chairman_url,
                "status": self._chairman.model_dump(),
            },
        }
