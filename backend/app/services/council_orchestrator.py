"""
Council Orchestrator

RESPONSIBILITIES:
1. Stage 1: fan out `answer` to every member, anonymize successes, persist
2. Stage 2: fan out `review` to every answering member with its peer view,
   aggregate the rankings, persist
3. Stage 3: send everything to the chairman once, persist the outcome
4. Serve run lookups, listings, deletions and health views

Each stage is triggered by an explicit call; nothing advances on its own.
A failed backend call is recorded against that backend and the stage
completes with whatever subset succeeded. Only the precondition checks
abort a stage.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.config import Settings
from app.models.council import (
    AnswerRequest,
    ChairmanReview,
    PeerAnswer,
    ReviewRequest,
    StageOptions,
    SynthesizeRequest,
)
from app.pipeline.run_state import (
    AnswerOutcome,
    BackendFailure,
    ChairmanFailure,
    ChairmanSynthesis,
    MemberAnswer,
    MemberReview,
    RequestState,
    ReviewOutcome,
    Stage1State,
    Stage2State,
    utc_now_iso,
)
from app.pipeline.state_store import RunStore
from app.services.anonymizer import AnonymizedAnswer, anonymize_answers, peer_answers_for
from app.services.backend_client import BackendClient, CallFailure, CallResult
from app.services.council_errors import (
    InsufficientAnswersError,
    InvalidRequestError,
    MissingRankingError,
    NoAnswersError,
    RunNotFoundError,
)
from app.services.heartbeat_monitor import HeartbeatMonitor
from app.services.ranking_aggregator import aggregate_rankings


# =============================================================================
# LOGGING
# =============================================================================

logger = logging.getLogger(__name__)

MIN_ANSWERS_FOR_REVIEW = 2


# =============================================================================
# RUN STATUS
# =============================================================================

class RunStatus:
    """
    Where a run stands, derived from its persisted state.

    The *_error statuses end one attempt, not the run: the stage can be
    triggered again and its result is overwritten.
    """
    CREATED = "created"
    STAGE1_DONE = "stage1_done"
    STAGE1_ERROR = "stage1_error"
    STAGE2_DONE = "stage2_done"
    STAGE2_ERROR = "stage2_error"
    STAGE3_DONE = "stage3_done"
    STAGE3_ERROR = "stage3_error"


def run_status(state: RequestState) -> str:
    if state.stage3 is not None:
        return RunStatus.STAGE3_DONE if state.stage3.status == "ok" else RunStatus.STAGE3_ERROR

    if state.stage2.aggregated_ranking is not None:
        reviews = state.stage2.reviews_by_url.values()
        if any(review.status == "ok" for review in reviews):
            return RunStatus.STAGE2_DONE
        return RunStatus.STAGE2_ERROR

    if state.stage1.answers_by_url:
        answers = state.stage1.answers_by_url.values()
        if any(answer.status == "ok" for answer in answers):
            return RunStatus.STAGE1_DONE
        return RunStatus.STAGE1_ERROR

    return RunStatus.CREATED


# =============================================================================
# STATE HELPERS
# =============================================================================

def answers_from_state(state: RequestState) -> List[AnonymizedAnswer]:
    """
    Rebuild the anonymized answer list from persisted state.

    Labels were assigned in member URL order, so sorting by URL restores
    label order regardless of how the map was serialized.
    """
    answers: List[AnonymizedAnswer] = []
    for anon_id, member_url in state.stage1.anon_map.items():
        stored = state.stage1.answers_by_url.get(member_url)
        if isinstance(stored, MemberAnswer):
            answers.append(
                AnonymizedAnswer(anon_id=anon_id, answer_text=stored.answer_text, member_url=member_url)
            )
    answers.sort(key=lambda answer: answer.member_url)
    return answers


def reviews_for_chairman(state: RequestState) -> List[ChairmanReview]:
    """Successful reviews, tagged with the reviewer's own anonymous label."""
    anon_by_url = {member_url: anon_id for anon_id, member_url in state.stage1.anon_map.items()}
    reviews: List[Tuple[str, ChairmanReview]] = []
    for reviewer_url, outcome in state.stage2.reviews_by_url.items():
        if not isinstance(outcome, MemberReview):
            continue
        reviews.append((
            reviewer_url,
            ChairmanReview(
                reviewer_anon=anon_by_url.get(reviewer_url),
                rankings=outcome.rankings,
                critiques=outcome.critiques,
                confidence=outcome.confidence,
            ),
        ))
    reviews.sort(key=lambda item: item[0])
    return [review for _, review in reviews]


def _failure(result: CallFailure) -> BackendFailure:
    return BackendFailure(
        error=result.message,
        error_type=result.error_type,
        latency_ms=result.latency_ms,
    )


# =============================================================================
# RESPONSE VIEWS
# =============================================================================

def stage1_view(state: RequestState, member_order: List[str]) -> Dict[str, Any]:
    anon_by_url = {member_url: anon_id for anon_id, member_url in state.stage1.anon_map.items()}
    order = list(member_order) + [
        url for url in state.stage1.answers_by_url if url not in member_order
    ]

    answers = []
    for member_url in order:
        stored = state.stage1.answers_by_url.get(member_url)
        if stored is None:
            continue
        if isinstance(stored, MemberAnswer):
            answers.append({
                "anon_id": anon_by_url.get(member_url, ""),
                "answer_text": stored.answer_text,
                "member_url": member_url,
                "latency_ms": stored.latency_ms,
                "token_usage": stored.token_usage.model_dump() if stored.token_usage else None,
                "status": "ok",
            })
        else:
            answers.append({
                "anon_id": "",
                "answer_text": "",
                "member_url": member_url,
                "status": "error",
                "error": stored.error,
            })
    return {"answers": answers}


def stage2_view(state: RequestState) -> Dict[str, Any]:
    reviews = []
    for reviewer_url, outcome in state.stage2.reviews_by_url.items():
        if isinstance(outcome, MemberReview):
            reviews.append({
                "reviewer_url": reviewer_url,
                "status": "ok",
                "rankings": outcome.rankings,
                "critiques": outcome.critiques,
                "confidence": outcome.confidence,
                "latency_ms": outcome.latency_ms,
                "token_usage": outcome.token_usage.model_dump() if outcome.token_usage else None,
            })
        else:
            reviews.append({
                "reviewer_url": reviewer_url,
                "status": "error",
                "error": outcome.error or "Review failed",
            })

    ranking = state.stage2.aggregated_ranking or []
    return {
        "reviews": reviews,
        "aggregated_ranking": [entry.model_dump() for entry in ranking],
    }


def stage3_view(state: RequestState) -> Dict[str, Any]:
    outcome = state.stage3
    if outcome is None:
        return {"status": "pending"}
    if isinstance(outcome, ChairmanSynthesis):
        return {
            "status": "ok",
            "chairman_id": outcome.chairman_id,
            "final_answer": outcome.final_answer,
            "rationale": outcome.rationale,
            "used_signals": outcome.used_signals.model_dump(),
            "latency_ms": outcome.latency_ms,
            "token_usage": outcome.token_usage.model_dump() if outcome.token_usage else None,
        }
    return {"status": "error", "error": outcome.error}


def run_view(state: RequestState, member_order: List[str]) -> Dict[str, Any]:
    return {
        "request_id": state.request_id,
        "query": state.query,
        "created_at": state.created_at,
        "status": run_status(state),
        "stage1": stage1_view(state, member_order),
        "stage2": stage2_view(state),
        "stage3": stage3_view(state),
    }


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class CouncilOrchestrator:
    """
    Drives the three council stages for one process.

    Usage:
        orchestrator = CouncilOrchestrator(settings, client, store, heartbeat)
        first = await orchestrator.run_stage1("What is entropy?")
        await orchestrator.run_stage2(first["request_id"])
        final = await orchestrator.run_stage3(first["request_id"])
    """

    def __init__(
        self,
        settings: Settings,
        client: BackendClient,
        store: RunStore,
        heartbeat: Optional[HeartbeatMonitor] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self._settings = settings
        self._client = client
        self._store = store
        self._heartbeat = heartbeat
        self._new_id = id_factory

    @property
    def member_urls(self) -> List[str]:
        return list(self._settings.member_urls)

    async def _require_state(self, request_id: str) -> RequestState:
        state = await self._store.get(request_id)
        if state is None:
            raise RunNotFoundError(request_id)
        return state

    # -------------------------------------------------------------------------
    # STAGE 1: Collect answers
    # -------------------------------------------------------------------------

    async def run_stage1(self, query: str, options: Optional[StageOptions] = None) -> Dict[str, Any]:
        if not query or not query.strip():
            raise InvalidRequestError("Query must not be empty")

        request_id = self._new_id()
        state = self._store.create(request_id, query)
        start_time = time.monotonic()
        logger.info(f"Stage 1 started for {request_id}: '{query[:100]}' ({len(self.member_urls)} member(s))")

        outcomes = await asyncio.gather(
            *(self._collect_answer(url, request_id, query, options) for url in self.member_urls)
        )

        successes = [
            (member_url, outcome.answer_text)
            for member_url, outcome in outcomes
            if isinstance(outcome, MemberAnswer)
        ]
        anonymized = anonymize_answers(successes)

        state.stage1 = Stage1State(
            answers_by_url=dict(outcomes),
            anon_map=anonymized.anon_map,
        )
        self._store.replace(state)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Stage 1 finished for {request_id} in {duration_ms}ms: "
            f"{len(successes)}/{len(outcomes)} answer(s)"
        )
        return {
            "request_id": request_id,
            "query": query,
            **stage1_view(state, self.member_urls),
        }

    async def _collect_answer(
        self,
        member_url: str,
        request_id: str,
        query: str,
        options: Optional[StageOptions],
    ) -> Tuple[str, AnswerOutcome]:
        request = AnswerRequest(request_id=request_id, query=query, options=options)
        result: CallResult = await self._client.answer(member_url, request, self._settings.timeout_ms)

        if isinstance(result, CallFailure):
            logger.warning(f"Answer from {member_url} failed ({result.error_type}): {result.message}")
            return member_url, _failure(result)

        data = result.data
        latency_ms = data.latency_ms if data.latency_ms is not None else result.latency_ms
        return member_url, MemberAnswer(
            answer_text=data.answer_text,
            latency_ms=latency_ms,
            token_usage=data.token_usage,
        )

    # -------------------------------------------------------------------------
    # STAGE 2: Peer review and ranking
    # -------------------------------------------------------------------------

    async def run_stage2(self, request_id: str, options: Optional[StageOptions] = None) -> Dict[str, Any]:
        state = await self._require_state(request_id)
        answers = answers_from_state(state)
        if len(answers) < MIN_ANSWERS_FOR_REVIEW:
            logger.warning(f"Stage 2 rejected for {request_id}: {len(answers)} answer(s)")
            raise InsufficientAnswersError(request_id, len(answers), MIN_ANSWERS_FOR_REVIEW)

        start_time = time.monotonic()
        logger.info(f"Stage 2 started for {request_id}: {len(answers)} reviewer(s)")

        outcomes = await asyncio.gather(
            *(
                self._collect_review(
                    answer.member_url,
                    peer_answers_for(answers, answer.member_url),
                    state,
                    options,
                )
                for answer in answers
            )
        )

        successful = [outcome for _, outcome in outcomes if isinstance(outcome, MemberReview)]
        aggregated = aggregate_rankings(
            [review.rankings for review in successful],
            [answer.anon_id for answer in answers],
        )

        state.stage2 = Stage2State(
            reviews_by_url=dict(outcomes),
            aggregated_ranking=aggregated,
        )
        self._store.replace(state)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Stage 2 finished for {request_id} in {duration_ms}ms: "
            f"{len(successful)}/{len(outcomes)} review(s)"
        )
        return {"request_id": request_id, **stage2_view(state)}

    async def _collect_review(
        self,
        member_url: str,
        peer_answers: List[PeerAnswer],
        state: RequestState,
        options: Optional[StageOptions],
    ) -> Tuple[str, ReviewOutcome]:
        request = ReviewRequest(
            request_id=state.request_id,
            query=state.query,
            peer_answers=peer_answers,
            options=options,
        )
        result: CallResult = await self._client.review(member_url, request, self._settings.timeout_ms)

        if isinstance(result, CallFailure):
            logger.warning(f"Review from {member_url} failed ({result.error_type}): {result.message}")
            return member_url, _failure(result)

        data = result.data
        latency_ms = data.latency_ms if data.latency_ms is not None else result.latency_ms
        return member_url, MemberReview(
            rankings=data.rankings,
            critiques=data.critiques,
            confidence=data.confidence,
            latency_ms=latency_ms,
            token_usage=data.token_usage,
        )

    # -------------------------------------------------------------------------
    # STAGE 3: Chairman synthesis
    # -------------------------------------------------------------------------

    async def run_stage3(self, request_id: str, options: Optional[StageOptions] = None) -> Dict[str, Any]:
        state = await self._require_state(request_id)
        answers = answers_from_state(state)
        if not answers:
            raise NoAnswersError(request_id)

        ranking = state.stage2.aggregated_ranking
        if not ranking:
            raise MissingRankingError(request_id)

        chairman_url = self._settings.chairman_url
        request = SynthesizeRequest(
            request_id=request_id,
            query=state.query,
            answers=[PeerAnswer(anon_id=a.anon_id, answer_text=a.answer_text) for a in answers],
            reviews=reviews_for_chairman(state),
            aggregated_ranking=ranking,
            options=options,
        )

        logger.info(f"Stage 3 started for {request_id}: chairman {chairman_url}")
        result: CallResult = await self._client.synthesize(chairman_url, request, self._settings.timeout_ms)

        if isinstance(result, CallFailure):
            logger.error(f"Synthesis for {request_id} failed ({result.error_type}): {result.message}")
            state.stage3 = ChairmanFailure(
                chairman_url=chairman_url,
                error=result.message,
                error_type=result.error_type,
            )
        else:
            data = result.data
            state.stage3 = ChairmanSynthesis(
                chairman_url=chairman_url,
                chairman_id=data.chairman_id,
                final_answer=data.final_answer,
                rationale=data.rationale,
                used_signals=data.used_signals,
                latency_ms=data.latency_ms if data.latency_ms is not None else result.latency_ms,
                token_usage=data.token_usage,
            )
            logger.info(f"Stage 3 finished for {request_id} by {data.chairman_id}")

        self._store.replace(state)
        return {"request_id": request_id, **stage3_view(state)}

    # -------------------------------------------------------------------------
    # RUN LOOKUPS
    # -------------------------------------------------------------------------

    async def get_run(self, request_id: str) -> Dict[str, Any]:
        state = await self._require_state(request_id)
        return run_view(state, self.member_urls)

    async def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [summary.model_dump() for summary in await self._store.list(limit)]

    def delete_run(self, request_id: str) -> None:
        self._store.delete(request_id)
        logger.info(f"Deleted run {request_id}")

    # -------------------------------------------------------------------------
    # HEALTH
    # -------------------------------------------------------------------------

    def get_heartbeat(self) -> Optional[Dict[str, Any]]:
        return self._heartbeat.snapshot() if self._heartbeat else None

    async def get_health(self) -> Dict[str, Any]:
        """Probe every backend now and attach the latest heartbeat snapshot."""
        timeout_ms = self._settings.timeout_ms
        chairman_url = self._settings.chairman_url

        results = await asyncio.gather(
            *(self._client.health(url, timeout_ms) for url in self.member_urls),
            self._client.health(chairman_url, timeout_ms),
        )
        member_results, chairman_result = results[:-1], results[-1]

        members = [
            {"member_url": url, **_health_entry(result)}
            for url, result in zip(self.member_urls, member_results)
        ]
        chairman = {"chairman_url": chairman_url, **_health_entry(chairman_result)}

        ok = all(m["status"] == "ok" for m in members) and chairman["status"] == "ok"
        return {
            "ok": ok,
            "members": members,
            "chairman": chairman,
            "timestamp": utc_now_iso(),
            "heartbeat": self.get_heartbeat(),
        }


def _health_entry(result: CallResult) -> Dict[str, Any]:
    if isinstance(result, CallFailure):
        return {"status": "error", "error": result.message}
    return {"status": "ok", "data": result.data.model_dump(exclude_none=True)}
