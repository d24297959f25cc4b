from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from app.models.council import RankingEntry, TokenUsage, UsedSignals


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BackendFailure(BaseModel):
    status: Literal["error"] = "error"
    error: str
    error_type: Optional[str] = None
    latency_ms: Optional[int] = None


class MemberAnswer(BaseModel):
    status: Literal["ok"] = "ok"
    answer_text: str
    latency_ms: int
    token_usage: Optional[TokenUsage] = None


class MemberReview(BaseModel):
    status: Literal["ok"] = "ok"
    rankings: List[str] = Field(default_factory=list)
    critiques: Dict[str, str] = Field(default_factory=dict)
    confidence: float
    latency_ms: int
    token_usage: Optional[TokenUsage] = None


class ChairmanSynthesis(BaseModel):
    status: Literal["ok"] = "ok"
    chairman_url: str
    chairman_id: str
    final_answer: str
    rationale: str
    used_signals: UsedSignals = Field(default_factory=UsedSignals)
    latency_ms: int
    token_usage: Optional[TokenUsage] = None


class ChairmanFailure(BaseModel):
    status: Literal["error"] = "error"
    chairman_url: str
    error: str
    error_type: Optional[str] = None


AnswerOutcome = Annotated[Union[MemberAnswer, BackendFailure], Field(discriminator="status")]
ReviewOutcome = Annotated[Union[MemberReview, BackendFailure], Field(discriminator="status")]
Stage3Outcome = Annotated[Union[ChairmanSynthesis, ChairmanFailure], Field(discriminator="status")]


class Stage1State(BaseModel):
    answers_by_url: Dict[str, AnswerOutcome] = Field(default_factory=dict)
    anon_map: Dict[str, str] = Field(default_factory=dict)


class Stage2State(BaseModel):
    reviews_by_url: Dict[str, ReviewOutcome] = Field(default_factory=dict)
    aggregated_ranking: Optional[List[RankingEntry]] = None


class RequestState(BaseModel):
    request_id: str
    query: str
    created_at: str = Field(default_factory=utc_now_iso)
    stage1: Stage1State = Field(default_factory=Stage1State)
    stage2: Stage2State = Field(default_factory=Stage2State)
    stage3: Optional[Stage3Outcome] = None


class RunSummary(BaseModel):
    request_id: str
    created_at: str
    query: str
