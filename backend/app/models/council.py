"""
Council Wire Contract - Pydantic models for member and chairman payloads.

This module defines the JSON contract spoken with the backend services.
Every payload received from a member or the chairman is validated into one
of these models at the client boundary; nothing untyped travels further.

Responsibilities:
- Define request bodies sent to members and the chairman
- Define response bodies received from them
- Enforce structural constraints (ranges, non-negative counters)
- NO transport logic
- NO orchestration logic
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class StageOptions(BaseModel):
    """Per-stage generation options forwarded to backends. Unknown keys are dropped."""
    temperature: Optional[float] = Field(
        default=None,
        description="Sampling temperature requested for this stage"
    )

    model_config = ConfigDict(extra="ignore")


class TokenUsage(BaseModel):
    """Token accounting reported by a backend."""
    prompt_tokens: int = Field(..., ge=0)
    completion_tokens: int = Field(..., ge=0)
    total_tokens: int = Field(..., ge=0)


# =============================================================================
# HEALTH
# =============================================================================

class HealthResponse(BaseModel):
    """
    Body of GET /health on a member or the chairman.

    Members report `member_id`, the chairman reports `chairman_id`; newer
    services report a plain `id`. All are kept so the raw payload survives.
    """
    ok: bool
    id: Optional[str] = None
    member_id: Optional[str] = None
    chairman_id: Optional[str] = None
    model_name: Optional[str] = None
    backend_url: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="allow")


# =============================================================================
# MEMBER: ANSWER
# =============================================================================

class AnswerRequest(BaseModel):
    request_id: str
    query: str
    options: Optional[StageOptions] = None


class AnswerResponse(BaseModel):
    member_id: str
    answer_text: str
    latency_ms: Optional[int] = Field(default=None, ge=0)
    token_usage: Optional[TokenUsage] = None


# =============================================================================
# MEMBER: REVIEW
# =============================================================================

class PeerAnswer(BaseModel):
    """An answer as seen by a reviewer: label and text, never the source."""
    anon_id: str
    answer_text: str


class ReviewRequest(BaseModel):
    request_id: str
    query: str
    peer_answers: List[PeerAnswer]
    options: Optional[StageOptions] = None


class ReviewResponse(BaseModel):
    member_id: str
    rankings: List[str] = Field(default_factory=list)
    critiques: Dict[str, str] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)
    latency_ms: Optional[int] = Field(default=None, ge=0)
    token_usage: Optional[TokenUsage] = None


# =============================================================================
# CHAIRMAN: SYNTHESIZE
# =============================================================================

class RankingEntry(BaseModel):
    anon_id: str
    score: int


class ChairmanReview(BaseModel):
    """A successful review, tagged with the reviewer's anonymous label."""
    reviewer_anon: Optional[str] = None
    rankings: List[str] = Field(default_factory=list)
    critiques: Dict[str, str] = Field(default_factory=dict)
    confidence: Optional[float] = None


class SynthesizeRequest(BaseModel):
    request_id: str
    query: str
    answers: List[PeerAnswer]
    reviews: List[ChairmanReview]
    aggregated_ranking: List[RankingEntry]
    options: Optional[StageOptions] = None


class UsedSignals(BaseModel):
    top_ranked: List[str] = Field(default_factory=list)
    disagreements: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class SynthesizeResponse(BaseModel):
    chairman_id: str
    final_answer: str
    rationale: str
    used_signals: UsedSignals = Field(default_factory=UsedSignals)
    latency_ms: Optional[int] = Field(default=None, ge=0)
    token_usage: Optional[TokenUsage] = None


def dump_payload(model: BaseModel) -> Dict[str, Any]:
    """Serialize a request model for the wire, omitting unset optionals."""
    return model.model_dump(mode="json", exclude_none=True)
