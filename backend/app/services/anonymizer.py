"""
Anonymizer - Deterministic anonymous labels for stage-1 answers.

Labels are assigned from the sorted order of member URLs, never from the
order in which calls completed, so the same set of successful members always
yields the same anon_map.

Labels: A..Z for the first 26 answers, then A27, A28, ...
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from app.models.council import PeerAnswer


@dataclass(frozen=True)
class AnonymizedAnswer:
    anon_id: str
    answer_text: str
    member_url: str


@dataclass(frozen=True)
class AnonymizeResult:
    """
    Output of anonymize_answers().

    answers: anonymized answers in label order
    anon_map: label -> member URL
    """
    answers: List[AnonymizedAnswer]
    anon_map: Dict[str, str] = field(default_factory=dict)


def index_to_anon_id(index: int) -> str:
    if index < 26:
        return chr(ord("A") + index)
    return f"A{index + 1}"


def anonymize_answers(answers: Iterable[Tuple[str, str]]) -> AnonymizeResult:
    """
    Assign anonymous labels to successful answers.

    Args:
        answers: (member_url, answer_text) pairs from successful stage-1 calls

    Returns:
        AnonymizeResult with answers in label order and the label -> URL map
    """
    ordered = sorted(answers, key=lambda pair: pair[0])

    anonymized: List[AnonymizedAnswer] = []
    anon_map: Dict[str, str] = {}
    for index, (member_url, answer_text) in enumerate(ordered):
        anon_id = index_to_anon_id(index)
        anon_map[anon_id] = member_url
        anonymized.append(
            AnonymizedAnswer(anon_id=anon_id, answer_text=answer_text, member_url=member_url)
        )

    return AnonymizeResult(answers=anonymized, anon_map=anon_map)


def peer_answers_for(answers: List[AnonymizedAnswer], member_url: str) -> List[PeerAnswer]:
    """Every answer except the reviewer's own, labels only."""
    return [
        PeerAnswer(anon_id=answer.anon_id, answer_text=answer.answer_text)
        for answer in answers
        if answer.member_url != member_url
    ]

