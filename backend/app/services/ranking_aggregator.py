"""
Ranking Aggregator - Borda-style combination of peer rankings.

For one reviewer, after unknown labels are dropped and duplicates collapsed
to their first occurrence, the label at position i of a list of length k
earns k - i points. Labels a reviewer leaves out earn nothing from it.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from app.models.council import RankingEntry


def _filter_ranking(ranking: Iterable[str], known: Dict[str, int]) -> List[str]:
    seen: set[str] = set()
    filtered: List[str] = []
    for anon_id in ranking:
        if anon_id not in known or anon_id in seen:
            continue
        seen.add(anon_id)
        filtered.append(anon_id)
    return filtered


def aggregate_rankings(
    rankings: Iterable[Optional[Sequence[str]]],
    known_anon_ids: Iterable[str],
) -> List[RankingEntry]:
    """
    Combine per-reviewer rankings into one score table.

    Args:
        rankings: one ordered list of labels per successful reviewer, best first
        known_anon_ids: every label assigned in stage 1

    Returns:
        One entry per known label, score descending, ties by label ascending
    """
    scores: Dict[str, int] = {anon_id: 0 for anon_id in known_anon_ids}

    for ranking in rankings:
        if not ranking:
            continue
        filtered = _filter_ranking(ranking, scores)
        total = len(filtered)
        for index, anon_id in enumerate(filtered):
            scores[anon_id] += total - index

    ordered = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    return [RankingEntry(anon_id=anon_id, score=score) for anon_id, score in ordered]
