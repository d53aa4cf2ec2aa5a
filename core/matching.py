"""
Fuzzy matching of customer and vendor hints against known counterparties.
Uses Levenshtein similarity over normalized names.

Scoring is pure and deterministic: identical hints and counterparty lists
always produce the same ranking.
"""
import re
from enum import Enum
from typing import List, Optional, Sequence, Union

import Levenshtein
from pydantic import BaseModel, Field

from core.logger import setup_logger
from core.schema import MatchCandidate

logger = setup_logger(__name__)

CounterpartyId = Union[int, str]


class MatchStatus(str, Enum):
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    UNMATCHED = "unmatched"


class CounterpartyMatch(BaseModel):
    """Result of resolving one counterparty hint."""
    status: MatchStatus
    match: Optional[MatchCandidate] = None
    candidates: List[MatchCandidate] = Field(default_factory=list)
    exact_id: bool = False


def normalize_string(text: Optional[str]) -> str:
    """
    Normalize string for matching: lowercase, drop punctuation, collapse spaces.

    Args:
        text: Input string

    Returns:
        Normalized string
    """
    if not text or not isinstance(text, str):
        return ""

    text = re.sub(r"[^\w\s]", " ", text.lower())
    return " ".join(text.split())


def calculate_similarity(s1: str, s2: str) -> float:
    """
    Calculate similarity between two names.

    The score is the best of the Levenshtein ratio over the normalized
    strings and over their alphabetically sorted tokens, so that
    "Smith, John" and "John Smith" compare equal.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Similarity score (0.0 to 1.0)
    """
    s1_norm = normalize_string(s1)
    s2_norm = normalize_string(s2)

    if not s1_norm or not s2_norm:
        return 0.0

    direct = Levenshtein.ratio(s1_norm, s2_norm)
    sorted_tokens = Levenshtein.ratio(
        " ".join(sorted(s1_norm.split())),
        " ".join(sorted(s2_norm.split())),
    )
    return round(max(direct, sorted_tokens), 6)


def _id_key(value: CounterpartyId) -> str:
    return str(value).strip().lower()


def match_counterparty(
    known: Sequence[BaseModel],
    id_hint: Optional[str] = None,
    name_hint: Optional[str] = None,
    threshold: float = 0.85,
    tie_margin: float = 0.05,
    kind: str = "counterparty",
) -> CounterpartyMatch:
    """
    Resolve a counterparty from an id hint or a free-text name hint.

    An id hint, or a name hint equal to a known id, wins exactly. Otherwise
    every known name is scored; candidates at or above the threshold are
    kept. When the top two kept scores differ by less than the tie margin
    the result is ambiguous and lists every candidate within the margin of
    the top score.

    Args:
        known: Known counterparties (objects with id and name)
        id_hint: Explicit id supplied by extraction or the caller
        name_hint: Free-text name
        threshold: Minimum similarity to accept a name match
        tie_margin: Minimum lead the best match needs over the runner-up
        kind: Label used in log messages

    Returns:
        CounterpartyMatch
    """
    by_id = {_id_key(item.id): item for item in known}

    for hint in (id_hint, name_hint):
        if hint is not None and _id_key(hint) in by_id:
            item = by_id[_id_key(hint)]
            logger.debug(f"{kind} resolved by exact id: {item.id}")
            return CounterpartyMatch(
                status=MatchStatus.MATCHED,
                match=MatchCandidate(id=item.id, name=item.name, score=1.0),
                exact_id=True,
            )

    if id_hint is not None:
        logger.info(f"{kind} id hint '{id_hint}' does not match any known record")

    if not name_hint or not normalize_string(name_hint):
        return CounterpartyMatch(status=MatchStatus.UNMATCHED)

    scored = [
        MatchCandidate(id=item.id, name=item.name, score=calculate_similarity(name_hint, item.name))
        for item in known
    ]
    cleared = [c for c in scored if c.score >= threshold]
    cleared.sort(key=lambda c: (-c.score, str(c.id)))

    if not cleared:
        logger.debug(f"No {kind} cleared threshold {threshold} for '{name_hint}'")
        return CounterpartyMatch(status=MatchStatus.UNMATCHED)

    best = cleared[0]
    if len(cleared) > 1 and best.score - cleared[1].score < tie_margin:
        tied = [c for c in cleared if best.score - c.score < tie_margin]
        logger.info(
            f"Ambiguous {kind} for '{name_hint}': "
            + ", ".join(f"{c.name} ({c.id}, score={c.score:.2f})" for c in tied)
        )
        return CounterpartyMatch(status=MatchStatus.AMBIGUOUS, candidates=tied)

    logger.debug(f"{kind} '{name_hint}' matched {best.name} ({best.id}, score={best.score:.2f})")
    return CounterpartyMatch(status=MatchStatus.MATCHED, match=best, candidates=cleared[:3])
