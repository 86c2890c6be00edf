"""Rule-based classification of RFV score triples into strategic segments."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from customer_rfv.foundation.columns import fold_label


class Segment(str, Enum):
    """Strategic customer segments, declared in display priority order."""

    CHAMPIONS = "Champions"
    LOYAL = "Loyal"
    POTENTIAL = "Potential"
    AT_RISK = "At Risk"
    HIBERNATING = "Hibernating"
    LOST = "Lost"

    @property
    def priority(self) -> int:
        """Display rank, 1 (Champions) to 6 (Lost). Not used for classification."""
        return list(Segment).index(self) + 1

    @property
    def criteria(self) -> str:
        return SEGMENT_CRITERIA[self]


SEGMENT_CRITERIA = {
    Segment.CHAMPIONS: "R: 4-5 | F: 4-5 | V: 4-5",
    Segment.LOYAL: "R: 3-5 | F: 3-5 | V: 3-5",
    Segment.POTENTIAL: "R: 4-5 | F: 1-3 | V: 1-3",
    Segment.AT_RISK: "R: 1-2 | F: 3-5 | V: 3-5",
    Segment.HIBERNATING: "R: 1-2 | F: 1-2 | V: 2-4",
    Segment.LOST: "everything else",
}

# Substrings of folded labels, most specific first ("potenciais leais" must
# win over "leais").
SEGMENT_SYNONYMS: tuple[tuple[str, Segment], ...] = (
    ("potenciais leais", Segment.POTENTIAL),
    ("potencia", Segment.POTENTIAL),
    ("potential", Segment.POTENTIAL),
    ("novos", Segment.POTENTIAL),
    ("new customer", Segment.POTENTIAL),
    ("promissor", Segment.POTENTIAL),
    ("promising", Segment.POTENTIAL),
    ("nao podem perder", Segment.AT_RISK),
    ("cant lose", Segment.AT_RISK),
    ("precisam atencao", Segment.AT_RISK),
    ("attention", Segment.AT_RISK),
    ("em risco", Segment.AT_RISK),
    ("at risk", Segment.AT_RISK),
    ("quase dormindo", Segment.HIBERNATING),
    ("about to sleep", Segment.HIBERNATING),
    ("hibern", Segment.HIBERNATING),
    ("campe", Segment.CHAMPIONS),
    ("champion", Segment.CHAMPIONS),
    ("leais", Segment.LOYAL),
    ("fieis", Segment.LOYAL),
    ("fiel", Segment.LOYAL),
    ("loyal", Segment.LOYAL),
    ("perdido", Segment.LOST),
    ("lost", Segment.LOST),
)


def classify_segment(recency: int, frequency: int, value: int) -> Segment:
    """Map an (R, F, V) triple to a segment; first matching rule wins.

    Triples matching none of the first five rules fall through to
    :attr:`Segment.LOST`, including ones such as (3, 2, 2).

    Examples
    --------
    >>> classify_segment(5, 5, 5)
    <Segment.CHAMPIONS: 'Champions'>
    >>> classify_segment(1, 1, 1)
    <Segment.LOST: 'Lost'>
    """
    if recency >= 4 and frequency >= 4 and value >= 4:
        return Segment.CHAMPIONS
    if recency >= 3 and frequency >= 3 and value >= 3:
        return Segment.LOYAL
    if recency >= 4 and frequency <= 3 and value <= 3:
        return Segment.POTENTIAL
    if recency <= 2 and frequency >= 3 and value >= 3:
        return Segment.AT_RISK
    if recency <= 2 and frequency <= 2 and 2 <= value <= 4:
        return Segment.HIBERNATING
    return Segment.LOST


def match_segment_label(label: Optional[str]) -> Optional[Segment]:
    """Fuzzy-match a pre-computed segment label (any language) to a segment.

    Returns None for blank or unrecognised labels.

    >>> match_segment_label("Potenciais Leais")
    <Segment.POTENTIAL: 'Potential'>
    >>> match_segment_label("Quase Dormindo")
    <Segment.HIBERNATING: 'Hibernating'>
    """
    if not label:
        return None
    text = fold_label(label).replace("_", " ").replace("'", "")
    for synonym, segment in SEGMENT_SYNONYMS:
        if synonym in text:
            return segment
    return None


def resolve_segment(
    recency: int, frequency: int, value: int, override: Optional[str] = None
) -> Segment:
    """Return the override segment when recognised, else the classified one."""
    computed = classify_segment(recency, frequency, value)
    return match_segment_label(override) or computed
