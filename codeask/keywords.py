"""Keyword extraction shared by answer relevance checks and history recall."""

import re

STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will
    would could should may might can shall to of in for on with at by from
    as into through about this that and or but not so if then than too very
    just how where what which who when why all each every some any its it
    you your we our they their i me my change adding using make use
    """.split()
)

_NON_WORD_RE = re.compile(r"[^a-z0-9\s_.-]")


def tokenize(text: str) -> list[str]:
    """Lowercase, drop punctuation and stop words, keep tokens over 2 chars.

    Dots, dashes and underscores survive inside a token (``config.ts``,
    ``load_config``) but are stripped from its ends.
    """
    cleaned = _NON_WORD_RE.sub(" ", (text or "").lower())
    words = (w.strip("._-") for w in cleaned.split())
    return [w for w in words if len(w) > 2 and w not in STOP_WORDS]


def keyword_overlap(query_tokens: list[str], target_tokens: list[str]) -> float:
    """Jaccard-style overlap: shared tokens over the union, in [0, 1]."""
    if not query_tokens or not target_tokens:
        return 0.0
    query = set(query_tokens)
    target = set(target_tokens)
    return len(query & target) / len(query | target)
