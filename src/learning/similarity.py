"""Textual near-duplicate detection using an edit-distance ratio."""

import re

DEFAULT_SIMILARITY_THRESHOLD = 0.85

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_text(text: str) -> str:
    """Lowercase, trim, collapse whitespace and strip punctuation."""
    text = _WHITESPACE.sub(" ", (text or "").lower().strip())
    return _PUNCTUATION.sub("", text)


def levenshtein_distance(a: str, b: str) -> int:
    """Minimum single-character edits turning a into b."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity_score(a: str, b: str) -> float:
    """Edit-distance ratio in [0, 1]; 1.0 means identical."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    distance = levenshtein_distance(a.lower(), b.lower())
    return 1 - distance / max(len(a), len(b))


def is_similar(a: str, b: str, threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> bool:
    """True when normalized texts are identical or their ratio meets threshold."""
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if norm_a == norm_b:
        return True
    return similarity_score(norm_a, norm_b) >= threshold


def find_best_match(
    target: str, candidates: list[str], threshold: float = DEFAULT_SIMILARITY_THRESHOLD
) -> tuple[str, float] | None:
    """Return (candidate, score) for the closest candidate at or above threshold."""
    norm_target = normalize_text(target)
    best: str | None = None
    best_score = 0.0
    for candidate in candidates:
        score = similarity_score(norm_target, normalize_text(candidate))
        if score > best_score:
            best, best_score = candidate, score
    if best is not None and best_score >= threshold:
        return best, best_score
    return None
