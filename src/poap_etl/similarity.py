"""poap_etl.similarity

Edit-distance similarity between canonical names.

    similarity(a, b) = 1 - levenshtein(a, b) / max(len(a), len(b))

Both empty → 1.0; exactly one empty → 0.0.  Pure and symmetric.
"""

from __future__ import annotations


def edit_distance(a: str, b: str) -> int:
    """Unit-cost Levenshtein distance (insert / delete / substitute)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        curr = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            curr[j] = min(
                prev[j] + 1,         # deletion
                curr[j - 1] + 1,     # insertion
                prev[j - 1] + cost,  # substitution
            )
        prev = curr
    return prev[len(b)]


def similarity(a: str, b: str) -> float:
    """Return a similarity score in [0.0, 1.0]; 1.0 means identical."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 1.0 - edit_distance(a, b) / max(len(a), len(b))
