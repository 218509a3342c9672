"""Edit-distance string similarity.

Used only by the message-similarity backport strategy, the evidence of last
resort.
"""


def levenshtein(a: str, b: str) -> int:
    """Unit-cost insert/delete/substitute distance, two-row DP."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cur.append(min(
                prev[j] + 1,
                cur[j - 1] + 1,
                prev[j - 1] + (ca != cb),
            ))
        prev = cur
    return prev[-1]


def similarity(a: str, b: str) -> float:
    """Return ``1 - distance / max(len(a), len(b))`` in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest
