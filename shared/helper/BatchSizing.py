"""Dynamic upsert batch sizing.

Larger source documents produce more and denser chunks per request, so they
are written in smaller batches to keep each request under the store's payload
limit.
"""

from shared.models.config import PerformanceProfile


def upsert_batch_size_for(document_size: int | None, profile: PerformanceProfile) -> int:
    """Pick the upsert batch size for a document of the given size.

    The tier with the highest ``min_chars`` strictly below ``document_size``
    wins (a ``min_chars`` of 0 matches any size). The result never exceeds the
    profile's ``upsert_batch_size`` and is at least 1.

    Args:
        document_size: Length of the document text in characters, or None if unknown.
        profile: The active performance profile.

    Returns:
        int: The number of points per upsert request.
    """
    cap = profile.upsert_batch_size
    if document_size is None:
        return cap
    chosen: int | None = None
    for tier in sorted(profile.upsert_batch_tiers, key=lambda t: t.min_chars):
        if tier.min_chars == 0 or document_size > tier.min_chars:
            chosen = tier.batch_size
    if chosen is None:
        chosen = cap
    return max(1, min(chosen, cap))
