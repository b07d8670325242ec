"""Quality filter and per-source quota allocator.

Turns an arbitrarily large pile of scraped reviews into a bounded, ranked
sample: dedupe by text fingerprint, drop stale and out-of-band items, score
what is left, then keep the top N per source. Sources never borrow each
other's quota.
"""

import hashlib
import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .models import FilterStats, ReviewItem, Settings, StageCount
from .utils import utcnow

logger = logging.getLogger(__name__)


def fingerprint(text: str, chars: int = 200) -> str:
    return hashlib.sha1(text[:chars].encode("utf-8")).hexdigest()


def _count(items: List[ReviewItem]) -> StageCount:
    return StageCount(total=len(items), by_source=dict(Counter(i.source for i in items)))


def deduplicate(items: Iterable[ReviewItem], chars: int = 200) -> List[ReviewItem]:
    seen = set()
    out = []
    for item in items:
        key = fingerprint(item.text, chars)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def within_window(item: ReviewItem, now: datetime, settings: Settings) -> bool:
    if item.timestamp is None:
        return settings.retain_undated
    return now - item.timestamp <= timedelta(days=settings.window_days)


def _counter(item: ReviewItem, key: str) -> float:
    """Engagement counter from a review's extra data; anything non-numeric counts as 0."""
    value = item.extra.get(key)
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.debug("ignoring non-numeric %s=%r on review %s", key, value, item.id)
        return 0.0
    return max(number, 0.0) if math.isfinite(number) else 0.0


def quality_score(item: ReviewItem, app_name: str, now: datetime, settings: Settings) -> float:
    text = item.text
    lowered = text.lower()
    score = min(len(text) / 50, 20)

    if item.rating:
        score += item.rating * 2

    if item.timestamp is not None:
        days = (now - item.timestamp).total_seconds() / 86400
        if days < 30:
            score += 10
        elif days < 90:
            score += 5
        elif days < 365:
            score += 2

    if app_name and app_name.lower() in lowered:
        score += 5
    score += sum(1 for term in settings.review_terms if term in lowered)

    if item.source in settings.engagement_sources:
        score += min(_counter(item, "score") * 0.1, 10)
        score += min(_counter(item, "comment_count") * 0.2, 5)

    return score


def quota_for(source: str, settings: Settings) -> int:
    return settings.source_quotas.get(source, settings.default_source_quota)


def select_top(scored: List[Tuple[float, ReviewItem]], quota: int) -> List[ReviewItem]:
    # sorted() is stable, so equal scores keep input order
    ranked = sorted(scored, key=lambda pair: pair[0], reverse=True)
    return [item for _, item in ranked[:max(quota, 0)]]


def filter_reviews(
    items: Iterable,
    app_name: str,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Tuple[List[ReviewItem], FilterStats]:
    """Return the bounded, quality-ranked subset of `items` and per-stage counts.

    `items` may be ReviewItem instances or plain dicts in scraper shape.
    Output is grouped by source (first-appearance order), best first within
    each source. Deterministic for a fixed input and `now`.
    """
    settings = settings or Settings()
    now = now or utcnow()
    reviews = [i if isinstance(i, ReviewItem) else ReviewItem.model_validate(i) for i in items]
    stats = FilterStats(original=_count(reviews))

    unique = deduplicate(reviews, settings.fingerprint_chars)
    stats.deduplicated = _count(unique)

    recent = [i for i in unique if within_window(i, now, settings)]
    stats.time_filtered = _count(recent)

    banded = [i for i in recent if settings.min_text_length <= len(i.text) <= settings.max_text_length]
    stats.quality_filtered = _count(banded)

    groups: Dict[str, List[Tuple[float, ReviewItem]]] = {}
    for item in banded:
        groups.setdefault(item.source, []).append((quality_score(item, app_name, now, settings), item))

    selected: List[ReviewItem] = []
    for source, scored in groups.items():
        quota = quota_for(source, settings)
        selected.extend(select_top(scored, quota))
    stats.final = _count(selected)

    logger.info(
        "filtered %d reviews -> %d (dedup %d, window %d, length %d) per source %s",
        stats.original.total,
        stats.final.total,
        stats.deduplicated.total,
        stats.time_filtered.total,
        stats.quality_filtered.total,
        stats.final.by_source,
    )
    return selected, stats
