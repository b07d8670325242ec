from datetime import timedelta

import pytest

from helpers import NOW, review
from reviewpipe.models import ReviewItem, Settings
from reviewpipe.quality import deduplicate, filter_reviews, fingerprint, quality_score


def test_fingerprint_only_looks_at_leading_chars():
    base = "a" * 200
    assert fingerprint(base + "tail one") == fingerprint(base + "tail two")
    assert fingerprint("short one") != fingerprint("short two")


def test_deduplicate_keeps_first_and_is_idempotent():
    items = [ReviewItem.model_validate(review(t)) for t in ["same text here", "other text here", "same text here"]]
    once = deduplicate(items)
    assert [i.text for i in once] == ["same text here", "other text here"]
    assert deduplicate(once) == once


def test_scraper_field_aliases_are_accepted():
    item = ReviewItem.model_validate({
        "id": 42,
        "platform": "google_play",
        "review_text": "Really good experience overall",
        "review_date": "2026-09-30T08:00:00Z",
        "author_name": "sam",
        "additional_data": None,
    })
    assert item.id == "42"
    assert item.source == "google_play"
    assert item.timestamp.tzinfo is not None
    assert item.author == "sam"
    assert item.extra == {}


def test_unparseable_date_counts_as_undated():
    item = ReviewItem.model_validate({"source": "reddit", "text": "whatever text", "timestamp": "last tuesday"})
    assert item.timestamp is None


def test_quality_score_components():
    settings = Settings()
    item = ReviewItem.model_validate(review("x" * 100, rating=5, days_ago=10))
    assert quality_score(item, "Acme", NOW, settings) == pytest.approx(2 + 10 + 10)

    reddit = ReviewItem.model_validate(
        review("x" * 100, source="reddit", days_ago=10, extra={"score": 50, "comment_count": 10})
    )
    assert quality_score(reddit, "Acme", NOW, settings) == pytest.approx(2 + 10 + 5 + 2)

    mentions = ReviewItem.model_validate(review("I love acme, would recommend", days_ago=200))
    # length 28/50, +2 age, +5 app name, +2 terms
    assert quality_score(mentions, "Acme", NOW, settings) == pytest.approx(28 / 50 + 2 + 5 + 2)


def test_filter_stages_are_counted():
    items = [
        review("a perfectly fine review"),
        review("a perfectly fine review"),  # duplicate
        review("an old but long review", days_ago=120),
        review("too short"),
        review("reddit thread about the app", source="reddit"),
    ]
    selected, stats = filter_reviews(items, "Acme", now=NOW)

    assert stats.original.total == 5
    assert stats.deduplicated.total == 4
    assert stats.time_filtered.total == 3
    assert stats.quality_filtered.total == 2
    assert stats.final.by_source == {"app_store": 1, "reddit": 1}
    assert [i.text for i in selected] == ["a perfectly fine review", "reddit thread about the app"]


def test_undated_retention_is_a_setting():
    items = [{"source": "reddit", "text": "undated but useful review"}]
    kept, _ = filter_reviews(items, "Acme", now=NOW)
    dropped, _ = filter_reviews(items, "Acme", Settings(retain_undated=False), now=NOW)
    assert len(kept) == 1
    assert dropped == []


def test_per_source_quota_is_never_exceeded():
    items = [review(f"reddit post number {i}", source="reddit") for i in range(450)]
    items += [review(f"store review number {i}") for i in range(30)]
    selected, stats = filter_reviews(items, "Acme", now=NOW)

    assert stats.final.by_source == {"reddit": 400, "app_store": 30}
    small = Settings(source_quotas={"reddit": 5}, default_source_quota=3)
    selected, stats = filter_reviews(items, "Acme", small, now=NOW)
    assert stats.final.by_source == {"reddit": 5, "app_store": 3}


def test_output_grouped_by_source_best_first():
    items = [
        review("store review, plain and short", source="app_store"),
        review("reddit: " + "long detailed post " * 10, source="reddit"),
        review("store review that is much longer " * 5, source="app_store", rating=5),
    ]
    selected, _ = filter_reviews(items, "Acme", now=NOW)
    assert [i.source for i in selected] == ["app_store", "app_store", "reddit"]
    assert selected[0].rating == 5


def test_filter_is_deterministic():
    items = [review(f"review text {i % 7} with more words", days_ago=i % 40) for i in range(50)]
    first, _ = filter_reviews(items, "Acme", now=NOW)
    second, _ = filter_reviews(list(items), "Acme", now=NOW)
    assert first == second


def test_window_boundary():
    settings = Settings(window_days=30)
    inside = review("inside the window edge", days_ago=30)
    outside = {**inside, "text": "outside the window edge", "timestamp": (NOW - timedelta(days=30, seconds=1)).isoformat()}
    selected, _ = filter_reviews([inside, outside], "Acme", settings, now=NOW)
    assert [i.text for i in selected] == ["inside the window edge"]


def test_empty_input_selects_nothing():
    selected, stats = filter_reviews([], "Acme", now=NOW)
    assert selected == []
    for stage in (stats.original, stats.deduplicated, stats.time_filtered, stats.quality_filtered, stats.final):
        assert stage.total == 0
        assert stage.by_source == {}


def test_non_numeric_engagement_counters_score_zero():
    settings = Settings()
    plain = ReviewItem.model_validate(review("x" * 100, source="reddit", days_ago=10))
    odd = ReviewItem.model_validate(
        review("x" * 100, source="reddit", days_ago=10, extra={"score": "lots", "comment_count": [3]})
    )
    numeric_string = ReviewItem.model_validate(review("x" * 100, source="reddit", days_ago=10, extra={"score": "12"}))

    assert quality_score(odd, "Acme", NOW, settings) == quality_score(plain, "Acme", NOW, settings)
    assert quality_score(numeric_string, "Acme", NOW, settings) == pytest.approx(2 + 10 + 1.2)
