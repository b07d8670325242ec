import pytest

from helpers import NOW, review
from reviewpipe import jobs, pipeline, storage
from reviewpipe.analysis import KeywordAnalyzer
from reviewpipe.dispatch import InlineDispatcher
from reviewpipe.errors import InvalidTransition
from reviewpipe.models import ANALYZING, COMPLETED, FAILED, PENDING, READY, ReviewItem, Settings


class ListScraper:
    def __init__(self, items):
        self.items = items

    def scrape(self, query, limits):
        return self.items


class DownScraper:
    def scrape(self, query, limits):
        raise ConnectionError("store is down")


def _ready_job(items, app_name="Acme"):
    job = jobs.create_job(app_name, now=NOW)
    pipeline.ingest(job.id, items)
    return job.id


def test_ingest_validates_and_marks_ready():
    job = jobs.create_job("Acme").id
    kept = pipeline.ingest(job, [
        review("a good enough review"),
        {"source": "reddit"},  # no text
        {"review_text": "no source given at all"},
    ], default_source="google_play")

    assert kept == 2
    assert jobs.get_job(job).status == READY
    sources = [i["source"] for i in storage.get_raw_items(job)]
    assert sources == ["app_store", "google_play"]
    with pytest.raises(InvalidTransition):
        pipeline.ingest(job, [review("too late for this job")])


def test_collect_survives_a_failing_scraper():
    job = jobs.create_job("Acme").id
    kept = pipeline.collect(job, {
        "app_store": DownScraper(),
        "reddit": ListScraper([{"text": "thread about the app", "timestamp": "2026-09-30"}]),
    }, query="Acme")
    assert kept == 1
    assert storage.get_raw_items(job)[0]["source"] == "reddit"


def test_plan_batches_splits_by_source_size():
    items = [ReviewItem.model_validate(review(f"reddit post {i}", source="reddit")) for i in range(120)]
    items += [ReviewItem.model_validate(review(f"store review {i}")) for i in range(450)]
    items += [ReviewItem.model_validate(review(f"play review {i}", source="google_play")) for i in range(10)]

    batches = pipeline.plan_batches(items, Settings())
    assert [(label, len(b)) for label, b in batches] == [
        ("reddit", 50), ("reddit", 50), ("reddit", 20),
        ("app_store", 400), ("app_store+google_play", 60),
    ]


def test_start_analysis_creates_tasks_and_records_stats():
    items = [review(f"reddit post number {i}", source="reddit") for i in range(60)]
    items += [review(f"store review number {i}") for i in range(30)]
    job = _ready_job(items)

    started = pipeline.start_analysis(job, now=NOW)

    assert started.tasks_created == 3
    assert started.stats.final.by_source == {"reddit": 60, "app_store": 30}
    row = jobs.get_job(job)
    assert row.status == ANALYZING
    assert row.stats["final"]["total"] == 90
    tasks = storage.list_tasks(job)
    assert [t["batch_index"] for t in tasks] == [0, 1, 2]
    assert {t["state"] for t in tasks} == {PENDING}
    assert {t["priority"] for t in tasks} == {7}


def test_start_analysis_only_once():
    job = _ready_job([review("a review worth reading")])
    pipeline.start_analysis(job, now=NOW)
    with pytest.raises(InvalidTransition):
        pipeline.start_analysis(job, now=NOW)
    assert len(storage.list_tasks(job)) == 1


def test_nothing_collected_fails_job():
    job = _ready_job([])
    started = pipeline.start_analysis(job, now=NOW)
    assert started.tasks_created == 0
    row = jobs.get_job(job)
    assert row.status == FAILED
    assert row.error == "no reviews were collected"


def test_everything_filtered_fails_job():
    job = _ready_job([review("ancient review text", days_ago=400)])
    pipeline.start_analysis(job, now=NOW)
    assert jobs.get_job(job).error == "no reviews survived quality filtering"


def test_inline_run_completes_job():
    items = [review(f"app keeps crashing on launch, attempt {i}") for i in range(5)]
    items += [review(f"subscription price is too expensive {i}", source="reddit") for i in range(5)]
    job = _ready_job(items)

    started = pipeline.start_analysis(job, InlineDispatcher(KeywordAnalyzer()), now=NOW)

    assert len(started.drive.dispatched) == 2
    summary = pipeline.job_summary(job)
    assert summary["status"] == COMPLETED
    assert summary["tasks"] == {COMPLETED: 2}
    titles = [t["title"] for t in summary["result"]["themes"]]
    assert set(titles) == {"reliability", "pricing"}


def test_odd_engagement_data_does_not_strand_the_job():
    items = [review("reddit thread about the app", source="reddit", additional_data={"score": "n/a"})]
    job = _ready_job(items)

    started = pipeline.start_analysis(job, now=NOW)

    assert started.tasks_created == 1
    assert jobs.get_job(job).status == ANALYZING
