import random
import threading
from datetime import timedelta

import pytest

from event_uploader.core import RetryPolicy, UploadOrchestrator
from event_uploader.exceptions import PartialInventoryFailure
from event_uploader.models import (
    DuplicateAccepted,
    EventWindow,
    ExactMatch,
    FatalFailure,
    LocalAsset,
    ProgressStage,
    RemoteRecord,
    RetryableFailure,
    Success,
    UploadStatus,
)
from event_uploader.remote.auth import TokenProvider
from event_uploader.remote.inventory import InventoryClient, InventoryResult
from event_uploader.scanning.hasher import content_hash
from conftest import FakeSession, MemoryAssetSource, make_asset, make_jpeg, make_response, EVENT_START, EVENT_END

EVENT = EventWindow(event_id="evt-1", start=EVENT_START, end=EVENT_END, name="Wedding")

class FakeInventory:
    def __init__(self, records=(), complete=True):
        self.result = InventoryResult(records=list(records), complete=complete, pages_fetched=1)
        if not complete:
            self.result.error = PartialInventoryFailure("HTTP 500", pages_fetched=1)
        self.tokens = []

    def fetch(self, event_id, token):
        self.tokens.append(token)
        return self.result

class FakeTransport:
    """Returns scripted outcomes in order; records (file_name, token) per attempt."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.attempts = []

    def upload(self, request, token):
        self.attempts.append((request.asset.file_name, token))
        if self.outcomes:
            return self.outcomes.pop(0)
        return Success(f"remote-{len(self.attempts)}")

class Sleeper:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)

def three_photos():
    colors = [(220, 30, 30), (30, 220, 30), (30, 30, 220)]
    return [
        make_asset(f"photo{i + 1}.jpg", make_jpeg(color=c), created_at=EVENT_START + timedelta(minutes=i))
        for i, c in enumerate(colors)
    ]

def build(assets, transport=None, inventory=None, tokens=None, ledger=None, sleeper=None):
    return UploadOrchestrator(
        token_provider=tokens or TokenProvider(token="tok"),
        inventory_client=inventory or FakeInventory(),
        asset_source=MemoryAssetSource(assets),
        transport=transport or FakeTransport(),
        ledger=ledger,
        sleep=sleeper or Sleeper(),
        rng=random.Random(7),
    )

# --- Retry policy ---

@pytest.mark.parametrize("seed", range(25))
def test_first_retry_delay_within_jitter_bounds(seed):
    delay = RetryPolicy().delay(1, random.Random(seed))
    assert 0.5 <= delay <= 1.5

def test_backoff_grows_exponentially():
    policy = RetryPolicy(jitter=0.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

# --- Scenarios ---

def test_exact_duplicate_is_skipped_and_rest_uploaded():
    assets = three_photos()
    record = RemoteRecord(remote_id="existing", content_hash=content_hash(assets[1].read_bytes()))
    transport = FakeTransport()
    orch = build(assets, transport=transport, inventory=FakeInventory([record]))

    result = orch.process_event(EVENT)

    statuses = {j.asset.file_name: j.status for j in result.jobs}
    assert statuses == {
        "photo1.jpg": UploadStatus.SUCCEEDED,
        "photo2.jpg": UploadStatus.SKIPPED,
        "photo3.jpg": UploadStatus.SUCCEEDED,
    }
    assert result.jobs[1].verdict == ExactMatch("existing")
    assert [a[0] for a in transport.attempts] == ["photo1.jpg", "photo3.jpg"]

    s = result.session
    assert (s.total, s.completed, s.failed, s.skipped) == (2, 2, 0, 1)
    assert not s.cancelled
    assert not result.aborted

def test_classification_only_in_dry_run():
    assets = three_photos()
    record = RemoteRecord(remote_id="existing", content_hash=content_hash(assets[1].read_bytes()))
    transport = FakeTransport()

    result = build(assets, transport=transport, inventory=FakeInventory([record])).process_event(EVENT, dry_run=True)

    assert [j.status for j in result.jobs] == [UploadStatus.PENDING, UploadStatus.SKIPPED, UploadStatus.PENDING]
    assert transport.attempts == []
    assert len(result.unprocessed) == 2

def test_edge_proxy_block_then_success():
    assets = three_photos()[:1]
    transport = FakeTransport([RetryableFailure("edge proxy block", 403), Success("m1")])
    sleeper = Sleeper()

    result = build(assets, transport=transport, sleeper=sleeper).process_event(EVENT)

    job = result.jobs[0]
    assert job.status is UploadStatus.SUCCEEDED
    assert job.attempt == 2
    assert job.remote_id == "m1"
    assert len(sleeper.delays) == 1
    assert 0.5 <= sleeper.delays[0] <= 1.5

def test_at_most_one_retry():
    assets = three_photos()[:1]
    transport = FakeTransport([RetryableFailure("HTTP 503", 503), RetryableFailure("HTTP 503", 503)])
    sleeper = Sleeper()

    result = build(assets, transport=transport, sleeper=sleeper).process_event(EVENT)

    job = result.jobs[0]
    assert job.status is UploadStatus.FAILED
    assert job.attempt == 2
    assert len(transport.attempts) == 2
    assert len(sleeper.delays) == 1
    assert result.failed_files == ["photo1.jpg"]
    assert result.session.failed == 1

def test_fatal_failure_is_not_retried():
    assets = three_photos()[:1]
    transport = FakeTransport([FatalFailure("HTTP 413: too large", 413)])
    result = build(assets, transport=transport).process_event(EVENT)

    assert result.jobs[0].status is UploadStatus.FAILED
    assert result.jobs[0].last_error == "HTTP 413: too large"
    assert len(transport.attempts) == 1

def test_duplicate_accepted_counts_as_success_idempotently():
    asset = three_photos()[0]
    transport = FakeTransport([Success("m1"), DuplicateAccepted("m1")])

    first = build([asset], transport=transport).process_event(EVENT)
    second = build([asset], transport=transport).process_event(EVENT)

    assert first.jobs[0].status is UploadStatus.SUCCEEDED
    assert not first.jobs[0].duplicate
    assert second.jobs[0].status is UploadStatus.SUCCEEDED
    assert second.jobs[0].duplicate
    assert second.session.completed == 1
    assert second.session.failed == 0

def test_unauthorized_refreshes_token_and_retries_once():
    refreshed = iter(["fresh-1", "fresh-2"])
    tokens = TokenProvider(refresh=lambda: next(refreshed))
    transport = FakeTransport([FatalFailure("token rejected", 401), Success("m1")])

    result = build(three_photos()[:1], transport=transport, tokens=tokens).process_event(EVENT)

    assert result.jobs[0].status is UploadStatus.SUCCEEDED
    assert [t for _, t in transport.attempts] == ["fresh-1", "fresh-2"]

def test_unauthorized_without_refresh_aborts_run():
    assets = three_photos()
    transport = FakeTransport([FatalFailure("token rejected", 401)])

    result = build(assets, transport=transport).process_event(EVENT)

    assert result.aborted
    assert [j.status for j in result.jobs] == [UploadStatus.FAILED, UploadStatus.PENDING, UploadStatus.PENDING]
    assert len(result.unprocessed) == 2
    assert len(transport.attempts) == 1

def test_unauthorized_inventory_refreshes_token_and_fetches_again():
    assets = three_photos()
    record = {"id": "existing", "file_hash": content_hash(assets[1].read_bytes())}
    session = FakeSession([
        make_response(401, {"error": "expired"}),
        make_response(200, {"photos": [record], "has_more": False}),
    ])
    refreshed = iter(["fresh-1", "fresh-2"])
    tokens = TokenProvider(refresh=lambda: next(refreshed))
    transport = FakeTransport()

    result = build(assets, transport=transport, inventory=InventoryClient("https://x", session=session),
                   tokens=tokens).process_event(EVENT)

    assert [c["headers"]["Authorization"] for c in session.calls] == ["Bearer fresh-1", "Bearer fresh-2"]
    assert result.inventory_complete
    assert result.jobs[1].status is UploadStatus.SKIPPED
    assert [a[0] for a in transport.attempts] == ["photo1.jpg", "photo3.jpg"]

def test_unauthorized_inventory_without_refresh_aborts_before_uploading():
    session = FakeSession([make_response(401, {"error": "expired"})])
    transport = FakeTransport()

    result = build(three_photos(), transport=transport,
                   inventory=InventoryClient("https://x", session=session)).process_event(EVENT)

    assert result.aborted
    assert transport.attempts == []
    assert len(session.calls) == 1


def test_missing_token_aborts_before_any_work():
    inventory = FakeInventory()
    result = build(three_photos(), inventory=inventory, tokens=TokenProvider()).process_event(EVENT)

    assert result.aborted
    assert result.jobs == []
    assert inventory.tokens == []

def test_process_events_stops_after_abort():
    orch = build(three_photos(), tokens=TokenProvider())
    results = orch.process_events([EVENT, EventWindow("evt-2", EVENT_START, EVENT_END)])
    assert len(results) == 1

def test_process_events_runs_each_event():
    orch = build(three_photos())
    results = orch.process_events([EVENT, EventWindow("evt-2", EVENT_START, EVENT_END)])
    assert [r.event_id for r in results] == ["evt-1", "evt-2"]

def test_unreadable_asset_fails_without_blocking_batch():
    def gone():
        raise OSError("deleted")

    broken = LocalAsset(asset_id="x", file_name="broken.jpg", created_at=EVENT_START, width=1, height=1, loader=gone)
    assets = [broken] + three_photos()[:1]
    transport = FakeTransport()

    result = build(assets, transport=transport).process_event(EVENT)

    assert [j.status for j in result.jobs] == [UploadStatus.FAILED, UploadStatus.SUCCEEDED]
    assert [a[0] for a in transport.attempts] == ["photo1.jpg"]
    s = result.session
    assert (s.total, s.completed, s.failed) == (2, 1, 1)

def test_cancel_leaves_remaining_jobs_untouched():
    cancel = threading.Event()
    transport = FakeTransport()

    def observer(progress):
        if progress.stage is ProgressStage.ITEM_DONE:
            cancel.set()

    result = build(three_photos(), transport=transport).process_event(EVENT, observer=observer, cancel=cancel)

    assert result.session.cancelled
    assert [j.status for j in result.jobs] == [UploadStatus.SUCCEEDED, UploadStatus.PENDING, UploadStatus.PENDING]
    assert len(transport.attempts) == 1
    assert result.session.completed == 1

def test_progress_events_are_ordered_and_monotonic():
    events = []
    transport = FakeTransport([Success("a"), FatalFailure("HTTP 400: bad", 400), Success("c")])

    build(three_photos(), transport=transport).process_event(EVENT, observer=events.append)

    stages = [e.stage for e in events]
    assert stages == [
        ProgressStage.UPLOADING, ProgressStage.ITEM_DONE,
        ProgressStage.UPLOADING, ProgressStage.ITEM_DONE,
        ProgressStage.UPLOADING, ProgressStage.ITEM_DONE,
        ProgressStage.FINISHED,
    ]
    files = [e.current_file for e in events if e.stage is ProgressStage.UPLOADING]
    assert files == ["photo1.jpg", "photo2.jpg", "photo3.jpg"]
    completed = [e.completed for e in events]
    assert completed == sorted(completed)
    assert all(e.completed + e.failed <= e.total for e in events)
    assert (events[-1].completed, events[-1].failed, events[-1].total) == (2, 1, 3)

def test_partial_inventory_is_reported_not_fatal():
    result = build(three_photos(), inventory=FakeInventory(complete=False)).process_event(EVENT)
    assert not result.inventory_complete
    assert result.session.completed == 3

def test_ledger_records_every_terminal_job(ledger):
    assets = three_photos()
    record = RemoteRecord(remote_id="existing", content_hash=content_hash(assets[0].read_bytes()))
    transport = FakeTransport([Success("m2"), FatalFailure("HTTP 400: bad", 400)])

    build(assets, transport=transport, inventory=FakeInventory([record]), ledger=ledger).process_event(EVENT)

    cur = ledger.conn.cursor()
    cur.execute("SELECT file_name, status, verdict FROM upload_jobs ORDER BY file_name")
    assert cur.fetchall() == [
        ("photo1.jpg", "skipped", "exact"),
        ("photo2.jpg", "succeeded", "none"),
        ("photo3.jpg", "failed", "none"),
    ]
    assert [f["file_name"] for f in ledger.fetch_failed("evt-1")] == ["photo3.jpg"]
