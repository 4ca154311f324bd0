import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from . import config
from .database.ops import LedgerOperations
from .exceptions import AssetAccessError, AuthError
from .matching.matcher import DuplicateMatcher, InventoryIndex
from .models import (
    DuplicateAccepted,
    EventResult,
    EventWindow,
    FatalFailure,
    Fingerprint,
    ProgressEvent,
    ProgressStage,
    RetryableFailure,
    Success,
    TransportOutcome,
    UploadJob,
    UploadSession,
    UploadStatus,
)
from .remote.auth import TokenProvider
from .remote.inventory import InventoryClient
from .remote.transport import UploadRequest, UploadTransport
from .scanning.filesystem import AssetSource
from .scanning.hasher import FingerprintEngine

Observer = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = config.RETRY_BASE_DELAY_SEC
    multiplier: float = config.RETRY_MULTIPLIER
    jitter: float = config.RETRY_JITTER
    max_retries: int = config.MAX_RETRIES

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Backoff before retry number `attempt` (1-based), with +/- jitter."""
        rng = rng or random.Random()
        base = self.base_delay * (self.multiplier ** (attempt - 1))
        return base * rng.uniform(1 - self.jitter, 1 + self.jitter)


class UploadOrchestrator:
    def __init__(
        self,
        token_provider: TokenProvider,
        inventory_client: InventoryClient,
        asset_source: AssetSource,
        transport: UploadTransport,
        engine: Optional[FingerprintEngine] = None,
        matcher: Optional[DuplicateMatcher] = None,
        retry: RetryPolicy = RetryPolicy(),
        ledger: Optional[LedgerOperations] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.tokens = token_provider
        self.inventory = inventory_client
        self.assets = asset_source
        self.transport = transport
        self.engine = engine or FingerprintEngine()
        self.matcher = matcher or DuplicateMatcher()
        self.retry = retry
        self.ledger = ledger
        self.sleep = sleep
        self.rng = rng or random.Random()

    def process_events(
        self,
        events: Iterable[EventWindow],
        observer: Optional[Observer] = None,
        cancel: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> List[EventResult]:
        """Runs events one at a time. Stops after an aborted or cancelled event."""
        results = []
        for event in events:
            result = self.process_event(event, observer=observer, cancel=cancel, dry_run=dry_run)
            results.append(result)
            if result.aborted or result.session.cancelled:
                break
        return results

    def process_event(
        self,
        event: EventWindow,
        observer: Optional[Observer] = None,
        cancel: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> EventResult:
        """
        Classifies the event's local assets against the gallery and uploads
        the new ones sequentially.

        1. Token (an AuthError here aborts the event)
        2. Inventory -> duplicate-lookup index (partial inventory is fine,
           a 401 refreshes the token and fetches once more)
        3. Fingerprint + match every asset in the window
        4. Upload the NoMatch jobs one by one, emitting progress
        """
        session = UploadSession()
        run_id = self.ledger.start_run(event.event_id) if self.ledger else None
        label = event.name or event.event_id
        logging.info(f"Processing event {label} ({event.start.isoformat()} .. {event.end.isoformat()})")

        try:
            token = self.tokens.get_token()
        except AuthError as e:
            logging.error(f"Cannot process event {label}: {e}")
            return self._finish(event, session, [], run_id, observer, aborted_reason=str(e))

        inventory = self.inventory.fetch(event.event_id, token)
        if inventory.is_auth_failure:
            logging.warning(f"Inventory for event {label} rejected the token; refreshing and fetching again.")
            self.tokens.invalidate()
            try:
                token = self.tokens.get_token()
            except AuthError as e:
                logging.error(f"Cannot process event {label}: {e}")
                return self._finish(event, session, [], run_id, observer, aborted_reason=str(e))
            inventory = self.inventory.fetch(event.event_id, token)
        index = InventoryIndex(inventory.records)

        jobs, pending = self._classify(event, index, session, run_id)
        logging.info(
            f"Event {label}: {len(jobs)} assets, {session.skipped} already in gallery, "
            f"{len(pending)} to upload"
        )

        aborted_reason = None
        if not dry_run:
            for position, (job, fingerprint) in enumerate(pending):
                if cancel is not None and cancel.is_set():
                    session.cancelled = True
                    logging.warning(f"Upload cancelled; {len(pending) - position} assets left untouched.")
                    break
                aborted_reason = self._upload_job(event, job, fingerprint, session, run_id, observer)
                if aborted_reason:
                    break

        result = self._finish(event, session, jobs, run_id, observer, aborted_reason)
        result.inventory_complete = inventory.complete
        return result

    # --- Classification ---

    def _classify(
        self,
        event: EventWindow,
        index: InventoryIndex,
        session: UploadSession,
        run_id: Optional[int],
    ) -> Tuple[List[UploadJob], List[Tuple[UploadJob, Optional[Fingerprint]]]]:
        assets = self.assets.list_assets(event.start, event.end)
        jobs: List[UploadJob] = []
        pending: List[Tuple[UploadJob, Optional[Fingerprint]]] = []

        for asset, fingerprint, error in self.engine.fingerprint_assets(assets):
            job = UploadJob(asset=asset, event_id=event.event_id)
            jobs.append(job)

            if isinstance(error, AssetAccessError):
                session.total += 1
                self._fail(job, session, str(error), run_id)
                continue

            verdict = self.matcher.match(asset, fingerprint, index)
            job.verdict = verdict
            if verdict.is_duplicate:
                job.remote_id = verdict.remote_id
                job.transition(UploadStatus.SKIPPED)
                session.skipped += 1
                logging.debug(f"{asset.file_name}: already in gallery ({type(verdict).__name__} {verdict.remote_id})")
                self._record(run_id, job)
            else:
                session.total += 1
                pending.append((job, fingerprint))

        return jobs, pending

    # --- Upload ---

    def _upload_job(
        self,
        event: EventWindow,
        job: UploadJob,
        fingerprint: Optional[Fingerprint],
        session: UploadSession,
        run_id: Optional[int],
        observer: Optional[Observer],
    ) -> Optional[str]:
        """Uploads one job to a terminal state. Returns an abort reason if the run must stop."""
        job.transition(UploadStatus.UPLOADING)
        self._emit(observer, event, ProgressStage.UPLOADING, session, job.asset.file_name)

        aborted_reason = None
        try:
            request = UploadRequest(event.event_id, job.asset, job.asset.read_bytes(), fingerprint)
            outcome = self._attempt(request, job)

            if isinstance(outcome, RetryableFailure) and self.retry.max_retries > 0:
                delay = self.retry.delay(1, self.rng)
                logging.info(f"{job.asset.file_name}: {outcome.reason}; retrying in {delay:.1f}s")
                self.sleep(delay)
                outcome = self._attempt(request, job)
            elif isinstance(outcome, FatalFailure) and outcome.is_auth_failure:
                logging.info(f"{job.asset.file_name}: token rejected; refreshing and retrying once")
                self.tokens.invalidate()
                outcome = self._attempt(request, job)

            self._apply(job, outcome, session, run_id)
        except AssetAccessError as e:
            self._fail(job, session, str(e), run_id)
        except AuthError as e:
            logging.error(f"Aborting event {event.event_id}: {e}")
            self._fail(job, session, str(e), run_id)
            aborted_reason = str(e)

        self._emit(observer, event, ProgressStage.ITEM_DONE, session, job.asset.file_name)
        return aborted_reason

    def _attempt(self, request: UploadRequest, job: UploadJob) -> TransportOutcome:
        token = self.tokens.get_token()
        job.attempt += 1
        return self.transport.upload(request, token)

    def _apply(self, job: UploadJob, outcome: TransportOutcome, session: UploadSession, run_id: Optional[int]):
        if isinstance(outcome, (Success, DuplicateAccepted)):
            job.remote_id = outcome.remote_id
            job.duplicate = isinstance(outcome, DuplicateAccepted)
            job.transition(UploadStatus.SUCCEEDED)
            session.completed += 1
            logging.info(
                f"Uploaded {job.asset.file_name}"
                + (" (server already had it)" if job.duplicate else "")
            )
            self._record(run_id, job)
        else:
            self._fail(job, session, outcome.reason, run_id)

    def _fail(self, job: UploadJob, session: UploadSession, reason: str, run_id: Optional[int]):
        job.last_error = reason
        job.transition(UploadStatus.FAILED)
        session.failed += 1
        logging.warning(f"Failed {job.asset.file_name}: {reason}")
        self._record(run_id, job)

    # --- Bookkeeping ---

    def _record(self, run_id: Optional[int], job: UploadJob):
        if self.ledger and run_id is not None:
            self.ledger.record_job(run_id, job)

    def _emit(
        self,
        observer: Optional[Observer],
        event: EventWindow,
        stage: ProgressStage,
        session: UploadSession,
        current_file: Optional[str] = None,
    ):
        if observer is None:
            return
        observer(ProgressEvent(
            event_id=event.event_id,
            stage=stage,
            completed=session.completed,
            failed=session.failed,
            skipped=session.skipped,
            total=session.total,
            current_file=current_file,
        ))

    def _finish(
        self,
        event: EventWindow,
        session: UploadSession,
        jobs: List[UploadJob],
        run_id: Optional[int],
        observer: Optional[Observer],
        aborted_reason: Optional[str] = None,
    ) -> EventResult:
        self._emit(observer, event, ProgressStage.FINISHED, session)
        snapshot = session.snapshot()
        if self.ledger and run_id is not None:
            self.ledger.finish_run(run_id, snapshot, aborted_reason)

        logging.info(
            f"Event {event.event_id} done: {snapshot.completed} uploaded, {snapshot.failed} failed, "
            f"{snapshot.skipped} skipped of {snapshot.total} to upload"
            + (" (cancelled)" if snapshot.cancelled else "")
        )
        return EventResult(
            event_id=event.event_id,
            session=snapshot,
            jobs=jobs,
            aborted_reason=aborted_reason,
        )
