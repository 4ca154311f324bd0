import argparse
import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from .core import UploadOrchestrator
from .database.db import DBManager
from .database.ops import LedgerOperations
from .exceptions import AuthError
from .models import EventResult, EventWindow, ProgressEvent, ProgressStage
from .remote.auth import FileTokenStore, TokenProvider
from .remote.inventory import InventoryClient
from .remote.session import make_session
from .remote.transport import UploadTransport
from .reporting import ReportGenerator
from .scanning.filesystem import DirectoryAssetSource

def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the log directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "uploader.log"

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Event Uploader: send new photos to an event gallery")

    p.add_argument("src", type=Path, help="Directory holding the photos")

    p.add_argument("--event-id", required=True, help="Gallery event identifier")
    p.add_argument("--start", type=datetime.fromisoformat, required=True, help="Event start (ISO-8601)")
    p.add_argument("--end", type=datetime.fromisoformat, required=True, help="Event end (ISO-8601)")
    p.add_argument("--event-name", default=None, help="Display name used in logs")

    p.add_argument("--api-base", default=os.environ.get("EVENT_UPLOADER_API_BASE"),
                   help="Base URL of the gallery API (or EVENT_UPLOADER_API_BASE)")
    p.add_argument("--token", default=os.environ.get("EVENT_UPLOADER_TOKEN"),
                   help="Bearer token (or EVENT_UPLOADER_TOKEN)")
    p.add_argument("--token-file", type=Path, default=None, help="JSON file holding a saved token")

    p.add_argument("--json-upload", action="store_true", help="Send base64 JSON instead of multipart")
    p.add_argument("--status-updates", action="store_true", help="Report completion on the status endpoint")
    p.add_argument("--dry-run", action="store_true", help="Classify only; upload nothing")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    p.add_argument("--db", type=Path, default=None, help="Custom path for the SQLite ledger (default: src/.event_uploader/ledger.db)")
    p.add_argument("--report-csv", type=str, default=None, help="Write a per-asset CSV report here")

    args = p.parse_args(argv)
    if not args.api_base:
        p.error("--api-base or EVENT_UPLOADER_API_BASE is required")
    if not args.token and not args.token_file:
        p.error("--token, EVENT_UPLOADER_TOKEN or --token-file is required")
    if args.end < args.start:
        p.error("--end must not be before --start")
    return args

class ProgressBar:
    """Feeds orchestrator progress events into a tqdm bar, one bar per event."""

    def __init__(self):
        self.bar: Optional[tqdm] = None

    def __call__(self, progress: ProgressEvent):
        if progress.stage is ProgressStage.FINISHED:
            if self.bar is not None:
                self.bar.close()
                self.bar = None
            return

        if self.bar is None:
            self.bar = tqdm(total=progress.total, desc=f"Uploading {progress.event_id}", unit="photo")

        done = progress.completed + progress.failed
        self.bar.update(done - self.bar.n)
        self.bar.set_postfix(failed=progress.failed, skipped=progress.skipped, file=progress.current_file)

def build_orchestrator(args, ledger: LedgerOperations) -> UploadOrchestrator:
    src_root = args.src.resolve()
    session = make_session()
    store = FileTokenStore(args.token_file) if args.token_file else None
    tokens = TokenProvider(store=store, token=args.token)

    return UploadOrchestrator(
        token_provider=tokens,
        inventory_client=InventoryClient(args.api_base, session=session),
        asset_source=DirectoryAssetSource(src_root, skip_dirs={src_root / ".event_uploader"}),
        transport=UploadTransport(
            args.api_base,
            session=session,
            encoding="json" if args.json_upload else "multipart",
            status_updates=args.status_updates,
        ),
        ledger=ledger,
    )

def run_in_background(orchestrator: UploadOrchestrator, events: List[EventWindow], dry_run: bool) -> List[EventResult]:
    """
    Runs the uploads on a worker thread so Ctrl-C on the main thread can
    request a cooperative stop between files.
    """
    cancel = threading.Event()
    results: List[EventResult] = []
    errors: List[BaseException] = []

    def work():
        try:
            results.extend(orchestrator.process_events(events, observer=ProgressBar(), cancel=cancel, dry_run=dry_run))
        except Exception as e:
            errors.append(e)

    worker = threading.Thread(target=work, name="uploader")
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.5)
        except KeyboardInterrupt:
            logging.warning("Cancellation requested; finishing the current file...")
            cancel.set()

    if errors:
        raise errors[0]
    return results

def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    src_root = args.src.resolve()
    state_dir = src_root / ".event_uploader"
    setup_logging(state_dir, args.verbose)

    logging.info("=== Event Uploader Started ===")
    logging.info(f"Source: {src_root}")
    logging.info(f"Event:  {args.event_id}")

    db_path = args.db if args.db else state_dir / "ledger.db"
    event = EventWindow(event_id=args.event_id, start=args.start, end=args.end, name=args.event_name)

    try:
        with DBManager(db_path) as conn:
            orchestrator = build_orchestrator(args, LedgerOperations(conn))
            results = run_in_background(orchestrator, [event], args.dry_run)
    except AuthError as e:
        logging.error(f"Authentication failed: {e}")
        sys.exit(2)
    except Exception:
        logging.exception("Fatal error during upload.")
        sys.exit(1)

    reporter = ReportGenerator()
    print(reporter.summarize(results))
    if args.report_csv:
        reporter.write_csv(results, args.report_csv)

    if any(r.aborted for r in results):
        sys.exit(2)
    if any(r.session.failed for r in results):
        sys.exit(1)

if __name__ == "__main__":
    main()
