import csv
import logging
from pathlib import Path
from typing import Iterable, List, Union

from .models import EventResult, UploadJob, verdict_label

class ReportGenerator:
    HEADERS = [
        "Event",
        "Asset",
        "File Name",
        "Status",
        "Attempts",
        "Duplicate",
        "Remote ID",
        "Verdict",
        "Error",
    ]

    def summarize(self, results: Iterable[EventResult]) -> str:
        """
        Human-readable end-of-run summary: counts per event, then the files
        that still need attention.
        """
        lines: List[str] = []
        for result in results:
            s = result.session
            line = (
                f"Event {result.event_id}: {s.completed} uploaded, {s.failed} failed, "
                f"{s.skipped} already in gallery"
            )
            notes = []
            if result.unprocessed:
                notes.append(f"{len(result.unprocessed)} not attempted")
            if s.cancelled:
                notes.append("cancelled")
            if not result.inventory_complete:
                notes.append("gallery inventory incomplete")
            if result.aborted:
                notes.append(f"aborted: {result.aborted_reason}")
            if notes:
                line += f" ({'; '.join(notes)})"
            lines.append(line)

            for name in result.failed_files:
                lines.append(f"  failed: {name}")

        return "\n".join(lines)

    def write_csv(self, results: Iterable[EventResult], output_csv: Union[str, Path]):
        """One row per asset across all events."""
        logging.info(f"Writing upload report -> {output_csv}")
        rows = 0
        with open(output_csv, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(self.HEADERS)
            for result in results:
                for job in result.jobs:
                    writer.writerow(self._row(job))
                    rows += 1
        logging.info(f"Report complete. {rows} assets listed.")

    def _row(self, job: UploadJob) -> list:
        return [
            job.event_id,
            job.asset.asset_id,
            job.asset.file_name,
            job.status.value,
            job.attempt,
            "yes" if job.duplicate else "",
            job.remote_id or "",
            verdict_label(job.verdict),
            job.last_error or "",
        ]
