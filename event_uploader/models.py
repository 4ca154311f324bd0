import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .exceptions import AssetAccessError, InvalidTransition


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as device-local time."""
    return dt.astimezone(UTC)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parses the ISO-8601 timestamps the server returns
    (e.g. 2024-05-01T12:00:00Z, 2024-05-01T12:00:00.123+00:00).
    Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return to_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _opt_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class LocalAsset:
    """
    A media item found on the device, immutable once enumerated.
    Bytes are loaded on demand through `loader`.
    """
    asset_id: str
    file_name: str
    created_at: datetime
    width: int
    height: int
    mime_type: str = "image/jpeg"
    modified_at: Optional[datetime] = None
    location: Optional[GeoLocation] = None
    byte_size: Optional[int] = None
    loader: Optional[Callable[[], bytes]] = field(default=None, repr=False, compare=False)

    @property
    def media_type(self) -> str:
        return "photo" if self.mime_type.startswith("image/") else "video"

    def read_bytes(self) -> bytes:
        if self.loader is None:
            raise AssetAccessError(f"No byte loader for asset {self.asset_id}")
        try:
            return self.loader()
        except AssetAccessError:
            raise
        except OSError as e:
            raise AssetAccessError(f"Cannot read {self.file_name}: {e}") from e


@dataclass(frozen=True)
class Fingerprint:
    content_hash: str                      # SHA-256 hex of the exact bytes
    perceptual_hash: Optional[str]         # 64-bit dHash hex, None if undecodable
    byte_size: int


@dataclass(frozen=True)
class RemoteRecord:
    """
    One already-uploaded photo as reported by the server.
    Legacy records may lack any of the optional fields.
    """
    remote_id: str
    content_hash: Optional[str] = None
    perceptual_hash: Optional[str] = None
    original_timestamp: Optional[datetime] = None
    byte_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RemoteRecord":
        """Parses one entry of the inventory `photos` array."""
        if not isinstance(data, dict):
            raise ValueError(f"Expected an object, got {type(data).__name__}")

        remote_id = data.get("id") or data.get("media_id")
        if remote_id is None:
            raise ValueError("Record has no id")

        content_hash = _opt_str(data.get("file_hash"))
        return cls(
            remote_id=str(remote_id),
            content_hash=content_hash.lower() if content_hash else None,
            perceptual_hash=_opt_str(data.get("perceptual_hash")),
            original_timestamp=parse_timestamp(data.get("original_timestamp")),
            byte_size=_opt_int(data.get("file_size_bytes")),
            width=_opt_int(data.get("image_width")),
            height=_opt_int(data.get("image_height")),
        )


# --- Match Verdicts ---

@dataclass(frozen=True)
class ExactMatch:
    remote_id: str
    is_duplicate = True


@dataclass(frozen=True)
class PerceptualMatch:
    remote_id: str
    similarity: float
    is_duplicate = True


@dataclass(frozen=True)
class MetadataMatch:
    remote_id: str
    is_duplicate = True


@dataclass(frozen=True)
class NoMatch:
    is_duplicate = False


MatchVerdict = Union[ExactMatch, PerceptualMatch, MetadataMatch, NoMatch]


def verdict_label(verdict: Optional[MatchVerdict]) -> str:
    if verdict is None:
        return ""
    return {
        ExactMatch: "exact",
        PerceptualMatch: "perceptual",
        MetadataMatch: "metadata",
        NoMatch: "none",
    }[type(verdict)]


# --- Transport Outcomes ---

@dataclass(frozen=True)
class Success:
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class DuplicateAccepted:
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class RetryableFailure:
    reason: str
    status_code: Optional[int] = None


@dataclass(frozen=True)
class FatalFailure:
    reason: str
    status_code: Optional[int] = None

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code == 401


TransportOutcome = Union[Success, DuplicateAccepted, RetryableFailure, FatalFailure]


# --- Jobs & Sessions ---

class UploadStatus(Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.SUCCEEDED, UploadStatus.SKIPPED, UploadStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    UploadStatus.PENDING: {UploadStatus.UPLOADING, UploadStatus.SKIPPED, UploadStatus.FAILED},
    UploadStatus.UPLOADING: {UploadStatus.SUCCEEDED, UploadStatus.FAILED},
}


@dataclass
class UploadJob:
    asset: LocalAsset
    event_id: str
    status: UploadStatus = UploadStatus.PENDING
    attempt: int = 0
    last_error: Optional[str] = None
    duplicate: bool = False
    remote_id: Optional[str] = None
    verdict: Optional[MatchVerdict] = None
    upload_id: Optional[str] = None

    def transition(self, new_status: UploadStatus):
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransition(
                f"{self.asset.file_name}: {self.status.value} -> {new_status.value}"
            )
        logging.debug(f"Job {self.asset.asset_id}: {self.status.value} -> {new_status.value}")
        self.status = new_status


@dataclass(frozen=True)
class SessionSnapshot:
    total: int
    completed: int
    failed: int
    skipped: int
    cancelled: bool


@dataclass
class UploadSession:
    """
    Aggregate counters for one orchestration run.
    Written only by the orchestrator; observers get snapshots.
    `total` counts upload jobs; duplicates only ever land in `skipped`.
    """
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(self.total, self.completed, self.failed, self.skipped, self.cancelled)


class ProgressStage(Enum):
    UPLOADING = "uploading"
    ITEM_DONE = "item_done"
    FINISHED = "finished"


@dataclass(frozen=True)
class ProgressEvent:
    event_id: str
    stage: ProgressStage
    completed: int
    failed: int
    skipped: int
    total: int
    current_file: Optional[str] = None


@dataclass(frozen=True)
class EventWindow:
    """An event gallery and the capture-time window its photos fall in."""
    event_id: str
    start: datetime
    end: datetime
    name: Optional[str] = None


@dataclass
class EventResult:
    event_id: str
    session: SessionSnapshot
    jobs: List[UploadJob] = field(default_factory=list)
    inventory_complete: bool = True
    aborted_reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self.aborted_reason is not None

    @property
    def failed_files(self) -> List[str]:
        return [j.asset.file_name for j in self.jobs if j.status is UploadStatus.FAILED]

    @property
    def unprocessed(self) -> List[UploadJob]:
        return [j for j in self.jobs if not j.status.is_terminal]
