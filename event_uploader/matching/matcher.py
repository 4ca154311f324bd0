import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from .. import config
from ..models import (
    ExactMatch,
    Fingerprint,
    LocalAsset,
    MatchVerdict,
    MetadataMatch,
    NoMatch,
    PerceptualMatch,
    RemoteRecord,
    to_utc,
)
from ..scanning.hasher import similarity


@dataclass(frozen=True)
class MatchPolicy:
    """
    Tunable thresholds for duplicate detection.

    missing_dimensions_match: when the server omits width/height for a record,
    treat its dimensions as equal to the local asset's. Older gallery records
    never carried dimensions, so turning this off makes Tier 3 stricter.
    """
    similarity_threshold: float = config.SIMILARITY_THRESHOLD
    timestamp_window: timedelta = config.TIMESTAMP_WINDOW
    size_tolerance_bytes: int = config.SIZE_TOLERANCE_BYTES
    missing_dimensions_match: bool = config.MISSING_DIMENSIONS_MATCH


class InventoryIndex:
    """All remote records for one event, plus a content-hash lookup."""

    def __init__(self, records: Iterable[RemoteRecord]):
        self.records: List[RemoteRecord] = list(records)
        self.by_content_hash: Dict[str, RemoteRecord] = {}
        for record in self.records:
            if record.content_hash:
                # First record wins, same as a linear scan would
                self.by_content_hash.setdefault(record.content_hash, record)

    def __len__(self) -> int:
        return len(self.records)

    def lookup_hash(self, content_hash: Optional[str]) -> Optional[RemoteRecord]:
        if not content_hash:
            return None
        return self.by_content_hash.get(content_hash.lower())


class DuplicateMatcher:
    def __init__(self, policy: Optional[MatchPolicy] = None):
        self.policy = policy or MatchPolicy()

    def match(
        self,
        asset: LocalAsset,
        fingerprint: Optional[Fingerprint],
        index: InventoryIndex,
    ) -> MatchVerdict:
        """
        Tiered classification of one local asset against the event inventory.

        1. Exact content hash anywhere in the index.
        2. Per record, in inventory order: perceptual similarity, then
           capture-time/size/dimension agreement. First record to satisfy
           either tier decides.
        A missing fingerprint restricts matching to Tier 3.
        """
        if fingerprint is not None:
            exact = index.lookup_hash(fingerprint.content_hash)
            if exact is not None:
                return ExactMatch(remote_id=exact.remote_id)

        for record in index.records:
            score = self._perceptual_score(fingerprint, record)
            if score is not None and score >= self.policy.similarity_threshold:
                return PerceptualMatch(remote_id=record.remote_id, similarity=score)

            if self._metadata_matches(asset, fingerprint, record):
                return MetadataMatch(remote_id=record.remote_id)

        return NoMatch()

    def _perceptual_score(self, fingerprint: Optional[Fingerprint], record: RemoteRecord) -> Optional[float]:
        if fingerprint is None or not fingerprint.perceptual_hash or not record.perceptual_hash:
            return None
        return similarity(fingerprint.perceptual_hash, record.perceptual_hash)

    def _metadata_matches(
        self,
        asset: LocalAsset,
        fingerprint: Optional[Fingerprint],
        record: RemoteRecord,
    ) -> bool:
        if record.original_timestamp is None or record.byte_size is None:
            return False

        local_size = fingerprint.byte_size if fingerprint is not None else asset.byte_size
        if local_size is None:
            return False

        delta = abs(to_utc(asset.created_at) - to_utc(record.original_timestamp))
        if delta > self.policy.timestamp_window:
            return False
        if abs(local_size - record.byte_size) > self.policy.size_tolerance_bytes:
            return False

        if record.width is None or record.height is None:
            if not self.policy.missing_dimensions_match:
                return False
            logging.debug(
                f"{asset.file_name}: record {record.remote_id} has no dimensions; "
                f"assuming {asset.width}x{asset.height}"
            )
            return True

        return record.width == asset.width and record.height == asset.height
