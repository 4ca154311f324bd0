import os
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Set

from .. import config
from ..exceptions import AssetAccessError
from ..metadata.extract import MetadataExtractor
from ..models import LocalAsset, to_utc


class AssetSource(Protocol):
    """Interface for whatever owns the device's media library."""

    def list_assets(self, start: datetime, end: datetime) -> List[LocalAsset]:
        """
        Enumerate assets captured within [start, end].

        Returns:
            LocalAssets in capture order; bytes are loaded lazily.
        """
        ...


class DirectoryAssetSource:
    """Treats a directory tree of image files as the media library."""

    def __init__(self, root: Path, skip_dirs: Optional[Set[Path]] = None):
        self.root = root
        self.skip_dirs = set(skip_dirs or ())
        self.metadata = MetadataExtractor()

    def list_assets(self, start: datetime, end: datetime) -> List[LocalAsset]:
        start_utc, end_utc = to_utc(start), to_utc(end)
        assets = []
        scanned = 0

        for path in self._iter_images():
            scanned += 1
            asset = self._build_asset(path)
            if asset is None:
                continue
            if start_utc <= to_utc(asset.created_at) <= end_utc:
                assets.append(asset)

        assets.sort(key=lambda a: (to_utc(a.created_at), a.file_name))
        logging.info(f"Scanned {scanned} images under {self.root}; {len(assets)} fall in the event window.")
        return assets

    def _build_asset(self, path: Path) -> Optional[LocalAsset]:
        """Returns LocalAsset or None on error."""
        try:
            stat_result = path.stat()
            mtime = datetime.fromtimestamp(stat_result.st_mtime)

            capture_dt, location = self.metadata.get_image_metadata(path)
            width, height = self.metadata.get_dimensions(path)

            return LocalAsset(
                asset_id=str(path.resolve()),
                file_name=path.name,
                created_at=capture_dt or mtime,
                modified_at=mtime,
                width=width or 0,
                height=height or 0,
                mime_type=config.EXT_TO_MIME.get(path.suffix.lower(), config.DEFAULT_MIME),
                location=location,
                byte_size=stat_result.st_size,
                loader=_FileLoader(path),
            )
        except OSError as e:
            logging.error(f"Failed to scan {path}: {e}")
            return None

    def _iter_images(self) -> Iterator[Path]:
        """
        Image files under root in a stable order: files of a folder first,
        then its subfolders, names compared case-insensitively.

        Hidden folders (.thumbnails, our own .event_uploader state) and
        macOS "._" resource forks are never photos.
        """
        folders = [self.root]
        while folders:
            folder = folders.pop()
            if folder in self.skip_dirs:
                continue
            try:
                with os.scandir(folder) as it:
                    entries = sorted(it, key=lambda e: e.name.lower())
            except OSError as e:
                logging.warning(f"Cannot list {folder}: {e}")
                continue

            subfolders = []
            for entry in entries:
                if entry.name.startswith("."):
                    continue
                if entry.is_dir(follow_symlinks=False):
                    subfolders.append(Path(entry.path))
                elif (
                    entry.is_file(follow_symlinks=False)
                    and not entry.name.startswith("._")
                    and os.path.splitext(entry.name)[1].lower() in config.IMAGE_EXTS
                ):
                    yield Path(entry.path)
            folders.extend(reversed(subfolders))


class _FileLoader:
    def __init__(self, path: Path):
        self.path = path

    def __call__(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise AssetAccessError(f"Cannot read {self.path}: {e}") from e
