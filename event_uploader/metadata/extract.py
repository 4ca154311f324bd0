import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Tuple

import exifread
from PIL import Image, UnidentifiedImageError

from .. import config
from ..models import GeoLocation


class MetadataExtractor:
    """
    Reads what the matcher needs from a local image without decoding pixels.

    Strategies:
      - Capture time & GPS: 'exifread' (fast, Python-native).
      - Dimensions: Pillow header parse (Image.open is lazy).
    """

    def get_image_metadata(self, path: Path) -> Tuple[Optional[datetime], Optional[GeoLocation]]:
        """
        Returns:
            (capture_datetime, location)
        """
        try:
            with path.open('rb') as f:
                # details=False speeds up processing significantly
                tags = exifread.process_file(f, details=False)
        except Exception as e:
            logging.warning(f"ExifRead failed for {path}: {e}")
            return None, None

        return self._parse_exif_date(tags), self._parse_gps(tags)

    def get_dimensions(self, path: Path) -> Tuple[Optional[int], Optional[int]]:
        try:
            with Image.open(path) as im:
                return im.size
        except (UnidentifiedImageError, OSError) as e:
            logging.debug(f"Could not read dimensions for {path}: {e}")
            return None, None

    # --- Internal Parsing Helpers ---

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """
        EXIF format is "YYYY:MM:DD HH:MM:SS", local to the camera.
        OffsetTimeOriginal ("+02:00") pins it to UTC when the camera wrote one.
        """
        for tag in config.DATE_TAGS:
            if tag not in tags:
                continue
            try:
                dt_str = str(tags[tag]).strip().replace(':', '-', 2)
                dt = datetime.strptime(dt_str, "%Y-%m-%d %H:%M:%S")
            except ValueError:
                continue

            offset = self._parse_offset(tags.get('EXIF OffsetTimeOriginal'))
            if offset is not None:
                dt = dt.replace(tzinfo=offset)
            return dt
        return None

    def _parse_offset(self, tag) -> Optional[timezone]:
        if tag is None:
            return None
        raw = str(tag).strip()
        if len(raw) != 6 or raw[0] not in '+-' or raw[3] != ':':
            return None
        try:
            hours, minutes = int(raw[1:3]), int(raw[4:6])
        except ValueError:
            return None
        sign = 1 if raw[0] == '+' else -1
        return timezone(sign * timedelta(hours=hours, minutes=minutes))

    def _parse_gps(self, tags) -> Optional[GeoLocation]:
        lat = self._gps_coordinate(tags.get('GPS GPSLatitude'), tags.get('GPS GPSLatitudeRef'), 'S')
        lon = self._gps_coordinate(tags.get('GPS GPSLongitude'), tags.get('GPS GPSLongitudeRef'), 'W')
        if lat is None or lon is None:
            return None
        return GeoLocation(latitude=lat, longitude=lon)

    def _gps_coordinate(self, value_tag, ref_tag, negative_ref: str) -> Optional[float]:
        """Degrees/minutes/seconds rationals -> signed decimal degrees."""
        if value_tag is None:
            return None
        try:
            parts = [float(r.num) / float(r.den) for r in value_tag.values]
        except (AttributeError, TypeError, ZeroDivisionError):
            return None
        if len(parts) != 3:
            return None

        degrees = parts[0] + parts[1] / 60.0 + parts[2] / 3600.0
        if ref_tag is not None and str(ref_tag).strip().upper() == negative_ref:
            degrees = -degrees
        return degrees
