import hashlib
import io
import logging
import os
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Iterable, Iterator, Optional, Tuple

import imagehash
import numpy as np
from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

from .. import config
from ..exceptions import AssetAccessError, HashTimeout
from ..models import Fingerprint, LocalAsset

# Phones hand us HEIC as often as JPEG
register_heif_opener()


def content_hash(data: bytes) -> str:
    """SHA-256 of the exact byte stream (Tier-1 identity)."""
    h = hashlib.sha256()
    view = memoryview(data)
    for start in range(0, len(view), config.HASH_CHUNK_SIZE):
        h.update(view[start:start + config.HASH_CHUNK_SIZE])
    return h.hexdigest()


def perceptual_hash(data: bytes) -> Optional[str]:
    """
    Difference hash over a 9x8 luminance grid.

    Bit (row * 8 + col) is set when pixel (row, col) is brighter than its
    right-hand neighbour. The 64-bit value is rendered as 16 hex digits,
    most significant bit first, which is the format the gallery already
    stores for photos uploaded from phones.

    Returns None if the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as im:
            cols, rows = config.DHASH_GRID
            # draft() lets the JPEG decoder skip most of the work
            im.draft("L", (cols * 8, rows * 8))
            grid = im.convert("L").resize((cols, rows), Image.Resampling.LANCZOS)
            pixels = np.asarray(grid, dtype=np.int16)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        logging.debug(f"Perceptual hash unavailable: {e}")
        return None

    brighter = pixels[:, :-1] > pixels[:, 1:]
    # Reverse so that bit 63 (row 7, col 7) comes first in the hex string
    bits = brighter.flatten()[::-1].reshape(rows, cols - 1)
    return str(imagehash.ImageHash(bits))


def similarity(hash_a: str, hash_b: str) -> float:
    """
    (64 - hamming distance) / 64.
    Malformed or mismatched hashes are treated as completely different.
    """
    try:
        a = imagehash.hex_to_hash(hash_a.strip().lower())
        b = imagehash.hex_to_hash(hash_b.strip().lower())
        distance = a - b
    except (ValueError, TypeError, AttributeError):
        return 0.0

    bits = a.hash.size
    if bits != config.PERCEPTUAL_HASH_BITS:
        return 0.0
    return (bits - int(distance)) / bits


class FingerprintEngine:
    def __init__(self, timeout: float = config.HASH_TIMEOUT_SEC, max_workers: Optional[int] = None):
        self.timeout = timeout
        self.max_workers = max_workers or os.cpu_count() or 1

    def compute(self, data: bytes) -> Fingerprint:
        return Fingerprint(
            content_hash=content_hash(data),
            perceptual_hash=perceptual_hash(data),
            byte_size=len(data),
        )

    def fingerprint_assets(
        self, assets: Iterable[LocalAsset]
    ) -> Iterator[Tuple[LocalAsset, Optional[Fingerprint], Optional[Exception]]]:
        """
        Fingerprints assets on a bounded worker pool and yields results in
        input order as (asset, fingerprint, error).

        - Hash over budget: fingerprint is None, error is HashTimeout.
        - Unreadable bytes: fingerprint is None, error is AssetAccessError.
        - Anything else: logged, fingerprint is None, error is passed through.

        At most `max_workers` hashes are in flight and each one starts as soon
        as it is submitted, so an asset's budget runs from the start of its
        own hash. A hash that blows its budget is abandoned and its slot is
        handed to the next asset on a fresh thread.
        """
        assets = list(assets)
        if not assets:
            return

        logging.info(f"Fingerprinting {len(assets)} assets ({self.max_workers} workers)")

        # Sized so abandoned hashes never hold up a queued one
        pool = ThreadPoolExecutor(max_workers=len(assets))
        in_flight = deque()
        queued = iter(assets)

        def refill():
            while len(in_flight) < self.max_workers:
                asset = next(queued, None)
                if asset is None:
                    return
                in_flight.append((asset, pool.submit(self._fingerprint_one, asset), time.monotonic()))

        try:
            refill()
            while in_flight:
                asset, future, started = in_flight.popleft()
                remaining = max(0.0, self.timeout - (time.monotonic() - started))
                try:
                    fp = future.result(timeout=remaining)
                except FutureTimeout:
                    err = HashTimeout(f"Fingerprint of {asset.file_name} exceeded {self.timeout}s")
                    logging.warning(str(err))
                    fp = None
                except AssetAccessError as e:
                    logging.warning(f"Skipping unreadable asset {asset.file_name}: {e}")
                    fp, err = None, e
                except Exception as e:
                    logging.error(f"Failed to fingerprint {asset.file_name}: {e}")
                    fp, err = None, e
                else:
                    err = None
                refill()
                yield asset, fp, err
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _fingerprint_one(self, asset: LocalAsset) -> Fingerprint:
        return self.compute(asset.read_bytes())
