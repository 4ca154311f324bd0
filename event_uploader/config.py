"""
Configuration constants for the event uploader.
"""
from datetime import timedelta

# --- File Type Definitions ---
IMAGE_EXTS = {'.jpg', '.jpeg', '.jpe', '.png', '.heic', '.heif', '.gif', '.tif', '.tiff', '.webp'}

# Extension to MIME type mapping
# Used for the multipart file part and the JSON media type
EXT_TO_MIME = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.jpe': 'image/jpeg',
    '.png': 'image/png',
    '.heic': 'image/heic',
    '.heif': 'image/heif',
    '.gif': 'image/gif',
    '.tif': 'image/tiff',
    '.tiff': 'image/tiff',
    '.webp': 'image/webp',
}
DEFAULT_MIME = 'image/jpeg'

# --- Metadata Parsing ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# --- Hashing & Performance ---
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB chunks fed to the digest
HASH_TIMEOUT_SEC = 1.0       # Per-asset fingerprint budget
DHASH_GRID = (9, 8)          # 9 columns x 8 rows -> 64 horizontal comparisons
PERCEPTUAL_HASH_BITS = 64

# --- Duplicate Matching ---
# Business tradeoffs (false positive vs false negative), not protocol values.
SIMILARITY_THRESHOLD = 0.90
TIMESTAMP_WINDOW = timedelta(seconds=60)
SIZE_TOLERANCE_BYTES = 1_000_000
MISSING_DIMENSIONS_MATCH = True

# --- Remote API ---
INVENTORY_PATH = "get-uploaded-photos"
MULTIPART_UPLOAD_PATH = "multipart-upload"
JSON_UPLOAD_PATH = "mobile-upload"
STATUS_UPDATE_PATH = "upload-status-update"

INVENTORY_PAGE_SIZE = 50
INVENTORY_MAX_PAGES = 200    # Guard against a server that never stops paging

INVENTORY_TIMEOUT_SEC = 10.0
UPLOAD_TIMEOUT_SEC = 90.0
STATUS_TIMEOUT_SEC = 10.0

# --- Retry ---
RETRY_BASE_DELAY_SEC = 1.0
RETRY_MULTIPLIER = 2.0
RETRY_JITTER = 0.5           # +/- 50%
MAX_RETRIES = 1

# --- Auth ---
TOKEN_FRESHNESS = timedelta(minutes=5)

# --- Upload Fields ---
DEFAULT_FILENAME = "photo.jpg"
