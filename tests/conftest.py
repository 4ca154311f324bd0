import io
import json
import sqlite3
from datetime import datetime, timedelta, UTC

import pytest
import requests
from PIL import Image

from event_uploader.database.schema import init_schema
from event_uploader.database.ops import LedgerOperations
from event_uploader.models import LocalAsset, to_utc

EVENT_START = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
EVENT_END = EVENT_START + timedelta(hours=6)

@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the ledger schema initialized."""
    c = sqlite3.connect(":memory:")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()

@pytest.fixture
def ledger(conn):
    """Returns a LedgerOperations instance attached to the in-memory DB."""
    return LedgerOperations(conn)


def make_response(status=200, body=None, content_type="application/json") -> requests.Response:
    """Builds a real requests.Response without touching the network."""
    r = requests.Response()
    r.status_code = status
    if isinstance(body, (dict, list)):
        r._content = json.dumps(body).encode("utf-8")
    elif isinstance(body, str):
        r._content = body.encode("utf-8")
    else:
        r._content = body or b""
    r.headers["Content-Type"] = content_type
    r.encoding = "utf-8"
    return r


class FakeSession:
    """
    Stands in for requests.Session. Each queued item is either a Response
    or an exception to raise; calls are recorded for inspection.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def queue(self, *items):
        self.responses.extend(items)

    def _next(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def patch(self, url, **kwargs):
        return self._next("PATCH", url, **kwargs)


class MemoryAssetSource:
    """AssetSource over a fixed list of LocalAssets."""

    def __init__(self, assets):
        self.assets = list(assets)

    def list_assets(self, start, end):
        start, end = to_utc(start), to_utc(end)
        return [a for a in self.assets if start <= to_utc(a.created_at) <= end]


def make_jpeg(color=(200, 40, 40), size=(64, 48), pattern=False) -> bytes:
    """Small in-memory JPEG. `pattern` draws a gradient so dHash has structure."""
    im = Image.new("RGB", size, color)
    if pattern:
        px = im.load()
        for x in range(size[0]):
            for y in range(size[1]):
                px[x, y] = ((x * 4) % 256, (y * 5) % 256, ((x + y) * 3) % 256)
    buf = io.BytesIO()
    im.save(buf, format="JPEG", quality=90)
    return buf.getvalue()


def make_asset(name, data=b"", created_at=None, width=64, height=48, **kwargs) -> LocalAsset:
    return LocalAsset(
        asset_id=f"asset-{name}",
        file_name=name,
        created_at=created_at or EVENT_START + timedelta(minutes=5),
        width=width,
        height=height,
        byte_size=len(data),
        loader=lambda: data,
        **kwargs,
    )


@pytest.fixture
def fake_session():
    return FakeSession()
