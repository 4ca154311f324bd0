import base64
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .. import config
from ..models import (
    DuplicateAccepted,
    FatalFailure,
    Fingerprint,
    LocalAsset,
    RetryableFailure,
    Success,
    TransportOutcome,
    to_utc,
)
from .session import auth_headers, make_session

_DISALLOWED = re.compile(r"[^A-Za-z0-9._-]+")
_UNDERSCORES = re.compile(r"_+")


def sanitize_filename(name: Optional[str]) -> str:
    """
    "IMG 0001 (edited).HEIC" -> "IMG_0001_edited_.HEIC"
    Anything that ends up without both a stem and an extension becomes
    photo.jpg.
    """
    cleaned = _DISALLOWED.sub("_", name or "")
    cleaned = _UNDERSCORES.sub("_", cleaned).strip("_")
    # splitext treats a leading dot as part of the stem
    if os.path.splitext(cleaned)[1] in ("", "."):
        return config.DEFAULT_FILENAME
    return cleaned


def classify_response(status: int, content_type: Optional[str], body: Any = None) -> TransportOutcome:
    """Maps an HTTP response onto a transport outcome."""
    content_type = (content_type or "").lower()

    if status in (200, 201):
        return Success(remote_id=_remote_id(body))
    if status == 409:
        return DuplicateAccepted(remote_id=_remote_id(body))
    if status == 403:
        # Edge proxies answer with an HTML challenge page; the API itself speaks JSON
        if "text/html" in content_type:
            return RetryableFailure("edge proxy block", status_code=status)
        return FatalFailure(f"forbidden: {_error_text(body)}", status_code=status)
    if status == 401:
        return FatalFailure("token rejected", status_code=status)
    if status in (413, 507):
        return FatalFailure(f"HTTP {status}: {_error_text(body)}", status_code=status)
    if status == 429 or 500 <= status <= 599:
        return RetryableFailure(f"HTTP {status}", status_code=status)
    return FatalFailure(f"HTTP {status}: {_error_text(body)}", status_code=status)


def _remote_id(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("media_id", "id", "upload_id"):
        if body.get(key) is not None:
            return str(body[key])
    return None


def _error_text(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or "rejected")
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return "rejected"


@dataclass(frozen=True)
class UploadRequest:
    event_id: str
    asset: LocalAsset
    data: bytes
    fingerprint: Optional[Fingerprint] = None

    def fields(self) -> Dict[str, str]:
        """Form fields sent alongside the bytes. Unknown values are omitted."""
        out = {
            "event_id": self.event_id,
            "file_name": sanitize_filename(self.asset.file_name),
            "media_type": self.asset.media_type,
            "original_timestamp": to_utc(self.asset.created_at).isoformat().replace("+00:00", "Z"),
            "file_size_bytes": str(len(self.data)),
        }
        if self.fingerprint is not None:
            out["file_hash"] = self.fingerprint.content_hash
            if self.fingerprint.perceptual_hash:
                out["perceptual_hash"] = self.fingerprint.perceptual_hash
        if self.asset.width and self.asset.height:
            out["image_width"] = str(self.asset.width)
            out["image_height"] = str(self.asset.height)
        return out


class UploadTransport:
    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = config.UPLOAD_TIMEOUT_SEC,
        encoding: str = "multipart",
        status_updates: bool = False,
    ):
        if encoding not in ("multipart", "json"):
            raise ValueError(f"Unknown upload encoding: {encoding}")
        self.base_url = base_url.rstrip("/")
        self.session = session or make_session()
        self.timeout = timeout
        self.encoding = encoding
        self.status_updates = status_updates

    def upload(self, request: UploadRequest, token: str) -> TransportOutcome:
        try:
            if self.encoding == "json":
                r = self._post_json(request, token)
            else:
                r = self._post_multipart(request, token)
        except (requests.Timeout, requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            logging.warning(f"Network error uploading {request.asset.file_name}: {e}")
            return RetryableFailure(f"network error: {e}")
        except requests.RequestException as e:
            return FatalFailure(f"request failed: {e}")

        body = self._body(r)
        outcome = classify_response(r.status_code, r.headers.get("Content-Type"), body)
        logging.debug(f"Upload {request.asset.file_name}: HTTP {r.status_code} -> {type(outcome).__name__}")

        if self.status_updates and isinstance(outcome, Success) and isinstance(body, dict):
            upload_id = body.get("upload_id")
            if upload_id is not None:
                self.update_status(str(upload_id), token, "completed", 100)
        return outcome

    def update_status(
        self,
        upload_id: str,
        token: str,
        status: str,
        progress: int,
        error_message: Optional[str] = None,
    ) -> bool:
        """Best-effort progress report. Returns False instead of raising."""
        payload = {"status": status, "progress": progress}
        if error_message:
            payload["error_message"] = error_message
        url = f"{self.base_url}/{config.STATUS_UPDATE_PATH}/{upload_id}"
        try:
            r = self.session.patch(url, json=payload, headers=auth_headers(token), timeout=config.STATUS_TIMEOUT_SEC)
        except requests.RequestException as e:
            logging.warning(f"Status update for {upload_id} failed: {e}")
            return False
        if r.status_code >= 300:
            logging.warning(f"Status update for {upload_id} rejected: HTTP {r.status_code}")
            return False
        return True

    def _post_multipart(self, request: UploadRequest, token: str) -> requests.Response:
        fields = request.fields()
        files = {"file": (fields["file_name"], request.data, request.asset.mime_type)}
        return self.session.post(
            f"{self.base_url}/{config.MULTIPART_UPLOAD_PATH}",
            data=fields,
            files=files,
            headers=auth_headers(token),
            timeout=self.timeout,
        )

    def _post_json(self, request: UploadRequest, token: str) -> requests.Response:
        payload: Dict[str, Any] = request.fields()
        for key in ("file_size_bytes", "image_width", "image_height"):
            if key in payload:
                payload[key] = int(payload[key])
        payload["file_data"] = base64.b64encode(request.data).decode("ascii")
        return self.session.post(
            f"{self.base_url}/{config.JSON_UPLOAD_PATH}",
            json=payload,
            headers=auth_headers(token),
            timeout=self.timeout,
        )

    def _body(self, r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError:
            return r.text
