import base64
import json
import logging
import threading
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Callable, Optional, Protocol, Tuple

from .. import config
from ..exceptions import AuthError


class TokenStore(Protocol):
    """Persistence for the bearer token between runs."""

    def load(self) -> Optional[Tuple[str, datetime]]:
        """
        Returns:
            (token, obtained_at) or None when nothing is stored.
        """
        ...

    def save(self, token: str, obtained_at: datetime) -> None:
        ...


class FileTokenStore:
    """Keeps the token in a small JSON file."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Optional[Tuple[str, datetime]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            token = data["token"]
            obtained_at = datetime.fromisoformat(data["obtained_at"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logging.warning(f"Ignoring unreadable token file {self.path}: {e}")
            return None
        if not isinstance(token, str) or not token:
            return None
        return token, obtained_at

    def save(self, token: str, obtained_at: datetime) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"token": token, "obtained_at": obtained_at.isoformat()}
        self.path.write_text(json.dumps(payload), encoding="utf-8")


def jwt_expiry(token: str) -> Optional[datetime]:
    """Reads `exp` from a JWT payload without verifying it. None if absent."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
        exp = claims["exp"]
        return datetime.fromtimestamp(float(exp), UTC)
    except (ValueError, KeyError, TypeError, OverflowError):
        return None


def mask_token(token: str) -> str:
    return f"{token[:6]}..." if len(token) > 10 else "***"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenProvider:
    """
    Hands out a bearer token, refreshing it when it goes stale.

    A token is fresh while it is younger than `freshness` and, when it is a
    JWT, its `exp` lies more than `freshness` ahead. Refreshes are serialized
    by a lock; callers that waited on the lock reuse whatever the first caller
    obtained.
    """

    def __init__(
        self,
        refresh: Optional[Callable[[], str]] = None,
        store: Optional[TokenStore] = None,
        freshness: timedelta = config.TOKEN_FRESHNESS,
        clock: Callable[[], datetime] = _utcnow,
        token: Optional[str] = None,
    ):
        self._refresh = refresh
        self._store = store
        self.freshness = freshness
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._obtained_at: Optional[datetime] = None

        if token:
            self._token, self._obtained_at = token, clock()
        elif store is not None:
            loaded = store.load()
            if loaded:
                self._token, self._obtained_at = loaded

    def get_token(self) -> str:
        token = self._token
        if token and self._is_fresh(token):
            return token

        with self._lock:
            # Someone else may have refreshed while we waited
            if self._token and self._is_fresh(self._token):
                return self._token
            return self._do_refresh()

    def invalidate(self):
        with self._lock:
            logging.info("Bearer token invalidated; next request will refresh.")
            self._token = None
            self._obtained_at = None

    def _is_fresh(self, token: str) -> bool:
        now = self._clock()
        if self._obtained_at is None:
            return False
        if self._refresh is not None and now - self._obtained_at >= self.freshness:
            return False
        exp = jwt_expiry(token)
        if exp is not None and exp - now <= self.freshness:
            return False
        return True

    def _do_refresh(self) -> str:
        if self._refresh is None:
            raise AuthError("Bearer token is missing or expired and no refresh is configured")

        try:
            token = self._refresh()
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(f"Token refresh failed: {e}") from e
        if not token:
            raise AuthError("Token refresh returned an empty token")

        self._token = token
        self._obtained_at = self._clock()
        logging.info(f"Obtained fresh bearer token {mask_token(token)}")

        if self._store is not None:
            try:
                self._store.save(token, self._obtained_at)
            except OSError as e:
                logging.warning(f"Could not persist token: {e}")
        return token
