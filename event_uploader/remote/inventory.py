import logging
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from .. import config
from ..exceptions import NetworkError, PartialInventoryFailure, ServerRejection
from ..models import RemoteRecord
from .session import auth_headers, make_session


@dataclass
class InventoryResult:
    records: List[RemoteRecord] = field(default_factory=list)
    complete: bool = True
    pages_fetched: int = 0
    error: Optional[PartialInventoryFailure] = None
    status_code: Optional[int] = None

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code == 401


class InventoryClient:
    """
    Pages through the records the server already holds for an event.

    Never raises: a failed page ends the walk and the records gathered so far
    are returned with `complete=False` and the failure attached.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        page_size: int = config.INVENTORY_PAGE_SIZE,
        timeout: float = config.INVENTORY_TIMEOUT_SEC,
        max_pages: int = config.INVENTORY_MAX_PAGES,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or make_session()
        self.page_size = page_size
        self.timeout = timeout
        self.max_pages = max_pages

    def fetch(self, event_id: str, token: str) -> InventoryResult:
        result = InventoryResult()
        url = f"{self.base_url}/{config.INVENTORY_PATH}"
        offset = 0

        while True:
            if result.pages_fetched >= self.max_pages:
                logging.warning(
                    f"Inventory for event {event_id} still paging after {self.max_pages} pages; stopping."
                )
                result.complete = False
                break

            params = {"event_id": event_id, "limit": self.page_size, "offset": offset}
            try:
                photos, has_more = self._fetch_page(url, params, token)
            except (NetworkError, ServerRejection, ValueError) as e:
                failure = PartialInventoryFailure(str(e), pages_fetched=result.pages_fetched)
                logging.warning(
                    f"Inventory for event {event_id} stopped at offset {offset}: {failure}. "
                    f"Continuing with {len(result.records)} records."
                )
                result.complete = False
                result.error = failure
                if isinstance(e, ServerRejection):
                    result.status_code = e.status_code
                break

            result.pages_fetched += 1
            for raw in photos:
                try:
                    result.records.append(RemoteRecord.from_json(raw))
                except ValueError as e:
                    logging.warning(f"Skipping malformed inventory record in event {event_id}: {e}")

            if not photos or not has_more:
                break
            offset += len(photos)

        logging.info(
            f"Inventory for event {event_id}: {len(result.records)} records "
            f"in {result.pages_fetched} pages{'' if result.complete else ' (partial)'}"
        )
        return result

    def _fetch_page(self, url: str, params: dict, token: str):
        try:
            r = self.session.get(url, params=params, headers=auth_headers(token), timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"request failed: {e}") from e

        if r.status_code != 200:
            raise ServerRejection(f"HTTP {r.status_code}", status_code=r.status_code)

        try:
            body = r.json()
        except ValueError as e:
            raise ValueError(f"invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise ValueError("response is not an object")
        photos = body.get("photos")
        if photos is None:
            photos = []
        if not isinstance(photos, list):
            raise ValueError("'photos' is not a list")

        return photos, body.get("has_more") is True
