"""
HTTP client for the origin race-data service (httpx).

Endpoints (relative to ``scraper.base_url``)::

    GET /horse/{id}            horse detail
    GET /horse/{id}/career     {"data": [...career rows...]}
    GET /horse/{id}/races      [...race participations...]
    GET /jockey/{id}
    GET /trainer/{id}
    GET /breeder/{id}

``fetch()`` returns the normalized shard record, or ``None`` when the entity
does not exist (404). Any other HTTP or decoding failure is logged and also
returned as ``None``: the scraper counts it as a miss rather than aborting the
batch.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import httpx

from racing_warehouse.config import ScraperConfig
from racing_warehouse.scraping.normalize import (
    normalize_breeder,
    normalize_horse,
    normalize_person,
)

logger = logging.getLogger(__name__)

ENTITY_PREFIXES: dict[str, str] = {
    "horse": "horse_data/",
    "jockey": "jockey_data/",
    "trainer": "trainer_data/",
    "breeder": "breeder_data/",
}


class HomasClient:
    """Fetch and normalize origin entities by numeric id.

    Usage::

        with HomasClient.from_config(config.scraper) as client:
            record = client.fetch("jockey", 42)

    Attributes:
        base_url: Origin service base URL.
        error_count: Fetches that failed for reasons other than 404.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._lock = threading.Lock()
        self.error_count = 0

    @classmethod
    def from_config(
        cls, config: ScraperConfig, transport: Optional[httpx.BaseTransport] = None
    ) -> "HomasClient":
        return cls(config.base_url, timeout=config.request_timeout_seconds, transport=transport)

    def __enter__(self) -> "HomasClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ── Public API ─────────────────────────────────────────────────────────────

    def fetch(self, entity: str, entity_id: int) -> Optional[dict[str, Any]]:
        """Fetch one entity; ``None`` if not found or the fetch failed.

        Raises:
            ValueError: If ``entity`` is not one of ``ENTITY_PREFIXES``.
        """
        if entity not in ENTITY_PREFIXES:
            raise ValueError(
                f"Unknown entity '{entity}'. Must be one of {sorted(ENTITY_PREFIXES)}."
            )
        try:
            if entity == "horse":
                return self._fetch_horse(entity_id)
            payload = self._get_json(f"/{entity}/{entity_id}")
            if payload is None:
                return None
            if entity == "breeder":
                return normalize_breeder(entity_id, payload)
            return normalize_person(f"{entity}_id", entity_id, payload)
        except (httpx.HTTPError, ValueError) as exc:
            with self._lock:
                self.error_count += 1
            logger.error("Error fetching %s %d: %s", entity, entity_id, exc)
            return None

    # ── Private helpers ────────────────────────────────────────────────────────

    def _fetch_horse(self, horse_id: int) -> Optional[dict[str, Any]]:
        detail = self._get_json(f"/horse/{horse_id}")
        if detail is None:
            return None
        career = self._get_json(f"/horse/{horse_id}/career")
        races = self._get_json(f"/horse/{horse_id}/races")
        return normalize_horse(horse_id, detail, career, races)

    def _get_json(self, path: str) -> Optional[Any]:
        """GET ``path``; ``None`` on 404, raises on other non-2xx."""
        resp = self._client.get(path)
        if resp.status_code == 404:
            logger.debug("Not found (404): %s", path)
            return None
        resp.raise_for_status()
        return resp.json()
