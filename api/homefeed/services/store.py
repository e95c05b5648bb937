from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from homefeed.services.catalog import ListingCatalog
from homefeed.services.models import Candidate


class ListingSource(Protocol):
    async def list_visible_candidates(self, *, now: datetime) -> list[Candidate]: ...


class InMemoryListingStore:
    """Listing snapshot source for local runs and tests before a database is wired."""

    def __init__(
        self,
        documents: Iterable[Mapping[str, Any]] = (),
        *,
        catalog: ListingCatalog | None = None,
    ) -> None:
        self.catalog = catalog or ListingCatalog()
        self._documents: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        for document in documents:
            self.upsert(document)

    def upsert(self, document: Mapping[str, Any]) -> None:
        with self._lock:
            self._documents[str(document["id"])] = dict(document)

    def remove(self, listing_id: str) -> None:
        with self._lock:
            self._documents.pop(listing_id, None)

    async def list_visible_candidates(self, *, now: datetime) -> list[Candidate]:
        with self._lock:
            documents = list(self._documents.values())
        candidates = self.catalog.build_candidates(documents, now=now)
        return [candidate for candidate in candidates if candidate.visible]


def demo_listings(now: datetime | None = None) -> list[dict[str, Any]]:
    current = now or datetime.now(timezone.utc)
    day = timedelta(days=1)
    return [
        {"id": "demo-diamante-1", "name": "Diamante Uno", "plan_code": "DIAMANTE"},
        {"id": "demo-diamante-2", "name": "Diamante Dos", "plan_code": "DIAMANTE"},
        {
            "id": "demo-oro-1",
            "name": "Oro Destacado",
            "plan_code": "ORO",
            "upgrades": [{"code": "DESTACADO", "start_at": current - day, "end_at": current + day}],
        },
        {"id": "demo-oro-2", "name": "Oro Dos", "plan_code": "ORO"},
        {"id": "demo-esmeralda-1", "name": "Esmeralda Uno", "plan_code": "ESMERALDA"},
        {
            "id": "demo-zafiro-1",
            "name": "Zafiro Impulso",
            "plan_code": "ZAFIRO",
            "upgrades": [
                {"code": "DESTACADO", "start_at": current - day, "end_at": current + day},
                {"code": "IMPULSO", "start_at": current - day, "end_at": current + day},
            ],
        },
        {"id": "demo-amatista-1", "name": "Amatista Uno", "plan_code": "AMATISTA"},
        {"id": "demo-amatista-2", "name": "Amatista Dos", "plan_code": "AMATISTA"},
    ]
