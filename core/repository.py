"""
Repository - persistenza opaca (create / find-by-id / update-by-id)

Il simulatore e l'ottimizzatore ricevono un Repository nel costruttore;
InMemoryRepository è l'implementazione usata da test e CLI.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol

_LOG = logging.getLogger(__name__)

BACKTESTS = "backtests"
OPTIMIZATIONS = "optimizations"
PORTFOLIOS = "portfolios"
STRATEGIES = "strategies"
ORDERS = "orders"


class Repository(Protocol):
    def create(self, collection: str, document: Dict[str, Any]) -> str:
        ...

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    def update_by_id(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        ...


class InMemoryRepository:
    """Repository in memoria; i documenti sono copiati in ingresso e in uscita"""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def create(self, collection: str, document: Dict[str, Any]) -> str:
        doc = copy.deepcopy(document)
        doc_id = doc.get("id") or uuid.uuid4().hex
        doc["id"] = doc_id
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = doc
        _LOG.debug(f"🗄️ Created {collection}/{doc_id}")
        return doc_id

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update_by_id(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            docs = self._collections.get(collection, {})
            if doc_id not in docs:
                raise KeyError(f"{collection}/{doc_id} not found")
            docs[doc_id].update(copy.deepcopy(changes))
            return copy.deepcopy(docs[doc_id])

    def find(self, collection: str, **filters: Any) -> List[Dict[str, Any]]:
        with self._lock:
            docs = list(self._collections.get(collection, {}).values())
        return [
            copy.deepcopy(doc)
            for doc in docs
            if all(doc.get(key) == value for key, value in filters.items())
        ]
