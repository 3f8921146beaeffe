"""
Versioned document store interface and in-memory implementation.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Tuple

from shared.logging import get_logger
from shared.errors import ConcurrentModification


# Collections
ACCESS_RECORDS = "access_records"
ACCESS_CODES = "access_codes"
EXAM_ATTEMPTS = "exam_attempts"


@dataclass
class StoredDocument:
    """A document body with the version it was read at."""
    key: str
    body: Dict[str, Any]
    version: int


class DocumentStore(ABC):
    """Get / conditional-put storage.

    ``put`` with ``expected_version=0`` creates a document that must not exist
    yet. Any other value must equal the stored version. Implementations raise
    ``ConcurrentModification`` on mismatch and ``PersistenceUnavailable`` when
    the backend cannot be reached in time.
    """

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Release connections."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        ...

    @abstractmethod
    async def put(self, collection: str, key: str, body: Dict[str, Any], expected_version: int) -> int:
        ...

    @abstractmethod
    async def list(self, collection: str, prefix: str = "") -> List[StoredDocument]:
        ...

    async def health_check(self) -> bool:
        return True


class InMemoryDocumentStore(DocumentStore):
    """Process-local store used for local runs and tests."""

    def __init__(self):
        self.logger = get_logger("access.persistence.memory")
        self._documents: Dict[Tuple[str, str], StoredDocument] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        stored = self._documents.get((collection, key))
        if stored is None:
            return None
        return StoredDocument(key=stored.key, body=copy.deepcopy(stored.body), version=stored.version)

    async def put(self, collection: str, key: str, body: Dict[str, Any], expected_version: int) -> int:
        async with self._lock:
            current = self._documents.get((collection, key))
            current_version = current.version if current else 0

            if current_version != expected_version:
                self.logger.debug(
                    "Conditional put rejected",
                    collection=collection,
                    key=key,
                    expected_version=expected_version,
                    current_version=current_version
                )
                raise ConcurrentModification(
                    details={"collection": collection, "key": key, "expected_version": expected_version}
                )

            new_version = current_version + 1
            self._documents[(collection, key)] = StoredDocument(
                key=key, body=copy.deepcopy(body), version=new_version
            )
            return new_version

    async def list(self, collection: str, prefix: str = "") -> List[StoredDocument]:
        return [
            StoredDocument(key=doc.key, body=copy.deepcopy(doc.body), version=doc.version)
            for (coll, key), doc in sorted(self._documents.items())
            if coll == collection and key.startswith(prefix)
        ]
