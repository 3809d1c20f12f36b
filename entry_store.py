# entry_store.py
# Entry Store implementations: an in-process store and a Firestore-backed store
# using the async Firestore client. Both are read-after-write consistent
# within a process.

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.async_client import AsyncClient
from loguru import logger
from pydantic import ValidationError

import config
from errors import PersistError
from models import Entry


class EntryStore(ABC):
    """Mapping from entry id to Entry.

    Writes raise PersistError on failure, as does reading a stored entry that
    cannot be decoded.
    """

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[Entry]:
        ...

    @abstractmethod
    async def put(self, entry: Entry) -> Entry:
        ...

    @abstractmethod
    async def get_all(self) -> List[Entry]:
        ...

    @abstractmethod
    async def create_if_absent(self, entry: Entry) -> bool:
        """Atomically inserts the entry unless its id exists. Returns True if it was created."""
        ...


class InMemoryEntryStore(EntryStore):
    """Process-local store. Entries are copied on the way in and out."""

    def __init__(self):
        self._entries: Dict[str, Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, entry_id: str) -> Optional[Entry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry is not None else None

    async def put(self, entry: Entry) -> Entry:
        self._entries[entry.id] = entry.model_copy(deep=True)
        logger.debug(f"Stored entry '{entry.id}' (status={entry.status.value}).")
        return entry

    async def get_all(self) -> List[Entry]:
        return [e.model_copy(deep=True) for e in self._entries.values()]

    async def create_if_absent(self, entry: Entry) -> bool:
        async with self._lock:
            if entry.id in self._entries:
                return False
            self._entries[entry.id] = entry.model_copy(deep=True)
        logger.debug(f"Created entry '{entry.id}'.")
        return True


class FirestoreEntryStore(EntryStore):
    """Entries stored one document per id in a Firestore collection."""

    def __init__(self, db: AsyncClient, collection: str = config.ENTRIES_COLLECTION):
        self.db = db
        self.collection = collection

    def _doc_ref(self, entry_id: str):
        return self.db.collection(self.collection).document(entry_id)

    @staticmethod
    def _to_firestore(entry: Entry) -> Dict[str, Any]:
        data = entry.model_dump(mode='json', exclude_none=True)
        data.pop('id', None)  # the document id is the entry id
        return data

    @staticmethod
    def _from_snapshot(doc_snapshot) -> Optional[Entry]:
        data = doc_snapshot.to_dict()
        if data is None:
            logger.warning(f"Document {doc_snapshot.id} exists but contains no data.")
            return None
        data['id'] = doc_snapshot.id
        try:
            return Entry.model_validate(data)
        except ValidationError as e:
            logger.error(f"Pydantic validation failed for Firestore entry {doc_snapshot.id}: {e}")
            return None

    async def test_connection(self) -> bool:
        """Attempts a simple read to verify the connection."""
        try:
            _ = await self._doc_ref('__test_connection__').get()
            logger.info("Firestore connection test successful.")
            return True
        except google_exceptions.PermissionDenied:
            logger.error("Firestore connection test failed: Permission Denied.")
            return False
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Firestore connection test failed: {e}")
            return False

    async def get(self, entry_id: str) -> Optional[Entry]:
        doc_snapshot = await self._doc_ref(entry_id).get()
        if not doc_snapshot.exists:
            logger.debug(f"No document found for entry '{entry_id}'.")
            return None
        entry = self._from_snapshot(doc_snapshot)
        if entry is None:
            raise PersistError(entry_id, "stored document is empty or invalid")
        return entry

    async def put(self, entry: Entry) -> Entry:
        try:
            await self._doc_ref(entry.id).set(self._to_firestore(entry))
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Firestore write failed for entry '{entry.id}': {e}")
            raise PersistError(entry.id, str(e)) from e
        logger.info(f"Entry document '{entry.id}' saved (status={entry.status.value}).")
        return entry

    async def get_all(self) -> List[Entry]:
        entries: List[Entry] = []
        async for doc_snapshot in self.db.collection(self.collection).stream():
            entry = self._from_snapshot(doc_snapshot)
            if entry is not None:
                entries.append(entry)
        logger.info(f"Fetched {len(entries)} entries from '{self.collection}'.")
        return entries

    async def create_if_absent(self, entry: Entry) -> bool:
        try:
            await self._doc_ref(entry.id).create(self._to_firestore(entry))
        except google_exceptions.AlreadyExists:
            logger.info(f"Entry '{entry.id}' already exists; create skipped.")
            return False
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"Firestore create failed for entry '{entry.id}': {e}")
            raise PersistError(entry.id, str(e)) from e
        logger.info(f"Entry document '{entry.id}' created.")
        return True


def create_entry_store(db: Optional[AsyncClient] = None) -> EntryStore:
    """Builds the store selected by ENTRY_STORE_BACKEND."""
    if config.ENTRY_STORE_BACKEND == 'firestore':
        if db is None:
            raise ValueError("A Firestore AsyncClient is required for the 'firestore' entry store.")
        return FirestoreEntryStore(db)
    if config.ENTRY_STORE_BACKEND != 'memory':
        logger.warning(f"Unknown ENTRY_STORE_BACKEND '{config.ENTRY_STORE_BACKEND}'. Using in-memory store.")
    return InMemoryEntryStore()
