"""Document store used by the pipeline.

The core only needs a handful of operations over a few named collections:
lookup by filter or id, create, update by id, an atomic upsert keyed by a
natural-key filter, and an insert-only variant that never overwrites a
match. ``InMemoryStore`` backs tests and local runs; ``MongoStore`` talks
to MongoDB through pymongo.

Documents are plain dicts. The store-generated identity is exposed as
``id`` regardless of backend.
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

STUDENTS = 'students'
MENTORS = 'mentors'
ATTENDANCE = 'attendance'
ASSESSMENTS = 'assessments'
FEES = 'fees'
RISK_SCORES = 'risk_scores'
NOTIFICATIONS = 'notifications'

Sort = Sequence[Tuple[str, int]]


def dump(model: BaseModel) -> Dict[str, Any]:
    """Serialize a model for storage, leaving identity to the store."""
    return model.model_dump(exclude={'id'})


def new_id() -> str:
    return uuid.uuid4().hex


class Store(ABC):
    """Operations the pipeline performs against persistent storage."""

    @abstractmethod
    def find_one(self, collection: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def find_one_and_upsert(
        self,
        collection: str,
        filter: Dict[str, Any],
        values: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Atomically update the document matching ``filter`` or insert it.

        Returns the document as stored after the write.
        """

    @abstractmethod
    def insert_if_absent(
        self,
        collection: str,
        filter: Dict[str, Any],
        document: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], bool]:
        """Insert ``document`` only when nothing matches ``filter``.

        An existing match is returned untouched. Returns (document, created).
        """

    @abstractmethod
    def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def find_by_id(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def update_by_id(self, collection: str, id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...


def _matches(document: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    for key, expected in filter.items():
        if key == 'id':
            key = '_id'
        if document.get(key) != expected:
            return False
    return True


def _public(document: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(document)
    result['id'] = result.pop('_id')
    return result


class InMemoryStore(Store):
    """Dict-backed store. Writes are serialised with a lock."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def find_one(self, collection, filter):
        with self._lock:
            for document in self._collection(collection).values():
                if _matches(document, filter):
                    return _public(document)
        return None

    def find(self, collection, filter=None, sort=None, limit=None):
        with self._lock:
            documents = [
                _public(document)
                for document in self._collection(collection).values()
                if _matches(document, filter or {})
            ]
        # Stable sorts applied last-key-first give a multi-key ordering
        for field, direction in reversed(list(sort or [])):
            present = [d for d in documents if d.get(field) is not None]
            missing = [d for d in documents if d.get(field) is None]
            present.sort(key=lambda d: d[field], reverse=direction < 0)
            documents = present + missing
        if limit is not None:
            documents = documents[:limit]
        return documents

    def find_one_and_upsert(self, collection, filter, values):
        with self._lock:
            docs = self._collection(collection)
            for document in docs.values():
                if _matches(document, filter):
                    document.update(copy.deepcopy(values))
                    return _public(document)
            document = {'_id': new_id()}
            document.update(copy.deepcopy(filter))
            document.update(copy.deepcopy(values))
            docs[document['_id']] = document
            return _public(document)

    def insert_if_absent(self, collection, filter, document):
        with self._lock:
            for existing in self._collection(collection).values():
                if _matches(existing, filter):
                    return _public(existing), False
            stored = {'_id': new_id()}
            stored.update(copy.deepcopy(filter))
            stored.update(copy.deepcopy(document))
            self._collection(collection)[stored['_id']] = stored
            return _public(stored), True

    def create(self, collection, document):
        with self._lock:
            stored = copy.deepcopy(document)
            stored.pop('id', None)
            stored['_id'] = new_id()
            self._collection(collection)[stored['_id']] = stored
            return _public(stored)

    def find_by_id(self, collection, id):
        with self._lock:
            document = self._collection(collection).get(id)
            return _public(document) if document is not None else None

    def update_by_id(self, collection, id, values):
        with self._lock:
            document = self._collection(collection).get(id)
            if document is None:
                return None
            document.update(copy.deepcopy(values))
            return _public(document)

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collection(collection))


class MongoStore(Store):
    """MongoDB-backed store using string ids."""

    def __init__(self, database):
        self.db = database

    @classmethod
    def from_url(cls, mongo_url: str, db_name: str) -> 'MongoStore':
        client = MongoClient(mongo_url, serverSelectionTimeoutMS=5000, tz_aware=True)
        logger.info("Using MongoDB database '%s'", db_name)
        return cls(client[db_name])

    @staticmethod
    def _query(filter: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        query = dict(filter or {})
        if 'id' in query:
            query['_id'] = query.pop('id')
        return query

    @staticmethod
    def _public(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if document is None:
            return None
        document = dict(document)
        document['id'] = document.pop('_id')
        return document

    def find_one(self, collection, filter):
        return self._public(self.db[collection].find_one(self._query(filter)))

    def find(self, collection, filter=None, sort=None, limit=None):
        cursor = self.db[collection].find(self._query(filter))
        if sort:
            cursor = cursor.sort(list(sort))
        if limit is not None:
            cursor = cursor.limit(limit)
        return [self._public(document) for document in cursor]

    def find_one_and_upsert(self, collection, filter, values):
        document = self.db[collection].find_one_and_update(
            self._query(filter),
            {'$set': values, '$setOnInsert': {'_id': new_id()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._public(document)

    def insert_if_absent(self, collection, filter, document):
        query = self._query(filter)
        values = {k: v for k, v in document.items() if k not in query}
        values['_id'] = new_id()
        result = self.db[collection].update_one(query, {'$setOnInsert': values}, upsert=True)
        return self.find_one(collection, filter), result.upserted_id is not None

    def create(self, collection, document):
        stored = dict(document)
        stored.pop('id', None)
        stored['_id'] = new_id()
        self.db[collection].insert_one(stored)
        return self._public(stored)

    def find_by_id(self, collection, id):
        return self._public(self.db[collection].find_one({'_id': id}))

    def update_by_id(self, collection, id, values):
        document = self.db[collection].find_one_and_update(
            {'_id': id},
            {'$set': values},
            return_document=ReturnDocument.AFTER,
        )
        return self._public(document)
