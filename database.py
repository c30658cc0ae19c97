"""
Document store

Thin handle over Firestore. Every document leaving this module goes through
``normalize_document`` so callers only ever see plain JSON-friendly values
(timestamps become ISO-8601 strings) and an ``id`` field.

Filters are either a dict (equality on each key) or a list of
``(field, op, value)`` tuples using Firestore operators.
"""

import json
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud.firestore_v1 import FieldFilter

COURSES = "courses"
ENROLLMENTS = "enrollments"
PAYMENT_TRANSACTIONS = "payment_transactions"
WALLETS = "wallets"
WALLET_TRANSACTIONS = "wallet_transactions"
TOPUP_REQUESTS = "topup_requests"
FAVORITES = "favorites"

Filters = Union[Dict[str, Any], Iterable[Tuple[str, str, Any]], None]


def now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_value(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


def normalize_document(doc_id: str, data: Optional[dict]) -> Optional[dict]:
    """Single serialization boundary for stored documents."""
    if data is None:
        return None
    doc = normalize_value(dict(data))
    doc["id"] = doc_id
    return doc


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def as_filter_list(filters: Filters) -> List[Tuple[str, str, Any]]:
    if not filters:
        return []
    if isinstance(filters, dict):
        return [(field, "==", value) for field, value in filters.items()]
    return list(filters)


def _snapshot_to_dict(snapshot) -> Optional[dict]:
    if not snapshot.exists:
        return None
    return normalize_document(snapshot.id, snapshot.to_dict())


class Transaction:
    """Reads and writes inside one Firestore transaction.

    Firestore requires every read to happen before the first write.
    """

    def __init__(self, client, transaction):
        self._client = client
        self._transaction = transaction

    def _ref(self, collection: str, doc_id: str):
        return self._client.collection(collection).document(doc_id)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return _snapshot_to_dict(self._ref(collection, doc_id).get(transaction=self._transaction))

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._transaction.set(self._ref(collection, doc_id), data)

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._transaction.update(self._ref(collection, doc_id), data)

    def create(self, collection: str, data: dict) -> str:
        ref = self._client.collection(collection).document()
        self._transaction.set(ref, data)
        return ref.id


class DocumentStore:
    def __init__(self, client):
        self.client = client

    @property
    def name(self) -> str:
        return self.client.project

    def _query(self, collection: str, filters: Filters = None, order_by: Optional[str] = None,
               descending: bool = False, start_after: Optional[str] = None):
        query = self.client.collection(collection)
        for field, op, value in as_filter_list(filters):
            query = query.where(filter=FieldFilter(field, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if start_after:
            cursor = self.client.collection(collection).document(start_after).get()
            if cursor.exists:
                query = query.start_after(cursor)
        return query

    def get_document(self, collection: str, doc_id: str) -> Optional[dict]:
        return _snapshot_to_dict(self.client.collection(collection).document(doc_id).get())

    def get_many(self, collection: str, doc_ids: List[str]) -> List[Optional[dict]]:
        """Point lookups for ``doc_ids``; result is aligned with the input."""
        if not doc_ids:
            return []
        refs = [self.client.collection(collection).document(doc_id) for doc_id in doc_ids]
        found = {snap.id: _snapshot_to_dict(snap) for snap in self.client.get_all(refs)}
        return [found.get(doc_id) for doc_id in doc_ids]

    def get_documents(self, collection: str, filters: Filters = None, order_by: Optional[str] = None,
                      descending: bool = False, limit: Optional[int] = None,
                      start_after: Optional[str] = None) -> List[dict]:
        query = self._query(collection, filters, order_by, descending, start_after)
        if limit:
            query = query.limit(limit)
        return [_snapshot_to_dict(snap) for snap in query.stream()]

    def count_documents(self, collection: str, filters: Filters = None) -> int:
        result = self._query(collection, filters).count().get()
        return int(result[0][0].value)

    def create_document(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        payload = dict(data)
        payload.setdefault("createdAt", now())
        payload.setdefault("updatedAt", now())
        if doc_id:
            self.client.collection(collection).document(doc_id).set(payload)
            return doc_id
        _, ref = self.client.collection(collection).add(payload)
        return ref.id

    def set_document(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self.client.collection(collection).document(doc_id).set(data, merge=merge)

    def update_document(self, collection: str, doc_id: str, data: dict) -> None:
        payload = dict(data)
        payload.setdefault("updatedAt", now())
        self.client.collection(collection).document(doc_id).update(payload)

    def delete_document(self, collection: str, doc_id: str) -> None:
        self.client.collection(collection).document(doc_id).delete()

    def run_transaction(self, func: Callable[[Transaction], Any]) -> Any:
        """Run ``func`` atomically; Firestore retries it on contention."""

        @firestore.transactional
        def _run(transaction):
            return func(Transaction(self.client, transaction))

        return _run(self.client.transaction())

    def list_collection_names(self) -> List[str]:
        return [c.id for c in self.client.collections()]


def init_firebase(settings):
    """Initialize the Firebase app once per process and return it."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        cred = credentials.Certificate(json.loads(settings.firebase_service_account_json))
        return firebase_admin.initialize_app(cred, {"projectId": settings.firebase_project_id})


def create_store(app) -> DocumentStore:
    return DocumentStore(firestore.client(app))
