import copy
import itertools
from typing import Dict, Optional

import pytest
import requests
from fastapi.testclient import TestClient
from google.api_core.exceptions import NotFound as DocumentMissing

from auth import Principal
from config import Settings
from database import as_filter_list, normalize_document, now
from errors import InvalidToken, Unauthenticated, UpstreamFailure
from main import create_app
from payments import AreebaClient, ZainCashClient
from services import Services

_ids = itertools.count(1)


def _matches(doc: dict, field: str, op: str, value) -> bool:
    present = field in doc
    current = doc.get(field)
    if op == "==":
        return present and current == value
    if op == "!=":
        return present and current != value
    if op == "in":
        return present and current in value
    if op == "array_contains":
        return isinstance(current, list) and value in current
    if not present or current is None:
        return False
    return {
        "<": current < value,
        "<=": current <= value,
        ">": current > value,
        ">=": current >= value,
    }[op]


class MemoryTransaction:
    def __init__(self, store):
        self.store = store
        self.writes = []

    def get(self, collection, doc_id):
        assert not self.writes, "reads must happen before writes"
        return self.store.get_document(collection, doc_id)

    def set(self, collection, doc_id, data):
        self.writes.append(("set", collection, doc_id, data))

    def update(self, collection, doc_id, data):
        self.writes.append(("update", collection, doc_id, data))

    def create(self, collection, data):
        doc_id = f"auto{next(_ids)}"
        self.writes.append(("set", collection, doc_id, data))
        return doc_id

    def commit(self):
        for op, collection, doc_id, data in self.writes:
            if op == "set":
                self.store.set_document(collection, doc_id, data)
            else:
                self.store.update_document(collection, doc_id, data, stamp=False)


class MemoryStore:
    """In-process stand-in for the Firestore-backed DocumentStore."""

    name = "memory"

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}

    def _col(self, collection):
        return self.collections.setdefault(collection, {})

    def raw(self, collection, doc_id) -> Optional[dict]:
        return self._col(collection).get(doc_id)

    def all(self, collection):
        return [normalize_document(i, d) for i, d in self._col(collection).items()]

    def get_document(self, collection, doc_id):
        return normalize_document(doc_id, self._col(collection).get(doc_id))

    def get_many(self, collection, doc_ids):
        return [self.get_document(collection, doc_id) for doc_id in doc_ids]

    def _select(self, collection, filters=None, order_by=None, descending=False, start_after=None):
        rows = [
            (doc_id, data) for doc_id, data in self._col(collection).items()
            if all(_matches(data, f, op, v) for f, op, v in as_filter_list(filters))
        ]
        if order_by:
            rows = [r for r in rows if r[1].get(order_by) is not None]
            rows.sort(key=lambda r: r[1][order_by], reverse=descending)
        if start_after:
            ids = [doc_id for doc_id, _ in rows]
            if start_after in ids:
                rows = rows[ids.index(start_after) + 1:]
        return rows

    def get_documents(self, collection, filters=None, order_by=None, descending=False, limit=None,
                      start_after=None):
        rows = self._select(collection, filters, order_by, descending, start_after)
        if limit:
            rows = rows[:limit]
        return [normalize_document(doc_id, data) for doc_id, data in rows]

    def count_documents(self, collection, filters=None):
        return len(self._select(collection, filters))

    def create_document(self, collection, data, doc_id=None):
        payload = copy.deepcopy(data)
        payload.setdefault("createdAt", now())
        payload.setdefault("updatedAt", now())
        doc_id = doc_id or f"auto{next(_ids)}"
        self._col(collection)[doc_id] = payload
        return doc_id

    def set_document(self, collection, doc_id, data, merge=False):
        payload = copy.deepcopy(data)
        if merge and doc_id in self._col(collection):
            self._col(collection)[doc_id].update(payload)
        else:
            self._col(collection)[doc_id] = payload

    def update_document(self, collection, doc_id, data, stamp=True):
        if doc_id not in self._col(collection):
            raise DocumentMissing(f"{collection}/{doc_id}")
        payload = copy.deepcopy(data)
        if stamp:
            payload.setdefault("updatedAt", now())
        self._col(collection)[doc_id].update(payload)

    def delete_document(self, collection, doc_id):
        self._col(collection).pop(doc_id, None)

    def run_transaction(self, func):
        txn = MemoryTransaction(self)
        result = func(txn)
        txn.commit()
        return result

    def list_collection_names(self):
        return sorted(self.collections)


class FakeAuth:
    def __init__(self):
        self.tokens: Dict[str, Principal] = {}
        self.refresh_tokens: Dict[str, tuple] = {}
        self.bootstrapped = []

    def add(self, token, uid, email=None, is_admin=False, name=None):
        self.tokens[token] = Principal(uid=uid, email=email or f"{uid}@example.com", name=name,
                                       is_admin=is_admin)
        return self.tokens[token]

    def verify(self, token):
        if not token:
            raise Unauthenticated()
        if token not in self.tokens:
            raise InvalidToken()
        return self.tokens[token]

    def refresh(self, refresh_token):
        if refresh_token not in self.refresh_tokens:
            raise UpstreamFailure()
        return self.refresh_tokens[refresh_token]

    def bootstrap_admin(self, email):
        self.bootstrapped.append(email)
        return True


class FakeVerifier:
    def __init__(self, auth: FakeAuth):
        self.auth = auth

    def __call__(self, token):
        user = self.auth.tokens.get(token)
        if user is None:
            return None
        return {"sub": user.uid, "uid": user.uid, "admin": user.is_admin}


class FakeStorage:
    def __init__(self):
        self.objects = {}

    def upload(self, key, body, content_type, metadata):
        self.objects[key] = {"body": body, "contentType": content_type, "metadata": metadata}

    def delete(self, key):
        self.objects.pop(key, None)

    def presigned_url(self, key, expires_in=3600, download=False):
        return f"https://files.test/{key}?expires={expires_in}&download={int(download)}"


class StubAreeba(AreebaClient):
    def __init__(self, settings):
        base = AreebaClient.from_settings(settings)
        super().__init__(base.merchant_id, base.password, base.api_url, base.checkout_url, base.return_url)
        self.sessions = []
        self.session_response = None
        self.order_status = {"status": "CAPTURED"}
        self.fail_status = False

    def create_session(self, amount, order_id, description):
        self.sessions.append((amount, order_id, description))
        if self.session_response is not None:
            return self.session_response
        return {"session": {"id": f"SESSION{len(self.sessions)}"}}

    def get_order_status(self, order_id):
        if self.fail_status:
            raise requests.ConnectionError("down")
        return self.order_status


class StubZainCash(ZainCashClient):
    def __init__(self, settings):
        base = ZainCashClient.from_settings(settings)
        super().__init__(base.merchant_id, base.secret_key, base.msisdn, base.api_url, base.redirect_url)
        self.transactions = []

    def create_transaction(self, amount, order_id, description):
        self.transactions.append((amount, order_id, description))
        return {"id": f"OP{len(self.transactions)}", "url": f"https://zaincash.test/pay/OP{len(self.transactions)}"}


@pytest.fixture
def settings():
    return Settings(
        firebase_service_account_json="{}",
        firebase_project_id="readiq-test",
        firebase_api_key="api-key",
        r2_account_id="account",
        r2_access_key_id="key",
        r2_secret_access_key="secret",
        r2_bucket_name="bucket",
        areeba_merchant_id="MERCHANT",
        areeba_api_password="password",
        zaincash_merchant_id="zc-merchant",
        zaincash_secret_key="zc-secret-key-for-tests",
        zaincash_msisdn="9647800000000",
        app_url="https://readiq.test",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fake_auth():
    auth = FakeAuth()
    auth.add("student-token", "student")
    auth.add("instructor-token", "instructor")
    auth.add("admin-token", "admin", is_admin=True)
    return auth


@pytest.fixture
def services(settings, store, fake_auth):
    return Services(
        settings=settings,
        store=store,
        auth=fake_auth,
        storage=FakeStorage(),
        areeba=StubAreeba(settings),
        zaincash=StubZainCash(settings),
        verifier=FakeVerifier(fake_auth),
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services), raise_server_exceptions=False)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def add_course(store):
    def _add(course_id="c1", price=25000, created_by="instructor", **extra):
        doc = {
            "title": "Arabic grammar from scratch",
            "category": "languages",
            "price": price,
            "createdBy": created_by,
            "status": "published",
            "isDeleted": False,
            "enrollmentCount": 0,
            "createdAt": now(),
            "updatedAt": now(),
        }
        doc.update(extra)
        store.set_document("courses", course_id, doc)
        return course_id

    return _add
