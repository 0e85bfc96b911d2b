"""Shared fixtures: in-memory stand-ins for Firestore, Drive, Mercado Pago and Firebase Auth."""

from __future__ import annotations

import copy
import itertools
from typing import Any, Dict, Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as gcp_exceptions

from checklist_api.config import AppConfig
from checklist_api.dependencies import assemble_services
from checklist_api.errors import AuthError, NotFoundError, UpstreamError
from checklist_api.main import create_app
from checklist_api.middleware.rate_limit import limiter
from checklist_api.records import FileRecords, UserDirectory

SIGNING_SECRET = "test-signing-secret"


# =============================================================================
# FIRESTORE
# =============================================================================

class FakeSnapshot:
    def __init__(self, doc_id: str, data: Optional[Dict[str, Any]]):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return dict(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, db: "FakeFirestore", collection: str, doc_id: str):
        self.db = db
        self.collection = collection
        self.id = doc_id

    @property
    def _docs(self) -> Dict[str, Dict[str, Any]]:
        return self.db.data.setdefault(self.collection, {})

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._docs.get(self.id))

    def set(self, data: Dict[str, Any], merge: bool = False) -> None:
        if merge and self.id in self._docs:
            self._docs[self.id].update(data)
        else:
            self._docs[self.id] = dict(data)

    def update(self, data: Dict[str, Any]) -> None:
        if self.id not in self._docs:
            raise gcp_exceptions.NotFound(f"No document to update: {self.collection}/{self.id}")
        self.db.updates.append((self.collection, self.id, dict(data)))
        self._docs[self.id].update(data)


class FakeCollection:
    def __init__(self, db: "FakeFirestore", name: str):
        self.db = db
        self.name = name

    def document(self, doc_id: str) -> FakeDocumentRef:
        if not doc_id or "/" in doc_id:
            raise ValueError("A document must have an even number of path elements")
        return FakeDocumentRef(self.db, self.name, doc_id)


class FakeFirestore:
    def __init__(self):
        self.data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.updates: List[Any] = []

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def get_all(self, refs: List[FakeDocumentRef]) -> Iterator[FakeSnapshot]:
        for ref in refs:
            yield ref.get()

    def doc(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.data.get(collection, {}).get(doc_id)


# =============================================================================
# DRIVE / MERCADO PAGO / AUTH
# =============================================================================

class FakeDrive:
    def __init__(self):
        self.files: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self.fail_uploads = False

    def add(self, file_id: str, data: bytes, mime: str = "image/jpeg") -> None:
        self.files[file_id] = {"data": data, "mimeType": mime}

    def upload_photo(self, *, owner_key, batch_id, item_id, data, mime) -> str:
        if self.fail_uploads:
            raise UpstreamError("Google Drive request failed", code="DRIVE_HTTP_ERROR")
        file_id = f"drive-{next(self._ids)}"
        self.files[file_id] = {
            "data": data,
            "mimeType": mime,
            "path": ["CHECKLISTS", owner_key, batch_id],
            "itemId": item_id,
        }
        return file_id

    def get_metadata(self, file_id: str) -> Dict[str, Any]:
        if file_id not in self.files:
            raise NotFoundError("Drive file not found", code="DRIVE_NOT_FOUND")
        return {"mimeType": self.files[file_id]["mimeType"], "name": file_id}

    def open_media(self, file_id: str) -> Iterator[bytes]:
        if file_id not in self.files:
            raise NotFoundError("Drive file not found", code="DRIVE_NOT_FOUND")
        data = self.files[file_id]["data"]
        return iter([data[:4], data[4:]])


class FakePayments:
    def __init__(self):
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.preferences: List[Dict[str, Any]] = []
        self.lookups: List[str] = []
        self.fail = False

    def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        self.lookups.append(payment_id)
        if self.fail:
            raise UpstreamError("Unable to reach Mercado Pago", code="MP_UNREACHABLE")
        payment = self.payments.get(str(payment_id))
        return copy.deepcopy(payment) if payment else None

    def create_preference(self, **kwargs: Any) -> Dict[str, Any]:
        self.preferences.append(kwargs)
        pref_id = f"pref-{len(self.preferences)}"
        return {
            "id": pref_id,
            "init_point": f"https://mp.example/checkout/{pref_id}",
            "sandbox_init_point": f"https://sandbox.mp.example/checkout/{pref_id}",
        }


class FakeIdentity:
    """Bearer token -> claims."""

    def __init__(self, tokens: Optional[Dict[str, Dict[str, Any]]] = None):
        self.tokens = tokens or {}

    def verify(self, token: str) -> Dict[str, Any]:
        if token not in self.tokens:
            raise AuthError("Invalid token", code="INVALID_TOKEN")
        return dict(self.tokens[token])


def approved_payment(
    payment_id: str = "1001",
    *,
    uid: str = "user-1",
    plan: str = "monthly",
    status: str = "approved",
    date_approved: Optional[str] = "2024-01-15T10:00:00.000-03:00",
) -> Dict[str, Any]:
    payment: Dict[str, Any] = {
        "id": int(payment_id),
        "status": status,
        "status_detail": "accredited" if status == "approved" else "pending_contingency",
        "transaction_amount": 24.99,
        "transaction_details": {"net_received_amount": 23.74},
        "fee_details": [{"type": "mercadopago_fee", "amount": 1.25}],
        "metadata": {"uid": uid, "plan": plan},
        "payer": {"email": "buyer@example.com"},
    }
    if date_approved:
        payment["date_approved"] = date_approved
    return payment


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
def firestore_db() -> FakeFirestore:
    db = FakeFirestore()
    db.collection("users").document("user-1").set({"email": "user1@example.com"})
    db.collection("users").document("root").set({"portalRole": "super_admin", "allowedOwnerKeys": []})
    db.collection("users").document("site-admin").set({"portalRole": "admin", "allowedOwnerKeys": ["SITE-A"]})
    return db


@pytest.fixture()
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture()
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture()
def identity() -> FakeIdentity:
    return FakeIdentity(
        {
            "root-token": {"uid": "root", "email": "root@example.com"},
            "admin-token": {"uid": "site-admin", "email": "admin@example.com"},
            "user-token": {"uid": "user-1", "email": "user1@example.com"},
        }
    )


@pytest.fixture()
def config() -> AppConfig:
    return AppConfig(
        public_base_url="http://testserver",
        signing_secret=SIGNING_SECRET,
        mp_access_token="TEST-token",
        rate_limit_enabled=False,
    )


@pytest.fixture()
def make_client(firestore_db, drive, payments, identity):
    """Build a TestClient around the fakes with a given config."""

    def build(config: AppConfig, *, with_payments: bool = True) -> TestClient:
        services = assemble_services(
            config,
            identity=identity,
            users=UserDirectory(firestore_db),
            files=FileRecords(firestore_db),
            file_store=drive,
            payments=payments if with_payments else None,
        )
        return TestClient(create_app(config, services=services))

    return build


@pytest.fixture()
def client(make_client, config) -> TestClient:
    return make_client(config)
