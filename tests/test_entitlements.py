"""Entitlement reconciliation from Mercado Pago notifications."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import FakeFirestore, FakePayments, approved_payment
from checklist_api.entitlements import (
    EntitlementReconciler,
    PaymentNotification,
    add_months,
    build_entitlement_patch,
    parse_notification,
    resolve_plan,
)
from checklist_api.errors import UpstreamError
from checklist_api.records import FileRecords, UserDirectory, is_document_id

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def notification(payment_id="1001", kind="payment") -> PaymentNotification:
    return PaymentNotification(type=kind, payment_id=payment_id)


@pytest.fixture()
def db() -> FakeFirestore:
    db = FakeFirestore()
    db.collection("users").document("user-1").set({"email": "user1@example.com"})
    return db


@pytest.fixture()
def mp() -> FakePayments:
    return FakePayments()


@pytest.fixture()
def reconciler(db, mp) -> EntitlementReconciler:
    return EntitlementReconciler(mp, UserDirectory(db), clock=NOW.timestamp)


# =============================================================================
# PLANS
# =============================================================================

class TestPlans:
    def test_catalog(self):
        assert resolve_plan("monthly").months == 1
        assert resolve_plan("quarterly").months == 3
        assert resolve_plan("annual").allowed_access_count == 1
        plus = resolve_plan("annual_plus")
        assert (plus.price, plus.months, plus.allowed_access_count) == (189.99, 12, 2)

    def test_legacy_keys_and_case(self):
        assert resolve_plan("mensal").key == "monthly"
        assert resolve_plan(" Anual ").key == "annual"
        assert resolve_plan("weekly") is None
        assert resolve_plan(None) is None

    @pytest.mark.parametrize(
        "start,months,expected",
        [
            (datetime(2024, 1, 15, tzinfo=timezone.utc), 1, datetime(2024, 2, 15, tzinfo=timezone.utc)),
            (datetime(2024, 1, 31, tzinfo=timezone.utc), 1, datetime(2024, 2, 29, tzinfo=timezone.utc)),
            (datetime(2023, 11, 30, tzinfo=timezone.utc), 3, datetime(2024, 2, 29, tzinfo=timezone.utc)),
            (datetime(2024, 2, 29, tzinfo=timezone.utc), 12, datetime(2025, 2, 28, tzinfo=timezone.utc)),
        ],
    )
    def test_add_months_clamps_to_month_end(self, start, months, expected):
        assert add_months(start, months) == expected


# =============================================================================
# NOTIFICATION PARSING
# =============================================================================

class TestParseNotification:
    def test_query_type_and_data_id(self):
        n = parse_notification({"type": "payment", "data.id": "42"}, None)
        assert (n.type, n.payment_id) == ("payment", "42")

    def test_legacy_topic_and_id(self):
        n = parse_notification({"topic": "payment", "id": "43"}, {})
        assert (n.type, n.payment_id) == ("payment", "43")

    def test_body_data_id(self):
        n = parse_notification({}, {"type": "payment", "data": {"id": 44}})
        assert (n.type, n.payment_id) == ("payment", "44")

    def test_body_resource_url(self):
        n = parse_notification({}, {"topic": "payment", "resource": "https://api.mercadolibre.com/collections/notifications/45"})
        assert n.payment_id == "45"

    def test_action_prefix_gives_type(self):
        n = parse_notification({}, {"action": "payment.updated", "data": {"id": "46"}})
        assert (n.type, n.payment_id) == ("payment", "46")

    def test_nothing_usable(self):
        n = parse_notification({}, "not json")
        assert n.type is None
        assert n.payment_id is None


# =============================================================================
# RECONCILER
# =============================================================================

class TestReconcile:
    def test_approved_monthly_payment_grants_access(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment()

        result = reconciler.reconcile(notification())

        assert result.applied
        user = db.doc("users", "user-1")
        assert user["authorized"] is True
        assert user["plan"] == "monthly"
        assert user["allowedAccessCount"] == 1
        assert user["expiresAt"] == datetime(2024, 2, 15, 13, 0, tzinfo=timezone.utc)
        assert user["email"] == "user1@example.com"
        assert user["payment"]["gateway"] == "MERCADO_PAGO"
        assert user["payment"]["paymentId"] == "1001"
        assert user["payment"]["grossAmount"] == 24.99
        assert user["payment"]["netAmount"] == 23.74
        assert user["payment"]["feeAmount"] == 1.25

    def test_annual_plus_grants_two_accesses(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment(plan="annual_plus")

        reconciler.reconcile(notification())

        user = db.doc("users", "user-1")
        assert user["allowedAccessCount"] == 2
        assert user["expiresAt"] == datetime(2025, 1, 15, 13, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("status", ["pending", "rejected", "in_process", "cancelled"])
    def test_non_approved_statuses_change_nothing(self, reconciler, db, mp, status):
        mp.payments["1001"] = approved_payment(status=status)

        result = reconciler.reconcile(notification())

        assert result.reason == "not_approved"
        assert db.updates == []
        assert "authorized" not in db.doc("users", "user-1")

    def test_body_status_is_never_trusted(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment(status="pending")
        forged = PaymentNotification(type="payment", payment_id="1001", raw_status="approved")

        assert not reconciler.reconcile(forged).applied
        assert db.updates == []

    def test_unknown_payment(self, reconciler, db):
        result = reconciler.reconcile(notification("999"))
        assert result.reason == "unknown_payment"
        assert db.updates == []

    def test_unknown_uid_does_not_create_user(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment(uid="ghost")

        result = reconciler.reconcile(notification())

        assert result.reason == "unknown_user"
        assert db.doc("users", "ghost") is None

    def test_uid_that_is_not_a_document_id_is_unknown(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment(uid="users/user-1")

        result = reconciler.reconcile(notification())

        assert result.reason == "unknown_user"
        assert db.updates == []

    def test_missing_uid_and_unknown_plan(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment(uid="")
        mp.payments["1002"] = approved_payment("1002", plan="lifetime")

        assert reconciler.reconcile(notification("1001")).reason == "missing_uid"
        assert reconciler.reconcile(notification("1002")).reason == "unknown_plan"
        assert db.updates == []

    def test_non_payment_events_skip_the_provider(self, reconciler, mp):
        result = reconciler.reconcile(notification(kind="merchant_order"))
        assert result.reason == "not_a_payment_event"
        assert mp.lookups == []

    def test_duplicate_delivery_is_idempotent(self, reconciler, db, mp):
        mp.payments["1001"] = approved_payment()

        reconciler.reconcile(notification())
        first = dict(db.doc("users", "user-1"))
        reconciler.reconcile(notification())
        second = db.doc("users", "user-1")

        assert second["expiresAt"] == first["expiresAt"]
        assert second["payment"] == first["payment"]

    def test_duplicate_without_date_approved_keeps_first_instant(self, db, mp):
        mp.payments["1001"] = approved_payment(date_approved=None)
        clock = [NOW.timestamp()]
        reconciler = EntitlementReconciler(mp, UserDirectory(db), clock=lambda: clock[0])

        reconciler.reconcile(notification())
        first_expiry = db.doc("users", "user-1")["expiresAt"]
        clock[0] += 3600
        reconciler.reconcile(notification())

        assert first_expiry == datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)
        assert db.doc("users", "user-1")["expiresAt"] == first_expiry

    def test_older_payment_arriving_late_is_ignored(self, reconciler, db, mp):
        mp.payments["2002"] = approved_payment("2002", plan="annual", date_approved="2024-02-01T00:00:00Z")
        mp.payments["1001"] = approved_payment("1001", plan="monthly", date_approved="2024-01-01T00:00:00Z")

        assert reconciler.reconcile(notification("2002")).applied
        result = reconciler.reconcile(notification("1001"))

        assert result.reason == "stale_payment"
        user = db.doc("users", "user-1")
        assert user["plan"] == "annual"
        assert user["payment"]["paymentId"] == "2002"

    def test_provider_failure_propagates_from_reconcile(self, reconciler, mp):
        mp.fail = True
        with pytest.raises(UpstreamError):
            reconciler.reconcile(notification())

    def test_on_notification_logs_and_swallows(self, reconciler, mp, db):
        mp.fail = True
        assert reconciler.on_notification(notification()) is None
        assert db.updates == []

    def test_payments_not_configured(self, db):
        reconciler = EntitlementReconciler(None, UserDirectory(db))
        assert reconciler.reconcile(notification()).reason == "payments_not_configured"


def test_patch_is_pure():
    payment = approved_payment()
    approved_at = datetime(2024, 1, 15, 13, 0, tzinfo=timezone.utc)
    plan = resolve_plan("quarterly")

    assert build_entitlement_patch(plan, payment, approved_at) == build_entitlement_patch(plan, payment, approved_at)
    assert build_entitlement_patch(plan, payment, approved_at)["expiresAt"] == datetime(
        2024, 4, 15, 13, 0, tzinfo=timezone.utc
    )


# =============================================================================
# RECORDS
# =============================================================================

@pytest.mark.parametrize("value", ["", "abc/def", "/", ".", "..", "__id__"])
def test_is_document_id_rejects_unaddressable_ids(value):
    assert not is_document_id(value)


def test_owner_keys_skips_ids_that_are_not_documents(db):
    db.collection("driveFiles").document("f-a").set({"ownerKey": "SITE-A"})

    owner_keys = FileRecords(db).owner_keys(["f-a", "abc/def", "", "f-x"])

    assert owner_keys == {"f-a": "SITE-A"}
    assert FileRecords(db).owner_keys(["abc/def"]) == {}
