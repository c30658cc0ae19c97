from datetime import timedelta

import pytest
from jose import jwt

from database import now
from errors import GatewaySessionError, PaymentInProgress
from payments import ensure_can_start


def init(client, gateway="areeba", course_id="c1", amount=25000, token="student-token"):
    return client.post(f"/api/payments/{gateway}/init", json={
        "courseId": course_id,
        "courseTitle": "Arabic grammar from scratch",
        "amount": amount,
        "token": token,
    })


def test_areeba_init_writes_pending_enrollment(store, services, client, add_course):
    add_course("c1")
    res = init(client)
    assert res.status_code == 200
    assert res.json() == {"success": True, "redirectUrl": "https://areeba.iq/checkout?session=SESSION1"}

    enrollment = store.get_document("enrollments", "student_c1")
    assert enrollment["status"] == "pending"
    assert enrollment["paymentMethod"] == "areeba"
    assert enrollment["paymentId"] == "SESSION1"
    assert enrollment["orderId"].startswith("ar_c1_student_")
    assert enrollment["enrollmentType"] == "paid"

    audit = store.all("payment_transactions")
    assert len(audit) == 1
    assert audit[0]["orderId"] == enrollment["orderId"]

    amount, order_id, _ = services.areeba.sessions[0]
    assert amount == 25000
    assert order_id == enrollment["orderId"]


def test_zaincash_init_uses_zc_prefix(store, client, add_course):
    add_course("c1")
    res = init(client, gateway="zainCash")
    assert res.status_code == 200
    assert res.json()["redirectUrl"] == "https://zaincash.test/pay/OP1"
    enrollment = store.get_document("enrollments", "student_c1")
    assert enrollment["orderId"].startswith("zc_c1_student_")
    assert enrollment["paymentId"] == "OP1"


def test_init_without_token_creates_nothing(store, client, add_course):
    add_course("c1")
    res = init(client, token=None)
    assert res.status_code == 401
    assert store.all("enrollments") == []


def test_init_with_expired_token_creates_nothing(store, client, add_course):
    add_course("c1")
    res = init(client, token="expired-token")
    assert res.status_code == 401
    assert store.all("enrollments") == []


def test_init_rejects_when_already_enrolled(store, services, client, add_course):
    add_course("c1")
    store.set_document("enrollments", "student_c1",
                       {"userId": "student", "courseId": "c1", "status": "completed", "enrollmentType": "paid"})
    res = init(client)
    assert res.status_code == 400
    assert res.json()["success"] is False
    assert len(store.all("enrollments")) == 1
    assert services.areeba.sessions == []


def test_init_rejects_legacy_completed_row(store, client, add_course):
    add_course("c1")
    store.set_document("enrollments", "legacy-id", {"userId": "student", "courseId": "c1", "status": "completed"})
    assert init(client).status_code == 400
    assert store.get_document("enrollments", "student_c1") is None


def test_init_rejects_wrong_amount(store, client, add_course):
    add_course("c1", salePrice=20000)
    assert init(client, amount=25000).status_code == 400
    assert init(client, amount=20000).status_code == 200


def test_init_rejects_free_course(client, add_course):
    add_course("c1", price=0)
    assert init(client, amount=0).status_code == 400


def test_gateway_without_session_id_is_500(store, services, client, add_course):
    add_course("c1")
    services.areeba.session_response = {"result": "ERROR"}
    res = init(client)
    assert res.status_code == 500
    assert store.all("enrollments") == []


def test_recent_pending_blocks_new_attempt():
    with pytest.raises(PaymentInProgress) as info:
        ensure_can_start({"status": "pending", "createdAt": now().isoformat()})
    assert info.value.status_code == 400


def test_stale_pending_and_failed_rows_are_replaced(store, client, add_course):
    add_course("c1")
    store.set_document("enrollments", "student_c1", {
        "userId": "student", "courseId": "c1", "status": "pending",
        "createdAt": now() - timedelta(minutes=30),
    })
    assert init(client).status_code == 200
    assert init(client).status_code == 400

    store.update_document("enrollments", "student_c1", {"status": "failed"})
    assert init(client, gateway="zainCash").status_code == 200
    assert store.get_document("enrollments", "student_c1")["paymentMethod"] == "zaincash"


def test_areeba_webhook_completes_enrollment(store, client, add_course):
    add_course("c1")
    init(client)

    res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
    assert res.status_code == 307
    assert res.headers["location"] == "/Course/c1?payment=success"

    enrollment = store.get_document("enrollments", "student_c1")
    assert enrollment["status"] == "completed"
    assert enrollment["enrolledAt"]
    assert store.get_document("courses", "c1")["enrollmentCount"] == 1


def test_areeba_webhook_is_idempotent(store, client, add_course):
    add_course("c1")
    init(client)
    for _ in range(3):
        res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
        assert res.headers["location"] == "/Course/c1?payment=success"
    assert store.get_document("courses", "c1")["enrollmentCount"] == 1


def test_areeba_webhook_unpaid_order_fails_enrollment(store, services, client, add_course):
    add_course("c1")
    init(client)
    services.areeba.order_status = {"status": "FAILED"}
    res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=failed"
    assert store.get_document("enrollments", "student_c1")["status"] == "failed"
    assert store.get_document("courses", "c1")["enrollmentCount"] == 0


def test_areeba_webhook_status_lookup_failure(store, services, client, add_course):
    add_course("c1")
    init(client)
    services.areeba.fail_status = True
    res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=error"
    assert store.get_document("enrollments", "student_c1")["status"] == "pending"


def test_areeba_webhook_unknown_and_missing_params(client):
    res = client.get("/api/payments/areeba/webhook", follow_redirects=False)
    assert res.headers["location"] == "/payment/error?message=missing_params"
    res = client.get("/api/payments/areeba/webhook", params={"orderId": "ar_x"}, follow_redirects=False)
    assert res.headers["location"] == "/payment/error?message=enrollment_not_found"


def test_zaincash_webhook_with_signed_success(store, services, client, add_course):
    add_course("c1")
    init(client, gateway="zainCash")
    token = jwt.encode({"id": "OP1", "status": "success"}, services.settings.zaincash_secret_key, algorithm="HS256")

    res = client.get("/api/payments/zainCash/webhook", params={"token": token}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=success"
    assert store.get_document("enrollments", "student_c1")["status"] == "completed"
    assert store.get_document("courses", "c1")["enrollmentCount"] == 1


def test_zaincash_webhook_failure_status(store, services, client, add_course):
    add_course("c1")
    init(client, gateway="zainCash")
    token = jwt.encode({"operationId": "OP1", "status": "failed"}, services.settings.zaincash_secret_key,
                       algorithm="HS256")
    res = client.get("/api/payments/zainCash/webhook", params={"token": token}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=failed"
    assert store.get_document("enrollments", "student_c1")["status"] == "failed"


def test_zaincash_webhook_rejects_forged_token(store, client, add_course):
    add_course("c1")
    init(client, gateway="zainCash")
    forged = jwt.encode({"id": "OP1", "status": "success"}, "not-the-secret", algorithm="HS256")
    res = client.get("/api/payments/zainCash/webhook", params={"token": forged, "status": "success"},
                     follow_redirects=False)
    assert res.headers["location"] == "/payment/error?message=invalid_token"
    assert store.get_document("enrollments", "student_c1")["status"] == "pending"


def test_zaincash_signing_round_trip(services):
    token = services.zaincash.sign({"orderId": "zc_1"})
    claims = services.zaincash.verify_token(token)
    assert claims["orderId"] == "zc_1"
    assert "iat" in claims


def test_gateway_session_error_carries_500():
    assert GatewaySessionError().status_code == 500


def age_pending(store, minutes=20):
    store.update_document("enrollments", "student_c1", {"createdAt": now() - timedelta(minutes=minutes)})


def audit_statuses(store):
    return sorted((row["paymentId"], row["status"]) for row in store.all("payment_transactions"))


def test_paying_a_superseded_session_still_enrolls(store, client, add_course):
    add_course("c1")
    assert init(client).status_code == 200
    age_pending(store)
    assert init(client).status_code == 200
    assert store.get_document("enrollments", "student_c1")["paymentId"] == "SESSION2"

    res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=success"

    enrollment = store.get_document("enrollments", "student_c1")
    assert enrollment["status"] == "completed"
    assert enrollment["paymentId"] == "SESSION1"
    assert store.get_document("courses", "c1")["enrollmentCount"] == 1
    assert audit_statuses(store) == [("SESSION1", "completed"), ("SESSION2", "initiated")]


def test_paying_both_sessions_flags_the_second_for_refund(store, client, add_course):
    add_course("c1")
    init(client)
    age_pending(store)
    init(client)

    for session in ("SESSION2", "SESSION1", "SESSION1"):
        res = client.get("/api/payments/areeba/webhook", params={"sessionId": session}, follow_redirects=False)
        assert res.headers["location"] == "/Course/c1?payment=success"

    assert store.get_document("enrollments", "student_c1")["paymentId"] == "SESSION2"
    assert store.get_document("courses", "c1")["enrollmentCount"] == 1
    assert audit_statuses(store) == [("SESSION1", "refund_required"), ("SESSION2", "completed")]


def test_unpaid_superseded_session_leaves_current_attempt_pending(store, services, client, add_course):
    add_course("c1")
    init(client)
    age_pending(store)
    init(client)
    services.areeba.order_status = {"status": "FAILED"}

    res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=failed"
    assert store.get_document("enrollments", "student_c1")["status"] == "pending"
    assert audit_statuses(store) == [("SESSION1", "failed"), ("SESSION2", "initiated")]


def test_webhook_without_audit_row_matches_enrollment(store, client, add_course):
    add_course("c1")
    store.set_document("enrollments", "legacy-id", {
        "userId": "student", "courseId": "c1", "status": "pending", "paymentId": "S-OLD", "orderId": "ar_old",
    })
    res = client.get("/api/payments/areeba/webhook", params={"orderId": "ar_old"}, follow_redirects=False)
    assert res.headers["location"] == "/Course/c1?payment=success"
    assert store.get_document("enrollments", "legacy-id")["status"] == "completed"
    assert store.get_document("courses", "c1")["enrollmentCount"] == 1


def test_webhooks_redirect_when_settlement_breaks(store, services, client, add_course, monkeypatch):
    add_course("c1")
    init(client)
    add_course("c2")
    init(client, gateway="zainCash", course_id="c2")

    def broken(func):
        raise RuntimeError("firestore unavailable")

    monkeypatch.setattr(store, "run_transaction", broken)
    res = client.get("/api/payments/areeba/webhook", params={"sessionId": "SESSION1"}, follow_redirects=False)
    assert res.status_code == 307
    assert res.headers["location"] == "/payment/error?message=processing_error"

    token = jwt.encode({"id": "OP1", "status": "success"}, services.settings.zaincash_secret_key, algorithm="HS256")
    res = client.get("/api/payments/zainCash/webhook", params={"token": token}, follow_redirects=False)
    assert res.headers["location"] == "/payment/error?message=processing_error"
