import logging
import time
from datetime import timedelta
from typing import Optional, Tuple

import requests
from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse
from jose import JWTError, jwt

from auth import Principal, request_token, resolve_principal
from courses import effective_price, get_course_or_404
from database import COURSES, ENROLLMENTS, PAYMENT_TRANSACTIONS, now, parse_timestamp
from enrollments import COUNTED_STATUSES, enrollment_key, is_valid_enrollment
from errors import (AlreadyEnrolled, CourseNotFound, GatewaySessionError, InvalidState, InvalidToken,
                    PaymentInProgress, UpstreamFailure)
from schemas import Enrollment, PaymentInit
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

GATEWAY_TIMEOUT = 10
PENDING_TTL = timedelta(minutes=15)


# ---------- Gateway clients ----------

class AreebaClient:
    prefix = "ar"
    method = "areeba"

    def __init__(self, merchant_id: str, password: str, api_url: str, checkout_url: str,
                 return_url: str, session: Optional[requests.Session] = None):
        self.merchant_id = merchant_id
        self.password = password
        self.api_url = api_url.rstrip("/")
        self.checkout_url = checkout_url
        self.return_url = return_url
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "AreebaClient":
        return cls(
            merchant_id=settings.areeba_merchant_id,
            password=settings.areeba_api_password,
            api_url=settings.areeba_api_url,
            checkout_url=settings.areeba_checkout_url,
            return_url=f"{settings.app_url.rstrip('/')}/api/payments/areeba/webhook",
        )

    @property
    def _merchant_url(self) -> str:
        return f"{self.api_url}/rest/version/71/merchant/{self.merchant_id}"

    @property
    def _auth(self) -> Tuple[str, str]:
        return f"merchant.{self.merchant_id}", self.password

    def create_session(self, amount: float, order_id: str, description: str) -> dict:
        response = self.session.post(
            f"{self._merchant_url}/session",
            json={
                "apiOperation": "CREATE_CHECKOUT_SESSION",
                "interaction": {"operation": "PURCHASE", "returnUrl": self.return_url},
                "order": {
                    "id": order_id,
                    "amount": f"{amount:.2f}",
                    "currency": "IQD",
                    "description": description,
                },
            },
            auth=self._auth,
            timeout=GATEWAY_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def checkout(self, amount: float, order_id: str, description: str) -> Tuple[str, str]:
        """Create a hosted checkout; returns (payment id, redirect URL)."""
        try:
            data = self.create_session(amount, order_id, description)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Areeba session request failed for %s: %s", order_id, exc)
            raise GatewaySessionError("فشل في إنشاء جلسة Areeba")
        session_id = ((data or {}).get("session") or {}).get("id")
        if not session_id:
            raise GatewaySessionError("فشل في إنشاء جلسة Areeba")
        return session_id, f"{self.checkout_url}?session={session_id}"

    def get_order_status(self, order_id: str) -> dict:
        response = self.session.get(f"{self._merchant_url}/order/{order_id}", auth=self._auth,
                                    timeout=GATEWAY_TIMEOUT)
        response.raise_for_status()
        return response.json()

    def is_paid(self, order_id: str) -> bool:
        try:
            status = self.get_order_status(order_id)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Areeba status lookup failed for %s: %s", order_id, exc)
            raise UpstreamFailure()
        return status.get("status") in ("CAPTURED", "PURCHASED")


class ZainCashClient:
    prefix = "zc"
    method = "zaincash"

    def __init__(self, merchant_id: str, secret_key: str, msisdn: str, api_url: str,
                 redirect_url: str, production: bool = False, session: Optional[requests.Session] = None):
        self.merchant_id = merchant_id
        self.secret_key = secret_key
        self.msisdn = msisdn
        self.api_url = api_url
        self.redirect_url = redirect_url
        self.production = production
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "ZainCashClient":
        return cls(
            merchant_id=settings.zaincash_merchant_id,
            secret_key=settings.zaincash_secret_key,
            msisdn=settings.zaincash_msisdn,
            api_url=settings.zaincash_api_url,
            redirect_url=f"{settings.app_url.rstrip('/')}/api/payments/zainCash/webhook",
            production=settings.production,
        )

    def sign(self, claims: dict) -> str:
        issued_at = int(time.time())
        payload = dict(claims, iat=issued_at, exp=issued_at + 60 * 60 * 4)
        return jwt.encode(payload, self.secret_key, algorithm="HS256")

    def verify_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.secret_key, algorithms=["HS256"])
        except JWTError:
            raise InvalidToken("رمز الدفع غير صالح")

    def create_transaction(self, amount: float, order_id: str, description: str) -> dict:
        token = self.sign({
            "merchantId": self.merchant_id,
            "amount": int(round(amount)),
            "serviceType": description or "Course Payment",
            "msisdn": self.msisdn,
            "orderId": order_id,
            "redirectUrl": self.redirect_url,
            "production": self.production,
            "lang": "ar",
        })
        response = self.session.post(
            self.api_url,
            json={"token": token, "merchantId": self.merchant_id, "lang": "ar"},
            timeout=GATEWAY_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def checkout(self, amount: float, order_id: str, description: str) -> Tuple[str, str]:
        try:
            data = self.create_transaction(amount, order_id, description)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("ZainCash transaction request failed for %s: %s", order_id, exc)
            raise GatewaySessionError("فشل في إنشاء معاملة ZainCash")
        data = data or {}
        if not data.get("id") or not data.get("url"):
            raise GatewaySessionError("فشل في إنشاء معاملة ZainCash")
        return data["id"], data["url"]


# ---------- Initiation ----------

def ensure_can_start(existing: Optional[dict]) -> None:
    if not existing:
        return
    if is_valid_enrollment(existing) or existing.get("status") in COUNTED_STATUSES:
        raise AlreadyEnrolled()
    if existing.get("status") == "pending":
        created_at = parse_timestamp(existing.get("createdAt"))
        if created_at and now() - created_at < PENDING_TTL:
            raise PaymentInProgress()


def initiate_payment(store, gateway, course_id: str, course_title: str, amount: float,
                     user: Principal) -> str:
    """Start a gateway checkout for ``course_id`` and return the redirect URL.

    The pending enrollment lives at the same deterministic key a completed
    one would, so a pair never holds more than one enrollment row. Stale
    pending or failed rows are replaced; every attempt is kept in
    ``payment_transactions``.
    """
    course = get_course_or_404(store, course_id)
    if course.get("isDeleted"):
        raise CourseNotFound()
    price = effective_price(course)
    if course.get("isFree") or price == 0:
        raise InvalidState("هذه دورة مجانية")
    if price != amount:
        raise InvalidState("سعر غير صحيح")

    key = enrollment_key(user.uid, course_id)
    ensure_can_start(store.get_document(ENROLLMENTS, key))
    legacy = store.get_documents(ENROLLMENTS, [
        ("userId", "==", user.uid),
        ("courseId", "==", course_id),
        ("status", "in", COUNTED_STATUSES),
    ], limit=1)
    if legacy:
        raise AlreadyEnrolled()

    order_id = f"{gateway.prefix}_{course_id}_{user.uid}_{int(time.time() * 1000)}"
    payment_id, redirect_url = gateway.checkout(amount, order_id, course_title)

    def write_pending(txn) -> None:
        ensure_can_start(txn.get(ENROLLMENTS, key))
        timestamp = now()
        txn.set(ENROLLMENTS, key, Enrollment(
            user_id=user.uid,
            course_id=course_id,
            status="pending",
            enrollment_type="paid",
            payment_method=gateway.method,
            payment_id=payment_id,
            order_id=order_id,
            amount=amount,
            created_at=timestamp,
            updated_at=timestamp,
        ).to_document())
        txn.create(PAYMENT_TRANSACTIONS, {
            "userId": user.uid,
            "courseId": course_id,
            "paymentMethod": gateway.method,
            "paymentId": payment_id,
            "orderId": order_id,
            "amount": amount,
            "status": "initiated",
            "createdAt": timestamp,
        })

    store.run_transaction(write_pending)
    logger.info("Payment initiated via %s: order=%s payment=%s", gateway.method, order_id, payment_id)
    return redirect_url


# ---------- Completion ----------

PAID_OUTCOMES = ("completed", "refund_required")


def find_enrollment(store, field: str, value: str) -> Optional[dict]:
    docs = store.get_documents(ENROLLMENTS, {field: value}, limit=1)
    return docs[0] if docs else None


def find_attempt(store, field: str, value: Optional[str]) -> Optional[dict]:
    """Locate a checkout attempt by its gateway reference.

    Attempts are matched through their ``payment_transactions`` row, which
    survives a retry that replaces the enrollment's payment reference.
    Enrollments written without an audit row are matched directly.
    """
    if not value:
        return None
    docs = store.get_documents(PAYMENT_TRANSACTIONS, {field: value}, limit=1)
    if docs:
        attempt = docs[0]
        attempt["enrollmentId"] = enrollment_key(attempt["userId"], attempt["courseId"])
        return attempt
    enrollment = find_enrollment(store, field, value)
    if not enrollment:
        return None
    status = enrollment.get("status")
    return {
        "id": None,
        "enrollmentId": enrollment["id"],
        "userId": enrollment.get("userId"),
        "courseId": enrollment["courseId"],
        "paymentMethod": enrollment.get("paymentMethod"),
        "paymentId": enrollment.get("paymentId"),
        "orderId": enrollment.get("orderId"),
        "amount": enrollment.get("amount"),
        "status": "initiated" if status == "pending" else ("completed" if is_valid_enrollment(enrollment)
                                                           else "failed"),
    }


def settle_payment(store, attempt: dict, paid: bool) -> str:
    """Apply a gateway verdict for ``attempt``; returns the attempt's final status.

    An attempt that is already settled is left untouched, so repeated
    callbacks are harmless. A paid attempt that a retry superseded still
    grants the enrollment; if the user is enrolled by then, the attempt is
    flagged ``refund_required``.
    """
    enrollment_id = attempt["enrollmentId"]
    course_id = attempt["courseId"]
    audit_id = attempt.get("id")

    def apply(txn) -> str:
        current = txn.get(ENROLLMENTS, enrollment_id)
        course = txn.get(COURSES, course_id)
        audit = txn.get(PAYMENT_TRANSACTIONS, audit_id) if audit_id else None
        if audit is not None and audit.get("status") != "initiated":
            return audit.get("status")
        if audit is None and current is not None and current.get("status") != "pending":
            return "completed" if is_valid_enrollment(current) else current.get("status")

        timestamp = now()
        owns_row = current is not None and current.get("paymentId") == attempt.get("paymentId")
        if not paid:
            outcome = "failed"
            if owns_row and current.get("status") == "pending":
                txn.update(ENROLLMENTS, enrollment_id, {"status": "failed", "updatedAt": timestamp})
        elif current is not None and is_valid_enrollment(current):
            outcome = "completed" if owns_row else "refund_required"
        else:
            outcome = "completed"
            created_at = parse_timestamp(current.get("createdAt")) if current else None
            txn.set(ENROLLMENTS, enrollment_id, Enrollment(
                user_id=attempt["userId"],
                course_id=course_id,
                status="completed",
                enrollment_type="paid",
                payment_method=attempt.get("paymentMethod"),
                payment_id=attempt.get("paymentId"),
                order_id=attempt.get("orderId"),
                amount=attempt.get("amount"),
                enrolled_at=timestamp,
                created_at=created_at or timestamp,
                updated_at=timestamp,
            ).to_document())
            if course is not None:
                txn.update(COURSES, course_id, {
                    "enrollmentCount": (course.get("enrollmentCount") or 0) + 1,
                    "updatedAt": timestamp,
                })
        if audit is not None:
            txn.update(PAYMENT_TRANSACTIONS, audit_id, {"status": outcome, "updatedAt": timestamp})
        return outcome

    return store.run_transaction(apply)


def course_redirect(course_id: str, outcome: str) -> RedirectResponse:
    return RedirectResponse(url=f"/Course/{course_id}?payment={outcome}", status_code=307)


def error_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(url=f"/payment/error?message={code}", status_code=307)


def settled_redirect(attempt: dict) -> RedirectResponse:
    outcome = "success" if attempt.get("status") in PAID_OUTCOMES else "failed"
    return course_redirect(attempt["courseId"], outcome)


def finish(store, attempt: dict, paid: bool, method: str) -> RedirectResponse:
    status = settle_payment(store, attempt, paid)
    if status == "refund_required":
        logger.warning("%s payment %s captured for an enrollment that already exists; refund required",
                       method, attempt.get("orderId"))
    else:
        logger.info("%s callback for order %s settled as %s", method, attempt.get("orderId"), status)
    return settled_redirect(dict(attempt, status=status))


# ---------- Endpoints ----------

def _init(services: Services, gateway, body: PaymentInit, header_token: Optional[str]) -> dict:
    user = resolve_principal(services, body.token, header_token)
    redirect_url = initiate_payment(services.store, gateway, body.course_id, body.course_title,
                                    body.amount, user)
    return {"success": True, "redirectUrl": redirect_url}


@router.post("/api/payments/areeba/init")
def areeba_init(body: PaymentInit, token=Depends(request_token), services: Services = Depends(get_services)):
    return _init(services, services.areeba, body, token)


@router.post("/api/payments/zainCash/init")
def zaincash_init(body: PaymentInit, token=Depends(request_token), services: Services = Depends(get_services)):
    return _init(services, services.zaincash, body, token)


def areeba_callback(services: Services, order_id: Optional[str], session_id: Optional[str]) -> RedirectResponse:
    if not order_id and not session_id:
        return error_redirect("missing_params")
    store = services.store
    attempt = find_attempt(store, "paymentId", session_id) or find_attempt(store, "orderId", order_id)
    if not attempt:
        logger.error("No payment found for Areeba callback order=%s session=%s", order_id, session_id)
        return error_redirect("enrollment_not_found")
    if attempt.get("status") != "initiated":
        return settled_redirect(attempt)

    try:
        paid = services.areeba.is_paid(attempt["orderId"])
    except UpstreamFailure:
        return course_redirect(attempt["courseId"], "error")
    return finish(store, attempt, paid, "Areeba")


def zaincash_callback(services: Services, token: Optional[str]) -> RedirectResponse:
    if not token:
        return error_redirect("missing_token")
    try:
        claims = services.zaincash.verify_token(token)
    except InvalidToken:
        logger.warning("ZainCash callback with an invalid token")
        return error_redirect("invalid_token")

    operation_id = claims.get("operationId") or claims.get("id")
    attempt = find_attempt(services.store, "paymentId", operation_id)
    if not attempt:
        logger.error("No payment found for ZainCash operation %s", operation_id)
        return error_redirect("enrollment_not_found")
    if attempt.get("status") != "initiated":
        return settled_redirect(attempt)

    paid = claims.get("status") in ("success", "completed")
    return finish(services.store, attempt, paid, "ZainCash")


@router.get("/api/payments/areeba/webhook")
def areeba_webhook(orderId: Optional[str] = None, sessionId: Optional[str] = None,
                   services: Services = Depends(get_services)):
    try:
        return areeba_callback(services, orderId, sessionId)
    except Exception:
        logger.exception("Areeba callback failed for order=%s session=%s", orderId, sessionId)
        return error_redirect("processing_error")


@router.get("/api/payments/zainCash/webhook")
def zaincash_webhook(token: Optional[str] = None, services: Services = Depends(get_services)):
    try:
        return zaincash_callback(services, token)
    except Exception:
        logger.exception("ZainCash callback failed")
        return error_redirect("processing_error")
