import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query

from auth import Principal, get_current_user, require_admin
from courses import effective_price
from database import (COURSES, ENROLLMENTS, TOPUP_REQUESTS, WALLET_TRANSACTIONS, WALLETS, now,
                      parse_timestamp)
from enrollments import enrollment_key, is_valid_enrollment
from errors import AlreadyEnrolled, CourseNotFound, InvalidState, NotFound, OwnCourse
from payments import ensure_can_start
from schemas import (Enrollment, TopupCreate, TopupDecision, TopupRequest, Wallet, WalletPurchase,
                     WalletTransaction)
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_TOPUP = 1_000
MAX_TOPUP = 5_000_000
TOPUP_TTL = timedelta(days=7)


def new_wallet(user_id: str, user_name: Optional[str]) -> dict:
    timestamp = now()
    return Wallet(user_id=user_id, user_name=user_name or "مستخدم",
                  created_at=timestamp, updated_at=timestamp).to_document()


def get_balance(store, user_id: str) -> float:
    wallet = store.get_document(WALLETS, user_id)
    return (wallet or {}).get("balance") or 0


def paginate(store, collection: str, filters, descending: bool, limit: int,
             last_doc_id: Optional[str], key: str) -> dict:
    docs = store.get_documents(collection, filters, order_by="createdAt", descending=descending,
                               limit=limit + 1, start_after=last_doc_id)
    page = docs[:limit]
    return {
        "success": True,
        key: page,
        "hasMore": len(docs) > limit,
        "lastDocId": page[-1]["id"] if page else None,
    }


# ---------- Top-ups ----------

def is_expired(request: dict) -> bool:
    expires_at = parse_timestamp(request.get("expiresAt"))
    return expires_at is not None and expires_at <= now()


def expire_stale_requests(store, user_id: str) -> list:
    """Mark the user's overdue pending requests expired; returns those still live."""
    live = []
    for request in store.get_documents(TOPUP_REQUESTS, {"userId": user_id, "status": "pending"}):
        if is_expired(request):
            store.update_document(TOPUP_REQUESTS, request["id"], {"status": "expired"})
            logger.info("Top-up request %s expired", request["id"])
        else:
            live.append(request)
    return live


def create_topup_request(store, user: Principal, amount: float, sender_name: Optional[str]) -> dict:
    if amount < MIN_TOPUP:
        raise InvalidState("الحد الأدنى للإيداع 1,000 د.ع")
    if amount > MAX_TOPUP:
        raise InvalidState("الحد الأقصى للإيداع 5,000,000 د.ع")

    if store.get_document(WALLETS, user.uid) is None:
        store.set_document(WALLETS, user.uid, new_wallet(user.uid, user.name))

    if expire_stale_requests(store, user.uid):
        raise InvalidState("لديك طلب إيداع قيد المراجعة")

    timestamp = now()
    request = TopupRequest(
        user_id=user.uid,
        user_email=user.email or "",
        user_name=user.name or "مستخدم",
        amount=amount,
        sender_name=sender_name,
        created_at=timestamp,
        expires_at=timestamp + TOPUP_TTL,
        updated_at=timestamp,
    ).to_document()
    request_id = store.create_document(TOPUP_REQUESTS, request)
    logger.info("Top-up request %s for %s created by %s", request_id, amount, user.uid)
    return store.get_document(TOPUP_REQUESTS, request_id)


def approve_topup(store, request_id: str, admin: Principal, notes: Optional[str] = None) -> float:
    """Credit the requester's wallet. Returns the new balance."""

    def approve(txn) -> float:
        request = txn.get(TOPUP_REQUESTS, request_id)
        if not request:
            raise NotFound("الطلب غير موجود")
        wallet = txn.get(WALLETS, request["userId"])
        if request.get("status") != "pending":
            raise InvalidState("الطلب تمت معالجته مسبقاً")
        if is_expired(request):
            raise InvalidState("انتهت صلاحية الطلب")

        timestamp = now()
        amount = request["amount"]
        balance = (wallet or {}).get("balance") or 0
        new_balance = balance + amount
        if wallet is None:
            created = new_wallet(request["userId"], request.get("userName"))
            created.update({"balance": new_balance, "totalTopups": amount})
            txn.set(WALLETS, request["userId"], created)
        else:
            txn.update(WALLETS, request["userId"], {
                "balance": new_balance,
                "totalTopups": (wallet.get("totalTopups") or 0) + amount,
                "updatedAt": timestamp,
            })
        txn.update(TOPUP_REQUESTS, request_id, {
            "status": "approved",
            "processedBy": admin.uid,
            "processedAt": timestamp,
            "adminNotes": notes or "",
            "updatedAt": timestamp,
        })
        txn.create(WALLET_TRANSACTIONS, WalletTransaction(
            user_id=request["userId"],
            type="topup",
            amount=amount,
            balance_before=balance,
            balance_after=new_balance,
            description="إيداع",
            metadata={"topupRequestId": request_id},
            created_at=timestamp,
        ).to_document())
        return new_balance

    new_balance = store.run_transaction(approve)
    logger.info("Top-up request %s approved by %s", request_id, admin.uid)
    return new_balance


def reject_topup(store, request_id: str, admin: Principal, reason: Optional[str]) -> None:
    request = store.get_document(TOPUP_REQUESTS, request_id)
    if not request:
        raise NotFound("الطلب غير موجود")
    if request.get("status") != "pending":
        raise InvalidState("الطلب تمت معالجته مسبقاً")
    timestamp = now()
    store.update_document(TOPUP_REQUESTS, request_id, {
        "status": "rejected",
        "rejectionReason": reason or "",
        "processedBy": admin.uid,
        "processedAt": timestamp,
        "updatedAt": timestamp,
    })
    logger.info("Top-up request %s rejected by %s", request_id, admin.uid)


# ---------- Purchases ----------

def purchase_course_with_wallet(store, user: Principal, course_id: str, protection_key: str) -> dict:
    """Buy ``course_id`` from the user's balance.

    The purchase ledger entry is keyed by the protection key, so a retried
    request finds it and returns the first outcome instead of charging twice.
    """
    enrollment_id = enrollment_key(user.uid, course_id)
    entry_id = f"{user.uid}_{protection_key}"

    def purchase(txn) -> dict:
        previous = txn.get(WALLET_TRANSACTIONS, entry_id)
        course = txn.get(COURSES, course_id)
        wallet = txn.get(WALLETS, user.uid)
        enrollment = txn.get(ENROLLMENTS, enrollment_id)

        if previous is not None:
            return {
                "enrollmentId": previous.get("metadata", {}).get("enrollmentId"),
                "newBalance": previous.get("balanceAfter"),
                "isDuplicate": True,
            }
        if not course or course.get("isDeleted"):
            raise CourseNotFound()
        price = effective_price(course)
        if course.get("isFree") or price == 0:
            raise InvalidState("هذه دورة مجانية")
        instructor_id = course.get("createdBy")
        if not instructor_id:
            raise InvalidState("معلومات المدرب غير موجودة")
        if instructor_id == user.uid:
            raise OwnCourse("لا يمكنك شراء دورتك الخاصة")
        if is_valid_enrollment(enrollment):
            raise AlreadyEnrolled()
        ensure_can_start(enrollment)

        balance = (wallet or {}).get("balance") or 0
        if wallet is None or balance < price:
            raise InvalidState(f"رصيد غير كافٍ. رصيدك: {balance:,.0f} د.ع")
        instructor_wallet = txn.get(WALLETS, instructor_id)

        timestamp = now()
        new_balance = balance - price
        title = course.get("title") or course_id
        txn.update(WALLETS, user.uid, {
            "balance": new_balance,
            "totalSpent": (wallet.get("totalSpent") or 0) + price,
            "updatedAt": timestamp,
        })

        instructor_before = (instructor_wallet or {}).get("balance") or 0
        if instructor_wallet is None:
            created = new_wallet(instructor_id, course.get("instructorName") or "مدرب")
            created.update({"balance": price, "totalEarnings": price})
            txn.set(WALLETS, instructor_id, created)
        else:
            txn.update(WALLETS, instructor_id, {
                "balance": instructor_before + price,
                "totalEarnings": (instructor_wallet.get("totalEarnings") or 0) + price,
                "updatedAt": timestamp,
            })

        txn.set(ENROLLMENTS, enrollment_id, Enrollment(
            user_id=user.uid,
            course_id=course_id,
            status="completed",
            enrollment_type="paid",
            payment_method="wallet",
            amount=price,
            transaction_id=protection_key,
            enrolled_at=timestamp,
            created_at=timestamp,
            updated_at=timestamp,
        ).to_document())

        metadata = {"courseId": course_id, "courseTitle": title, "enrollmentId": enrollment_id}
        txn.set(WALLET_TRANSACTIONS, entry_id, WalletTransaction(
            user_id=user.uid,
            type="purchase",
            amount=-price,
            balance_before=balance,
            balance_after=new_balance,
            description=f"شراء دورة: {title}",
            metadata=metadata,
            protection_key=protection_key,
            created_at=timestamp,
        ).to_document())
        txn.create(WALLET_TRANSACTIONS, WalletTransaction(
            user_id=instructor_id,
            type="earning",
            amount=price,
            balance_before=instructor_before,
            balance_after=instructor_before + price,
            description=f"إيراد من بيع دورة: {title}",
            metadata=dict(metadata, studentId=user.uid),
            created_at=timestamp,
        ).to_document())
        txn.update(COURSES, course_id, {
            "enrollmentCount": (course.get("enrollmentCount") or 0) + 1,
            "updatedAt": timestamp,
        })
        return {"enrollmentId": enrollment_id, "newBalance": new_balance, "isDuplicate": False}

    result = store.run_transaction(purchase)
    if result["isDuplicate"]:
        logger.info("Duplicate wallet purchase %s ignored", entry_id)
    else:
        logger.info("Wallet purchase of %s by %s", course_id, user.uid)
    return result


# ---------- Endpoints ----------

@router.get("/api/wallet/balance")
def balance(user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"success": True, "balance": get_balance(services.store, user.uid)}


@router.post("/api/wallet/topups")
def request_topup(body: TopupCreate, user: Principal = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    request = create_topup_request(services.store, user, body.amount, body.sender_name)
    return {"success": True, "topupRequest": request, "message": "تم إرسال طلب الإيداع"}


@router.get("/api/wallet/topups/pending")
def my_pending_topups(user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    requests = services.store.get_documents(TOPUP_REQUESTS, {"userId": user.uid, "status": "pending"},
                                            limit=20)
    return {"success": True, "pendingTransactions": requests}


@router.get("/api/wallet/transactions")
def transactions(limit: int = Query(20, ge=1, le=100), last_doc_id: Optional[str] = Query(None, alias="lastDocId"),
                 user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return paginate(services.store, WALLET_TRANSACTIONS, {"userId": user.uid}, True, limit, last_doc_id,
                    "transactions")


@router.post("/api/wallet/purchase")
def purchase(body: WalletPurchase, user: Principal = Depends(get_current_user),
             services: Services = Depends(get_services)):
    result = purchase_course_with_wallet(services.store, user, body.course_id, body.protection_key)
    message = "تم الشراء بالفعل" if result["isDuplicate"] else "تم الشراء بنجاح!"
    return {"success": True, "message": message, **result}


@router.get("/api/admin/topups")
def pending_topups(limit: int = Query(50, ge=1, le=100), last_doc_id: Optional[str] = Query(None, alias="lastDocId"),
                   admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
    return paginate(services.store, TOPUP_REQUESTS, {"status": "pending"}, False, limit, last_doc_id,
                    "requests")


@router.post("/api/admin/topups/{request_id}/approve")
def approve(request_id: str, body: TopupDecision, admin: Principal = Depends(require_admin),
            services: Services = Depends(get_services)):
    new_balance = approve_topup(services.store, request_id, admin, body.admin_notes)
    return {"success": True, "message": "تمت الموافقة", "newBalance": new_balance}


@router.post("/api/admin/topups/{request_id}/reject")
def reject(request_id: str, body: TopupDecision, admin: Principal = Depends(require_admin),
           services: Services = Depends(get_services)):
    reject_topup(services.store, request_id, admin, body.rejection_reason)
    return {"success": True, "message": "تم رفض الطلب"}
