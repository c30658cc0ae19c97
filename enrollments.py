import logging
from typing import Dict, List

from fastapi import APIRouter, Depends
from google.api_core.exceptions import GoogleAPIError

from auth import Principal, get_current_user, request_token, require_admin, resolve_principal
from courses import get_course_or_404
from database import COURSES, ENROLLMENTS, now
from errors import NotFree, OwnCourse, UpstreamFailure
from schemas import CourseIdList, Enrollment, FreeEnrollment
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

COUNTED_STATUSES = ["completed", "free"]


def enrollment_key(user_id: str, course_id: str) -> str:
    return f"{user_id}_{course_id}"


def is_valid_enrollment(doc) -> bool:
    if not doc:
        return False
    return doc.get("enrollmentType") == "free" or doc.get("status") == "completed"


def check_enrollments(store, user_id: str, course_ids: List[str]) -> Dict[str, bool]:
    """Map each course id to whether ``user_id`` holds a valid enrollment in it."""
    keys = [enrollment_key(user_id, course_id) for course_id in course_ids]
    try:
        docs = store.get_many(ENROLLMENTS, keys)
    except GoogleAPIError:
        logger.exception("Enrollment lookup failed for user %s", user_id)
        raise UpstreamFailure("فشل التحقق من التسجيل في الدورات")
    return {course_id: is_valid_enrollment(doc) for course_id, doc in zip(course_ids, docs)}


def get_free_course(store, course_id: str) -> dict:
    course = get_course_or_404(store, course_id)
    if course.get("price") != 0:
        raise NotFree()
    return course


def enroll_free(store, course_id: str, user: Principal) -> bool:
    """Enroll ``user`` in a free course. Returns True if they were already enrolled."""
    course = get_free_course(store, course_id)
    if course.get("createdBy") == user.uid:
        raise OwnCourse()

    key = enrollment_key(user.uid, course_id)

    def enroll(txn) -> bool:
        existing = txn.get(ENROLLMENTS, key)
        current = txn.get(COURSES, course_id) or {}
        # Pending or failed paid attempts at this key give way to the free row.
        if is_valid_enrollment(existing):
            return True
        timestamp = now()
        txn.set(ENROLLMENTS, key, Enrollment(
            user_id=user.uid,
            course_id=course_id,
            status="completed",
            enrollment_type="free",
            enrolled_at=timestamp,
            created_at=timestamp,
            updated_at=timestamp,
        ).to_document())
        txn.update(COURSES, course_id, {
            "enrollmentCount": (current.get("enrollmentCount") or 0) + 1,
            "updatedAt": timestamp,
        })
        return False

    already_enrolled = store.run_transaction(enroll)
    if not already_enrolled:
        logger.info("Free enrollment %s created", key)
    return already_enrolled


def update_course_enrollment_count(store, course_id: str) -> int:
    count = store.count_documents(ENROLLMENTS, [
        ("courseId", "==", course_id),
        ("status", "in", COUNTED_STATUSES),
    ])
    store.update_document(COURSES, course_id, {"enrollmentCount": count})
    return count


def sync_all_course_enrollment_counts(store) -> int:
    courses = store.get_documents(COURSES)
    for course in courses:
        update_course_enrollment_count(store, course["id"])
    logger.info("Enrollment counts synced for %d courses", len(courses))
    return len(courses)


def enrolled_courses(store, user_id: str) -> List[dict]:
    enrollments = store.get_documents(ENROLLMENTS, {"userId": user_id})
    course_ids = [e["courseId"] for e in enrollments if is_valid_enrollment(e)]
    return [course for course in store.get_many(COURSES, course_ids) if course]


# ---------- Endpoints ----------

@router.post("/api/enrollments/check")
def check_enrollments_endpoint(body: CourseIdList, user: Principal = Depends(get_current_user),
                               services: Services = Depends(get_services)):
    return {"success": True, "enrollments": check_enrollments(services.store, user.uid, body.course_ids)}


@router.post("/api/enrollments/free")
def enroll_free_endpoint(body: FreeEnrollment, token=Depends(request_token),
                         services: Services = Depends(get_services)):
    # Paid courses are refused before the token is looked at.
    get_free_course(services.store, body.course_id)
    user = resolve_principal(services, body.token, token)
    if enroll_free(services.store, body.course_id, user):
        return {"success": True, "message": "أنت مسجل بالفعل في هذه الدورة", "alreadyEnrolled": True}
    return {"success": True, "message": "تم التسجيل في الدورة بنجاح"}


@router.post("/api/admin/sync-enrollments")
def sync_enrollments(admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
    updated = sync_all_course_enrollment_counts(services.store)
    return {"success": True, "message": f"Updated enrollment counts for {updated} courses"}


@router.get("/api/dashboard/courses")
def my_enrolled_courses(user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"success": True, "courses": enrolled_courses(services.store, user.uid)}


@router.get("/api/dashboard/stats")
def dashboard_stats(user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    store = services.store
    return {
        "success": True,
        "stats": {
            "enrolledCoursesCount": len(enrolled_courses(store, user.uid)),
            "createdCoursesCount": store.count_documents(COURSES, {"createdBy": user.uid}),
        },
    }
