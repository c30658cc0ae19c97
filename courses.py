import logging
from math import ceil
from typing import List, Optional
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from auth import Principal, get_current_user, request_token, require_admin
from database import COURSES, now
from errors import AppError, CourseNotFound, Forbidden, InvalidState
from schemas import CourseData, CourseImages, CoursePricing, Reason
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_PAGE_SIZE = 8
STATIC_PAGES = (
    ("", "daily", 1.0),
    ("/login", "monthly", 0.5),
    ("/register", "monthly", 0.5),
)


# ---------- Helpers ----------

def effective_price(course: dict) -> float:
    price = course.get("price") or 0
    sale_price = course.get("salePrice") or 0
    if 0 < sale_price < price:
        return sale_price
    return price


def get_course_or_404(store, course_id: str) -> dict:
    course = store.get_document(COURSES, course_id)
    if not course:
        raise CourseNotFound()
    return course


def require_owner_or_admin(course: dict, user: Principal) -> None:
    if course.get("createdBy") != user.uid and not user.is_admin:
        raise Forbidden("ليس لديك صلاحية على هذه الدورة")


def optional_user(token: Optional[str] = Depends(request_token),
                  services: Services = Depends(get_services)) -> Optional[Principal]:
    if not token:
        return None
    try:
        return services.auth.verify(token)
    except AppError:
        return None


# ---------- Repository ----------

def create_course(store, data: CourseData, user: Principal) -> str:
    doc = data.to_document()
    doc.update({
        "createdBy": user.uid,
        "status": "draft",
        "isApproved": False,
        "isRejected": False,
        "isDeleted": False,
        "enrollmentCount": 0,
    })
    course_id = store.create_document(COURSES, doc)
    logger.info("Course %s created by %s", course_id, user.uid)
    return course_id


def update_course(store, course_id: str, changes: dict, user: Principal) -> None:
    course = get_course_or_404(store, course_id)
    require_owner_or_admin(course, user)
    store.update_document(COURSES, course_id, changes)


def list_courses(store, category: Optional[str] = None, level: Optional[str] = None,
                 language: Optional[str] = None, page_size: int = DEFAULT_PAGE_SIZE,
                 last_doc_id: Optional[str] = None, created_by: Optional[str] = None) -> dict:
    """One page of courses, newest update first.

    Without ``created_by`` only published, non-deleted courses are listed.
    """
    filters = []
    if created_by:
        filters.append(("createdBy", "==", created_by))
    else:
        filters += [("status", "==", "published"), ("isDeleted", "==", False)]
    if category:
        filters.append(("category", "==", category))
    if level:
        filters.append(("level", "==", level))
    if language:
        filters.append(("language", "==", language))

    total = store.count_documents(COURSES, filters)
    docs = store.get_documents(COURSES, filters, order_by="updatedAt", descending=True,
                               limit=page_size + 1, start_after=last_doc_id)
    courses = docs[:page_size]
    return {
        "success": True,
        "courses": courses,
        "hasMore": len(docs) > page_size,
        "nextCursor": courses[-1]["id"] if courses else None,
        "totalPages": ceil(total / page_size) if page_size else 0,
    }


def publish_course(store, course_id: str, user: Principal) -> None:
    course = get_course_or_404(store, course_id)
    require_owner_or_admin(course, user)
    has_content = bool(course.get("videos")) or bool(course.get("files"))
    has_title = bool((course.get("title") or "").strip())
    has_category = bool((course.get("category") or "").strip())
    if not (has_content and has_title and has_category and course.get("price") is not None):
        raise InvalidState("الدورة غير مكتملة. تأكد من وجود محتوى وعنوان وتصنيف وسعر")
    store.update_document(COURSES, course_id, {"status": "published", "publishedAt": now()})


def set_approval(store, course_id: str, approve: bool, admin: Principal) -> None:
    get_course_or_404(store, course_id)
    store.update_document(COURSES, course_id, {
        "isApproved": approve,
        "isRejected": not approve,
        "approvedAt": now() if approve else None,
        "rejectedAt": None if approve else now(),
        "approvedBy": admin.uid,
    })
    logger.info("Course %s %s by %s", course_id, "approved" if approve else "rejected", admin.uid)


def reject_course(store, course_id: str, admin: Principal, reason: Optional[str]) -> None:
    get_course_or_404(store, course_id)
    store.update_document(COURSES, course_id, {
        "isApproved": False,
        "isRejected": True,
        "rejectedAt": now(),
        "rejectedBy": admin.uid,
        "rejectionReason": reason or "لم يتم تحديد سبب الرفض",
    })
    logger.info("Course %s rejected by %s", course_id, admin.uid)


def reset_course_status(store, course_id: str) -> None:
    get_course_or_404(store, course_id)
    store.update_document(COURSES, course_id, {
        "isApproved": False,
        "isRejected": False,
        "approvedAt": None,
        "rejectedAt": None,
        "approvedBy": None,
        "rejectedBy": None,
        "rejectionReason": None,
    })


def course_stats(store) -> dict:
    courses = store.get_documents(COURSES)
    return {
        "total": len(courses),
        "pending": sum(1 for c in courses if not c.get("isApproved") and not c.get("isRejected")),
        "approved": sum(1 for c in courses if c.get("isApproved") is True),
        "rejected": sum(1 for c in courses if c.get("isRejected") is True),
    }


# ---------- Deletion workflow ----------

def request_deletion(store, course_id: str, user: Principal) -> None:
    course = get_course_or_404(store, course_id)
    require_owner_or_admin(course, user)
    if course.get("isDeleted"):
        raise InvalidState("الدورة محذوفة بالفعل")
    if course.get("deletionStatus") == "requested":
        raise InvalidState("طلب الحذف قيد المراجعة")
    store.update_document(COURSES, course_id, {
        "deletionStatus": "requested",
        "deletionRequestedAt": now(),
        "deletionRequestedBy": user.uid,
    })


def approve_deletion(store, course_id: str, admin: Principal, notes: Optional[str] = None) -> None:
    course = get_course_or_404(store, course_id)
    if course.get("deletionStatus") != "requested":
        raise InvalidState("لا يوجد طلب حذف لهذه الدورة")
    # Soft delete: the document stays, hidden from public listings.
    store.update_document(COURSES, course_id, {
        "deletionStatus": "approved",
        "isDeleted": True,
        "deletedAt": now(),
        "deletedBy": admin.uid,
        "status": "archived",
        "adminNotes": notes or "",
    })
    logger.info("Course %s soft-deleted by %s", course_id, admin.uid)


def reject_deletion(store, course_id: str, reason: Optional[str]) -> None:
    course = get_course_or_404(store, course_id)
    if course.get("deletionStatus") != "requested":
        raise InvalidState("لا يوجد طلب حذف لهذه الدورة")
    store.update_document(COURSES, course_id, {
        "deletionStatus": "rejected",
        "deletionRejectedAt": now(),
        "deletionRejectionReason": reason or "",
    })


def restore_course(store, course_id: str, admin: Principal) -> None:
    course = get_course_or_404(store, course_id)
    if not course.get("isDeleted"):
        raise InvalidState("الدورة ليست محذوفة")
    store.update_document(COURSES, course_id, {
        "isDeleted": False,
        "deletionStatus": "none",
        "status": "draft",
        "restoredAt": now(),
        "restoredBy": admin.uid,
    })


# ---------- Sitemap ----------

def build_sitemap(store, base_url: str) -> List[dict]:
    """Static pages plus every published course.

    A failing course query degrades to the static pages only.
    """
    base_url = base_url.rstrip("/")
    today = now().isoformat()
    entries = [
        {"url": f"{base_url}{path}", "lastModified": today, "changeFrequency": freq, "priority": priority}
        for path, freq, priority in STATIC_PAGES
    ]
    try:
        courses = store.get_documents(COURSES, {"status": "published", "isDeleted": False})
    except Exception:
        logger.exception("Error generating sitemap, serving static pages only")
        return entries
    for course in courses:
        entries.append({
            "url": f"{base_url}/course/{course['id']}",
            "lastModified": course.get("updatedAt") or today,
            "changeFrequency": "weekly",
            "priority": 0.9,
        })
    return entries


def render_sitemap(entries: List[dict]) -> str:
    rows = "".join(
        f"<url><loc>{escape(e['url'])}</loc><lastmod>{escape(e['lastModified'])}</lastmod>"
        f"<changefreq>{e['changeFrequency']}</changefreq><priority>{e['priority']}</priority></url>"
        for e in entries
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{rows}</urlset>'
    )


# ---------- Endpoints ----------

@router.post("/api/courses")
def create_course_endpoint(data: CourseData, user: Principal = Depends(get_current_user),
                           services: Services = Depends(get_services)):
    course_id = create_course(services.store, data, user)
    return {"success": True, "courseId": course_id}


@router.get("/api/courses")
def list_courses_endpoint(category: Optional[str] = None, level: Optional[str] = None,
                          language: Optional[str] = None,
                          page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize", ge=1, le=50),
                          last_doc_id: Optional[str] = Query(None, alias="lastDocId"),
                          services: Services = Depends(get_services)):
    return list_courses(services.store, category, level, language, page_size, last_doc_id)


@router.get("/api/courses/mine")
def my_courses(page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize", ge=1, le=50),
               last_doc_id: Optional[str] = Query(None, alias="lastDocId"),
               user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return list_courses(services.store, page_size=page_size, last_doc_id=last_doc_id, created_by=user.uid)


@router.get("/api/courses/{course_id}")
def get_course(course_id: str, user: Optional[Principal] = Depends(optional_user),
               services: Services = Depends(get_services)):
    course = get_course_or_404(services.store, course_id)
    if course.get("isDeleted"):
        privileged = user is not None and (user.is_admin or course.get("createdBy") == user.uid)
        if not privileged:
            raise CourseNotFound("هذه الدورة محذوفة")
    return {"success": True, "course": course}


@router.put("/api/courses/{course_id}")
def update_course_endpoint(course_id: str, data: CourseData, user: Principal = Depends(get_current_user),
                           services: Services = Depends(get_services)):
    update_course(services.store, course_id, data.to_document(), user)
    return {"success": True, "message": "تم تحديث الدورة بنجاح", "courseId": course_id}


@router.patch("/api/courses/{course_id}/pricing")
def update_pricing(course_id: str, pricing: CoursePricing, user: Principal = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    update_course(services.store, course_id, pricing.to_document(), user)
    return {"success": True}


@router.put("/api/courses/{course_id}/images")
def save_images(course_id: str, body: CourseImages, user: Principal = Depends(get_current_user),
                services: Services = Depends(get_services)):
    update_course(services.store, course_id, {"images": body.images}, user)
    return {"success": True}


@router.post("/api/courses/{course_id}/publish")
def publish(course_id: str, user: Principal = Depends(get_current_user),
            services: Services = Depends(get_services)):
    publish_course(services.store, course_id, user)
    return {"success": True, "message": "تم نشر الدورة بنجاح"}


@router.post("/api/courses/{course_id}/unpublish")
def unpublish(course_id: str, user: Principal = Depends(get_current_user),
              services: Services = Depends(get_services)):
    update_course(services.store, course_id, {"status": "draft"}, user)
    return {"success": True, "message": "تم إلغاء نشر الدورة"}


@router.post("/api/courses/{course_id}/deletion-request")
def request_deletion_endpoint(course_id: str, user: Principal = Depends(get_current_user),
                              services: Services = Depends(get_services)):
    request_deletion(services.store, course_id, user)
    return {"success": True, "message": "تم إرسال طلب الحذف للمراجعة"}


@router.post("/api/admin/courses/{course_id}/approve")
def approve(course_id: str, admin: Principal = Depends(require_admin),
            services: Services = Depends(get_services)):
    set_approval(services.store, course_id, True, admin)
    return {"success": True, "message": "تم اعتماد الدورة بنجاح"}


@router.post("/api/admin/courses/{course_id}/reject")
def reject(course_id: str, body: Reason, admin: Principal = Depends(require_admin),
           services: Services = Depends(get_services)):
    reject_course(services.store, course_id, admin, body.reason)
    return {"success": True, "message": "تم رفض الدورة بنجاح"}


@router.post("/api/admin/courses/{course_id}/reset")
def reset(course_id: str, admin: Principal = Depends(require_admin),
          services: Services = Depends(get_services)):
    reset_course_status(services.store, course_id)
    return {"success": True, "message": "تم إعادة تعيين حالة الدورة إلى قيد المراجعة"}


@router.post("/api/admin/courses/{course_id}/deletion/approve")
def approve_deletion_endpoint(course_id: str, body: Reason, admin: Principal = Depends(require_admin),
                              services: Services = Depends(get_services)):
    approve_deletion(services.store, course_id, admin, body.reason)
    return {"success": True, "message": "تم حذف الدورة بنجاح"}


@router.post("/api/admin/courses/{course_id}/deletion/reject")
def reject_deletion_endpoint(course_id: str, body: Reason, admin: Principal = Depends(require_admin),
                             services: Services = Depends(get_services)):
    reject_deletion(services.store, course_id, body.reason)
    return {"success": True, "message": "تم رفض طلب الحذف"}


@router.post("/api/admin/courses/{course_id}/restore")
def restore(course_id: str, admin: Principal = Depends(require_admin),
            services: Services = Depends(get_services)):
    restore_course(services.store, course_id, admin)
    return {"success": True, "message": "تم استعادة الدورة بنجاح"}


@router.get("/api/admin/stats")
def admin_stats(admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
    return {"success": True, "stats": course_stats(services.store)}


@router.get("/sitemap.xml")
def sitemap(services: Services = Depends(get_services)):
    entries = build_sitemap(services.store, services.settings.app_url)
    return Response(content=render_sitemap(entries), media_type="application/xml")
