from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from auth import Principal, get_current_user
from database import COURSES, FAVORITES, now
from errors import InvalidState
from schemas import CourseIdList, FavoriteCreate
from services import Services, get_services

router = APIRouter()


def favorite_key(user_id: str, course_id: str) -> str:
    return f"{user_id}_{course_id}"


def add_favorite(store, user: Principal, fav: FavoriteCreate) -> None:
    key = favorite_key(user.uid, fav.course_id)
    if store.get_document(FAVORITES, key) is not None:
        raise InvalidState("الدورة موجودة بالفعل في المفضلة")
    store.set_document(FAVORITES, key, {
        "userId": user.uid,
        "courseId": fav.course_id,
        "courseTitle": fav.course_title,
        "courseThumbnail": fav.course_thumbnail,
        "createdAt": now(),
    })


def check_favorites(store, user_id: str, course_ids: List[str]) -> Dict[str, bool]:
    docs = store.get_many(FAVORITES, [favorite_key(user_id, c) for c in course_ids])
    return {course_id: doc is not None for course_id, doc in zip(course_ids, docs)}


def list_favorites(store, user_id: str, limit: int = 20, last_doc_id: Optional[str] = None) -> dict:
    """A page of the user's favorites joined with current course data."""
    docs = store.get_documents(FAVORITES, {"userId": user_id}, order_by="createdAt", descending=True,
                               limit=limit + 1, start_after=last_doc_id)
    page = docs[:limit]
    courses = store.get_many(COURSES, [fav["courseId"] for fav in page])
    return {
        "success": True,
        "favorites": [c for c in courses if c and not c.get("isDeleted")],
        "hasMore": len(docs) > limit,
        "lastDocId": page[-1]["id"] if page else None,
    }


# ---------- Endpoints ----------

@router.post("/api/favorites")
def add(body: FavoriteCreate, user: Principal = Depends(get_current_user),
        services: Services = Depends(get_services)):
    add_favorite(services.store, user, body)
    return {"success": True, "message": "تمت إضافة الدورة إلى المفضلة"}


@router.delete("/api/favorites/{course_id}")
def remove(course_id: str, user: Principal = Depends(get_current_user),
           services: Services = Depends(get_services)):
    services.store.delete_document(FAVORITES, favorite_key(user.uid, course_id))
    return {"success": True, "message": "تمت إزالة الدورة من المفضلة"}


@router.get("/api/favorites")
def favorites(limit: int = Query(20, ge=1, le=50), last_doc_id: Optional[str] = Query(None, alias="lastDocId"),
              user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return list_favorites(services.store, user.uid, limit, last_doc_id)


@router.get("/api/favorites/{course_id}")
def is_favorited(course_id: str, user: Principal = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    doc = services.store.get_document(FAVORITES, favorite_key(user.uid, course_id))
    return {"success": True, "isFavorited": doc is not None}


@router.post("/api/favorites/check")
def check_many(body: CourseIdList, user: Principal = Depends(get_current_user),
               services: Services = Depends(get_services)):
    return {"success": True, "favorites": check_favorites(services.store, user.uid, body.course_ids)}
