import hashlib
import logging
import os
import re
import secrets
import time
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, File, Query, UploadFile

from auth import Principal, get_current_user
from courses import get_course_or_404, require_owner_or_admin
from database import COURSES, ENROLLMENTS, now
from enrollments import enrollment_key, is_valid_enrollment
from errors import Forbidden, InvalidState, NotFound, UpstreamFailure
from schemas import CourseFile
from services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

MB = 1024 * 1024
MAX_FILENAME_LENGTH = 255

VIDEO_EXTENSIONS = {".mp4", ".webm", ".mov", ".avi", ".mkv"}
MODEL_EXTENSIONS = {".stl", ".obj", ".fbx", ".blend", ".gltf", ".glb", ".ply"}
ARCHIVE_EXTENSIONS = {".zip", ".rar", ".7z", ".tar", ".gz"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".svg"}

EXTENSION_MIME_MAP = {
    ".pdf": ["application/pdf"],
    ".doc": ["application/msword"],
    ".docx": ["application/vnd.openxmlformats-officedocument.wordprocessingml.document"],
    ".ppt": ["application/vnd.ms-powerpoint"],
    ".pptx": ["application/vnd.openxmlformats-officedocument.presentationml.presentation"],
    ".xls": ["application/vnd.ms-excel"],
    ".xlsx": ["application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"],
    ".txt": ["text/plain"],
    ".csv": ["text/csv"],
    ".mp4": ["video/mp4"],
    ".webm": ["video/webm"],
    ".mov": ["video/quicktime"],
    ".avi": ["video/x-msvideo"],
    ".mkv": ["video/x-matroska"],
    ".mp3": ["audio/mpeg"],
    ".wav": ["audio/wav", "audio/wave", "audio/x-wav"],
    ".m4a": ["audio/x-m4a"],
    ".aac": ["audio/aac"],
    ".jpg": ["image/jpeg"],
    ".jpeg": ["image/jpeg"],
    ".png": ["image/png"],
    ".webp": ["image/webp"],
    ".gif": ["image/gif"],
    ".svg": ["image/svg+xml"],
    ".zip": ["application/zip", "application/x-zip-compressed"],
    ".rar": ["application/x-rar-compressed"],
    ".7z": ["application/x-7z-compressed"],
    ".tar": ["application/x-tar"],
    ".gz": ["application/gzip"],
    ".stl": ["model/stl", "application/octet-stream", "application/sla"],
    ".obj": ["model/obj", "application/octet-stream", "text/plain"],
    ".fbx": ["application/octet-stream"],
    ".blend": ["application/octet-stream"],
    ".gltf": ["model/gltf+json", "application/json"],
    ".glb": ["model/gltf-binary", "application/octet-stream"],
    ".ply": ["model/ply", "application/octet-stream", "text/plain"],
    ".js": ["text/javascript", "application/javascript"],
    ".jsx": ["text/javascript", "application/javascript"],
    ".ts": ["text/typescript", "application/typescript"],
    ".tsx": ["text/typescript", "application/typescript"],
    ".py": ["text/x-python", "text/plain"],
    ".css": ["text/css"],
    ".html": ["text/html"],
    ".json": ["application/json"],
    ".xml": ["application/xml", "text/xml"],
}
ALLOWED_EXTENSIONS = set(EXTENSION_MIME_MAP)
ALLOWED_MIME_TYPES = {mime for mimes in EXTENSION_MIME_MAP.values() for mime in mimes}


class ObjectStorage:
    """Course files in an S3-compatible bucket."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "ObjectStorage":
        client = boto3.client(
            "s3",
            endpoint_url=settings.storage_endpoint,
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            region_name="auto",
        )
        return cls(client, settings.r2_bucket_name)

    def upload(self, key: str, body: bytes, content_type: str, metadata: dict) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type,
                                   ContentLength=len(body), Metadata=metadata)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Upload of %s failed: %s", key, exc)
            raise UpstreamFailure("فشل رفع الملف. حاول مرة أخرى")

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Delete of %s failed: %s", key, exc)
            raise UpstreamFailure("فشل حذف الملف. حاول مرة أخرى")

    def presigned_url(self, key: str, expires_in: int = 3600, download: bool = False) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if download:
            params["ResponseContentDisposition"] = f'attachment; filename="{key.rsplit("/", 1)[-1]}"'
        try:
            return self.client.generate_presigned_url("get_object", Params=params, ExpiresIn=expires_in)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Could not sign URL for %s: %s", key, exc)
            raise UpstreamFailure("فشل إنشاء رابط الملف")


# ---------- Validation ----------

def max_size_for(extension: str) -> int:
    if extension in MODEL_EXTENSIONS:
        return 100 * MB
    if extension in VIDEO_EXTENSIONS:
        return 200 * MB
    if extension in ARCHIVE_EXTENSIONS:
        return 150 * MB
    if extension in IMAGE_EXTENSIONS:
        return 20 * MB
    return 50 * MB


def validate_file(filename: str, size: int, content_type: Optional[str]) -> str:
    """Check an upload against the allow-lists; returns its lower-cased extension."""
    extension = os.path.splitext(filename or "")[1].lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise InvalidState(f"File extension {extension or '(none)'} is not allowed")
    limit = max_size_for(extension)
    if size > limit:
        raise InvalidState(f"File size exceeds {limit // MB}MB limit for {extension} files")
    if size == 0:
        raise InvalidState("File is empty")
    # Browsers report odd types for binary formats; any allowed type passes.
    if content_type not in EXTENSION_MIME_MAP[extension] and content_type not in ALLOWED_MIME_TYPES:
        raise InvalidState(f"File type mismatch: {extension} files should be "
                           f"{EXTENSION_MIME_MAP[extension][0]}, but got {content_type}")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise InvalidState("Filename is too long")
    return extension


def sanitize_filename(filename: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", filename)
    sanitized = re.sub(r"_{2,}", "_", sanitized).strip("._-")
    return sanitized or f"file_{int(time.time() * 1000)}"


def secure_key(course_id: str, extension: str) -> str:
    return f"courses/{course_id}/{int(time.time() * 1000)}_{secrets.token_hex(8)}{extension}"


def is_safe_key(key: str, course_id: str) -> bool:
    return bool(key) and ".." not in key and key.startswith(f"courses/{course_id}/")


def find_file(course: dict, key: str) -> Optional[dict]:
    return next((f for f in course.get("files") or [] if f.get("filename") == key), None)


def can_read_files(store, course: dict, user: Principal) -> bool:
    if user.is_admin or course.get("createdBy") == user.uid:
        return True
    return is_valid_enrollment(store.get_document(ENROLLMENTS, enrollment_key(user.uid, course["id"])))


# ---------- Operations ----------

def upload_course_file(store, storage: ObjectStorage, course_id: str, user: Principal, filename: str,
                       content: bytes, content_type: Optional[str]) -> dict:
    course = get_course_or_404(store, course_id)
    require_owner_or_admin(course, user)
    extension = validate_file(filename, len(content), content_type)

    key = secure_key(course_id, extension)
    digest = hashlib.sha256(content).hexdigest()
    timestamp = now()
    storage.upload(key, content, content_type or "application/octet-stream", {
        "uploadedAt": timestamp.isoformat(),
        "fileHash": digest,
        "uploader": user.uid,
        "courseId": course_id,
    })

    record = CourseFile(
        id=secrets.token_hex(8),
        filename=key,
        original_name=sanitize_filename(filename),
        size=len(content),
        type=content_type or "application/octet-stream",
        uploaded_at=timestamp.isoformat(),
    ).to_document()

    def append(txn) -> None:
        current = txn.get(COURSES, course_id) or {}
        files = list(current.get("files") or [])
        record["order"] = len(files)
        txn.update(COURSES, course_id, {"files": files + [record], "updatedAt": timestamp})

    store.run_transaction(append)
    logger.info("File %s (%s bytes, sha256 %s) uploaded to course %s by %s",
                key, len(content), digest, course_id, user.uid)
    return record


def delete_course_file(store, storage: ObjectStorage, course_id: str, user: Principal, key: str) -> None:
    if not is_safe_key(key, course_id):
        raise InvalidState("Invalid filename")
    course = get_course_or_404(store, course_id)
    require_owner_or_admin(course, user)
    if find_file(course, key) is None:
        raise NotFound("File not found in course")

    storage.delete(key)

    def remove(txn) -> None:
        current = txn.get(COURSES, course_id) or {}
        files = [f for f in current.get("files") or [] if f.get("filename") != key]
        txn.update(COURSES, course_id, {"files": files, "updatedAt": now()})

    store.run_transaction(remove)
    logger.info("File %s deleted from course %s by %s", key, course_id, user.uid)


def file_url(store, storage: ObjectStorage, course_id: str, user: Principal, key: str,
             download: bool = False, expires_in: int = 3600) -> str:
    if not key or ".." in key:
        raise InvalidState("Invalid filename")
    course = get_course_or_404(store, course_id)
    if not can_read_files(store, course, user):
        raise Forbidden("Access denied to this course")
    if find_file(course, key) is None:
        raise NotFound("File not found in this course")
    url = storage.presigned_url(key, expires_in=expires_in, download=download)
    logger.info("File %s accessed by %s (%s)", key, user.uid, "download" if download else "view")
    return url


# ---------- Endpoints ----------

@router.post("/api/courses/{course_id}/files")
def upload_file(course_id: str, file: UploadFile = File(...), user: Principal = Depends(get_current_user),
                services: Services = Depends(get_services)):
    content = file.file.read()
    record = upload_course_file(services.store, services.storage, course_id, user, file.filename or "",
                                content, file.content_type)
    return {"success": True, "file": record}


@router.delete("/api/courses/{course_id}/files")
def delete_file(course_id: str, filename: str, user: Principal = Depends(get_current_user),
                services: Services = Depends(get_services)):
    delete_course_file(services.store, services.storage, course_id, user, filename)
    return {"success": True}


@router.get("/api/courses/{course_id}/files/url")
def get_file_url(course_id: str, filename: str, download: bool = False,
                 expires_in: int = Query(3600, alias="expiresIn", ge=60, le=7 * 24 * 3600),
                 user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    url = file_url(services.store, services.storage, course_id, user, filename, download, expires_in)
    return {"success": True, "url": url}
