"""
Database Schemas

Pydantic models for the Firestore collections and the request bodies the
client sends. Documents are stored with camelCase keys, so every model
serializes by alias:
- Course -> "courses" collection
- Enrollment -> "enrollments" collection
- Wallet -> "wallets" collection (keyed by userId)
- WalletTransaction -> "wallet_transactions" collection
- TopupRequest -> "topup_requests" collection
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CourseLevel = Literal["beginner", "intermediate", "advanced", "all_levels"]
CourseLanguage = Literal["arabic", "english", "french", "spanish"]
CourseStatus = Literal["draft", "published", "archived"]
EnrollmentStatus = Literal["pending", "completed", "free", "failed"]
WalletTransactionType = Literal["topup", "purchase", "earning", "refund", "bonus", "penalty"]
TopupStatus = Literal["pending", "approved", "rejected", "expired"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------- Courses ----------

class CourseData(CamelModel):
    """Course form as submitted by an instructor (create and full edit)."""
    title: str
    subtitle: Optional[str] = None
    category: str
    price: float
    description: str
    level: CourseLevel
    language: CourseLanguage
    duration: float = 0
    learning_points: Optional[List[str]] = None
    requirements: Optional[List[str]] = None
    image: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_length(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("يجب إدخال عنوان الدورة")
        if len(v) < 10:
            raise ValueError("يجب أن يحتوي العنوان على 10 أحرف على الأقل")
        return v

    @field_validator("category")
    @classmethod
    def category_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("يجب اختيار تصنيف الدورة")
        return v.strip()

    @field_validator("price")
    @classmethod
    def price_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("يجب أن يكون السعر صفرًا أو أكثر")
        return v

    @field_validator("description")
    @classmethod
    def description_length(cls, v: str) -> str:
        if len(v.strip()) < 50:
            raise ValueError("يجب أن يحتوي الوصف على 50 حرفًا على الأقل")
        return v

    @field_validator("duration")
    @classmethod
    def duration_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("يجب أن تكون المدة صفرًا أو أكثر")
        return v


class CoursePricing(CamelModel):
    price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None


class CourseImages(CamelModel):
    images: List[str]


class CourseFile(CamelModel):
    id: str
    filename: str
    original_name: str
    size: int
    type: str
    uploaded_at: str
    order: Optional[int] = None
    related_video_id: Optional[str] = None


class Reason(CamelModel):
    reason: Optional[str] = None


# ---------- Enrollments & payments ----------

class Enrollment(CamelModel):
    user_id: str
    course_id: str
    status: EnrollmentStatus
    enrollment_type: Optional[Literal["free", "paid"]] = None
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[float] = None
    transaction_id: Optional[str] = None
    enrolled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CourseIdList(CamelModel):
    course_ids: List[str]


class FreeEnrollment(CamelModel):
    course_id: str
    token: Optional[str] = None


class PaymentInit(CamelModel):
    course_id: str
    course_title: str
    amount: float = Field(..., ge=0)
    token: Optional[str] = None


# ---------- Wallet ----------

class Wallet(CamelModel):
    user_id: str
    user_name: str = "مستخدم"
    balance: float = 0
    total_topups: float = 0
    total_spent: float = 0
    total_earnings: float = 0
    daily_limit: float = 5_000_000
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WalletTransaction(CamelModel):
    user_id: str
    type: WalletTransactionType
    amount: float
    balance_before: float
    balance_after: float
    description: str = ""
    metadata: dict = Field(default_factory=dict)
    protection_key: Optional[str] = None
    created_at: Optional[datetime] = None


class TopupRequest(CamelModel):
    user_id: str
    user_email: str = ""
    user_name: str = "مستخدم"
    amount: float
    status: TopupStatus = "pending"
    sender_name: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TopupCreate(CamelModel):
    amount: float
    sender_name: Optional[str] = None


class TopupDecision(CamelModel):
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class WalletPurchase(CamelModel):
    course_id: str
    protection_key: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")


# ---------- Favorites & session ----------

class FavoriteCreate(CamelModel):
    course_id: str
    course_title: str
    course_thumbnail: Optional[str] = None


class SessionTokens(CamelModel):
    token: str
    refresh_token: str
