"""Error taxonomy shared by every router.

Handlers raise these; ``main.create_app`` turns them into
``{"success": false, "error": <message>}`` with the matching status code.
Messages are user-facing, so they are written in Arabic.
"""


class ConfigError(RuntimeError):
    """A required environment variable is missing. Fatal at boot."""


class AppError(Exception):
    status_code = 500
    message = "حدث خطأ"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class Unauthenticated(AppError):
    status_code = 401
    message = "يرجى تسجيل الدخول أولاً"


class InvalidToken(Unauthenticated):
    message = "جلسة غير صالحة"


class Forbidden(AppError):
    status_code = 403
    message = "غير مصرح"


class NotFound(AppError):
    status_code = 404
    message = "العنصر غير موجود"


class CourseNotFound(NotFound):
    message = "الدورة غير موجودة"


class InvalidState(AppError):
    status_code = 400
    message = "لا يمكن تنفيذ العملية"


class NotFree(InvalidState):
    message = "هذه الدورة ليست مجانية"


class AlreadyEnrolled(InvalidState):
    message = "أنت مسجل بالفعل في هذه الدورة"


class PaymentInProgress(InvalidState):
    message = "لديك عملية دفع قيد المعالجة. يرجى إكمال الدفع أو الانتظار 15 دقيقة"


class OwnCourse(InvalidState):
    message = "لا يمكنك التسجيل في دورتك الخاصة"


class UpstreamFailure(AppError):
    status_code = 502
    message = "تعذر الاتصال بالخدمة الخارجية"


class GatewaySessionError(UpstreamFailure):
    status_code = 500
    message = "فشل في إنشاء جلسة الدفع"
