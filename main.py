import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import auth
import courses
import enrollments
import favorites
import payments
import storage
import wallet
from config import Settings
from errors import AppError
from guards import RouteGuardMiddleware
from services import Services, build_services

APP_TITLE = "ReadIQ API"

logger = logging.getLogger(__name__)


def validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "بيانات غير صالحة"
    first = errors[0]
    error = (first.get("ctx") or {}).get("error")
    message = str(error) if error else first.get("msg", "بيانات غير صالحة")
    return message.replace("Value error, ", "", 1)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.admin_bootstrap_email:
            services.auth.bootstrap_admin(settings.admin_bootstrap_email)
        yield

    app = FastAPI(title=APP_TITLE, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(RouteGuardMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_url.rstrip("/")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": validation_message(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "حدث خطأ"})

    for module in (auth, courses, enrollments, payments, wallet, storage, favorites):
        app.include_router(module.router)

    @app.get("/")
    def read_root():
        return {"message": f"{APP_TITLE} is running"}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": [],
        }
        store = services.store
        try:
            response["database_name"] = store.name
            response["collections"] = store.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        return response

    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=port)
