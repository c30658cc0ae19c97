import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from config import Settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Handles to the managed backends, built once per process."""
    settings: Settings
    store: Any
    auth: Any
    storage: Any
    areeba: Any
    zaincash: Any
    verifier: Any


def build_services(settings: Settings) -> Services:
    # Imported here so tests that inject fakes never touch the real SDKs.
    from auth import FirebaseAuthProvider
    from database import create_store, init_firebase
    from guards import TokenVerifier
    from payments import AreebaClient, ZainCashClient
    from storage import ObjectStorage

    firebase_app = init_firebase(settings)
    services = Services(
        settings=settings,
        store=create_store(firebase_app),
        auth=FirebaseAuthProvider(firebase_app, settings.firebase_api_key),
        storage=ObjectStorage.from_settings(settings),
        areeba=AreebaClient.from_settings(settings),
        zaincash=ZainCashClient.from_settings(settings),
        verifier=TokenVerifier(settings.firebase_project_id),
    )
    logger.info("Services initialized for project %s", settings.firebase_project_id)
    return services


def get_services(request: Request) -> Services:
    return request.app.state.services
