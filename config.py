import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from errors import ConfigError

REQUIRED_ENV = {
    "firebase_service_account_json": "FIREBASE_SERVICE_ACCOUNT_JSON",
    "firebase_project_id": "FIREBASE_PROJECT_ID",
    "firebase_api_key": "FIREBASE_API_KEY",
    "r2_account_id": "R2_ACCOUNT_ID",
    "r2_access_key_id": "R2_ACCESS_KEY_ID",
    "r2_secret_access_key": "R2_SECRET_ACCESS_KEY",
    "r2_bucket_name": "R2_BUCKET_NAME",
    "areeba_merchant_id": "AREEBA_MERCHANT_ID",
    "areeba_api_password": "AREEBA_API_PASSWORD",
    "zaincash_merchant_id": "ZAINCASH_MERCHANT_ID",
    "zaincash_secret_key": "ZAINCASH_SECRET_KEY",
    "zaincash_msisdn": "ZAINCASH_MSISDN",
    "app_url": "APP_URL",
}


class Settings(BaseModel):
    firebase_service_account_json: str
    firebase_project_id: str
    firebase_api_key: str

    r2_account_id: str
    r2_access_key_id: str
    r2_secret_access_key: str
    r2_bucket_name: str
    r2_endpoint: Optional[str] = None

    areeba_merchant_id: str
    areeba_api_password: str
    areeba_api_url: str = "https://areeba.iq/api"
    areeba_checkout_url: str = "https://areeba.iq/checkout"

    zaincash_merchant_id: str
    zaincash_secret_key: str
    zaincash_msisdn: str
    zaincash_api_url: str = "https://api.zaincash.iq/transaction/pay"

    app_url: str
    admin_bootstrap_email: Optional[str] = None
    production: bool = False
    log_level: str = "INFO"

    @property
    def storage_endpoint(self) -> str:
        return self.r2_endpoint or f"https://{self.r2_account_id}.r2.cloudflarestorage.com"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from the process environment (and a local .env).

        Every missing required variable is reported at once so a broken
        deployment fails on boot instead of on the first request.
        """
        load_dotenv()
        missing = [env for env in REQUIRED_ENV.values() if not os.getenv(env)]
        if missing:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        values = {field: os.environ[env] for field, env in REQUIRED_ENV.items()}
        optional = {
            "r2_endpoint": os.getenv("R2_ENDPOINT"),
            "areeba_api_url": os.getenv("AREEBA_API_URL"),
            "areeba_checkout_url": os.getenv("AREEBA_CHECKOUT_URL"),
            "zaincash_api_url": os.getenv("ZAINCASH_API_URL"),
            "admin_bootstrap_email": os.getenv("ADMIN_BOOTSTRAP_EMAIL"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        values.update({k: v for k, v in optional.items() if v})
        values["production"] = os.getenv("APP_ENV", "development").lower() == "production"
        return cls(**values)
