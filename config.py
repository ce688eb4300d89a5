"""Environment-aware configuration for the Flask application."""
import os
from datetime import timedelta


BASE_DIR = os.path.abspath(os.path.dirname(__file__))


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
            self.SQLALCHEMY_ENGINE_OPTIONS = {
                "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
                "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
            }
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'rmas.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SESSION_COOKIE_HTTPONLY = True
        self.REMEMBER_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        self.WTF_CSRF_TIME_LIMIT = 3600
        self.WTF_CSRF_ENABLED = True

        self.MAIL_BACKEND = os.getenv("MAIL_BACKEND", "smtp").lower()
        self.MAIL_SERVER = os.getenv("MAIL_SERVER", "")
        self.MAIL_PORT = int(os.getenv("MAIL_PORT", 25))
        self.MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
        self.MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
        self.MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
        self.MAIL_USE_SSL = os.getenv("MAIL_USE_SSL", "false").lower() == "true"
        self.MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", os.getenv("MAIL_USERNAME", ""))
        self.MAIL_TIMEOUT_SECONDS = int(os.getenv("MAIL_TIMEOUT_SECONDS", 10))
        # Notifications never block the admin action that triggered them.
        self.MAIL_ASYNC = os.getenv("MAIL_ASYNC", "true").lower() == "true"

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "")

        self.OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", 10))
        self.TOKEN_TTL_MINUTES = int(os.getenv("TOKEN_TTL_MINUTES", 15))
        self.OTP_LENGTH = int(os.getenv("OTP_LENGTH", 6))
        self.OTP_REQUESTS_PER_WINDOW = int(os.getenv("OTP_REQUESTS_PER_WINDOW", 5))
        self.OTP_REQUEST_WINDOW_MINUTES = int(os.getenv("OTP_REQUEST_WINDOW_MINUTES", 60))
        self.OTP_MAX_VERIFY_ATTEMPTS = int(os.getenv("OTP_MAX_VERIFY_ATTEMPTS", 5))

        self.PDF_RETRY = int(os.getenv("PDF_RETRY", 3))
        self.PDF_BACKOFF_MS = int(os.getenv("PDF_BACKOFF_MS", 500))
        self.PDF_TIMEOUT_SECONDS = int(os.getenv("PDF_TIMEOUT_SECONDS", 30))
        self.PDF_OUTPUT_DIR = os.getenv("PDF_OUTPUT_DIR", os.path.join(os.getcwd(), "instance", "pdfs"))

        self.ORG_CODE = os.getenv("ORG_CODE", "RMAS")
        self.ORG_STATE_CODE = os.getenv("ORG_STATE_CODE", "BIH")
        self.ORG_NAME = os.getenv("ORG_NAME", "Rashtriya Manav Adhikar Sangathan, Bihar")
        self.ORG_ADDRESS = os.getenv("ORG_ADDRESS", "D-2, S/F, Gali No. 9, Best Jyoti Nagar, Shahdara, Delhi-94")
        self.ORG_WEBSITE = os.getenv("ORG_WEBSITE", "https://rmas.org.in")
        self.ORG_PHONE = os.getenv("ORG_PHONE", "N/A")
        self.SIGNER_NAME = os.getenv("SIGNER_NAME", "State President")
        self.SIGNER_DESIGNATION = os.getenv("SIGNER_DESIGNATION", "RMAS Bihar")
        self.APP_BASE_URL = os.getenv("APP_BASE_URL", "")

        self.LOCATIONS_PATH = os.getenv("LOCATIONS_PATH", os.path.join(BASE_DIR, "data", "bihar_locations.json"))
        self.ROLES_HIERARCHY_PATH = os.getenv(
            "ROLES_HIERARCHY_PATH", os.path.join(BASE_DIR, "data", "roles_hierarchy.json")
        )
        self.FORMS_PER_PAGE = int(os.getenv("FORMS_PER_PAGE", 25))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"
        self.SESSION_COOKIE_SECURE = False
        self.REMEMBER_COOKIE_SECURE = False
        self.MAIL_BACKEND = os.getenv("MAIL_BACKEND", "console").lower()


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.REMEMBER_COOKIE_SECURE = True


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = "sqlite://"
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.SESSION_COOKIE_SECURE = False
        self.MAIL_BACKEND = "console"
        self.MAIL_ASYNC = False
        self.PDF_BACKOFF_MS = 0
        self.PDF_RETRY = 2
        self.PREFERRED_URL_SCHEME = "http"
        self.APP_BASE_URL = "http://localhost"
        self.DEFAULT_ADMIN_EMAIL = ""
        self.DEFAULT_ADMIN_PASSWORD = ""
