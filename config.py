import logging
import os
import secrets
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        upload_dir: Path,
        cookie_secure: bool,
        frontend_url: str,
        bootstrap_admin_email: str,
        sso_client_id: str,
        sso_client_secret: str,
        sso_authority: str,
        sso_redirect_uri: str,
        sso_post_logout_redirect_uri: str,
        sso_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.upload_dir = upload_dir
        self.cookie_secure = cookie_secure
        self.frontend_url = frontend_url
        self.bootstrap_admin_email = bootstrap_admin_email
        self.sso_client_id = sso_client_id
        self.sso_client_secret = sso_client_secret
        self.sso_authority = sso_authority
        self.sso_redirect_uri = sso_redirect_uri
        self.sso_post_logout_redirect_uri = sso_post_logout_redirect_uri
        self.sso_timeout_secs = sso_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "expenses.db"
    database_url = os.getenv("EXPENSES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("EXPENSES_TIMEZONE", "Asia/Kolkata")
    session_secret = os.getenv("EXPENSES_SESSION_SECRET", "").strip()
    if not session_secret:
        # sessions do not survive a restart and are not shared between workers
        session_secret = secrets.token_hex(32)
        logger.warning(
            "session_secret: EXPENSES_SESSION_SECRET is not set, using a per-process key"
        )
    session_max_age_hours = int(os.getenv("EXPENSES_SESSION_MAX_AGE_HOURS", "24"))
    upload_dir = Path(
        os.getenv("EXPENSES_UPLOAD_DIR", str(data_dir / "uploads"))
    ).resolve()
    upload_dir.mkdir(parents=True, exist_ok=True)
    cookie_secure = os.getenv("EXPENSES_COOKIE_SECURE", "0").lower() in {
        "1",
        "true",
        "yes",
    }
    frontend_url = os.getenv("EXPENSES_FRONTEND_URL", "*")
    bootstrap_admin_email = os.getenv("EXPENSES_BOOTSTRAP_ADMIN_EMAIL", "").strip()
    cloud_instance = os.getenv(
        "EXPENSES_SSO_CLOUD_INSTANCE", "https://login.microsoftonline.com/"
    )
    tenant_id = os.getenv("EXPENSES_SSO_TENANT_ID", "common")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        upload_dir=upload_dir,
        cookie_secure=cookie_secure,
        frontend_url=frontend_url,
        bootstrap_admin_email=bootstrap_admin_email,
        sso_client_id=os.getenv("EXPENSES_SSO_CLIENT_ID", ""),
        sso_client_secret=os.getenv("EXPENSES_SSO_CLIENT_SECRET", ""),
        sso_authority=cloud_instance.rstrip("/") + "/" + tenant_id,
        sso_redirect_uri=os.getenv(
            "EXPENSES_SSO_REDIRECT_URI", "http://localhost:8000/auth/redirect"
        ),
        sso_post_logout_redirect_uri=os.getenv(
            "EXPENSES_SSO_POST_LOGOUT_REDIRECT_URI", "http://localhost:8000/"
        ),
        sso_timeout_secs=float(os.getenv("EXPENSES_SSO_TIMEOUT_SECS", "10")),
    )
