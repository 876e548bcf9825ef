"""
Application configuration loader.
"""

from dataclasses import dataclass
import os

from dotenv import load_dotenv


class SettingsError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    logs_dir: str

    address: str
    base_url: str
    git_tag: str

    database_url: str

    github_client_id: str
    github_client_secret: str
    x_client_id: str
    x_client_secret: str

    # Local fake OAuth server (dev/test only)
    fake_oauth_enabled: bool
    fake_oauth_base_url: str
    fake_oauth_client_id: str
    fake_oauth_redirect: str

    session_max_age_seconds: int
    session_cleanup_interval_seconds: int
    http_timeout_seconds: int

    def listen_host_port(self) -> tuple:
        host, _, port = self.address.rpartition(":")
        return (host or "0.0.0.0"), _int(port, 3210)


def _bool(value: str) -> bool:
    return str(value).lower() in ("1", "true", "yes", "on")


def _int(value: str, default: int) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return default


def _str(name: str, default: str) -> str:
    v = os.getenv(name, "")
    return v if v != "" else default


def load_settings() -> Settings:
    load_dotenv()

    return Settings(
        app_env=_str("APP_ENV", "dev"),
        log_level=_str("LOG_LEVEL", "INFO"),
        logs_dir=_str("LOGS_DIR", "logs"),

        address=_str("ADDRESS", ":3210"),
        base_url=_str("BASE_URL", "https://empreendedor.dev").rstrip("/"),
        git_tag=_str("GIT_TAG", "dev"),

        database_url=_str("DATABASE_URL", "edev.db"),

        github_client_id=os.getenv("GITHUB_CLIENT_ID", ""),
        github_client_secret=os.getenv("GITHUB_CLIENT_SECRET", ""),
        x_client_id=os.getenv("X_CLIENT_ID", ""),
        x_client_secret=os.getenv("X_CLIENT_SECRET", ""),

        fake_oauth_enabled=_bool(os.getenv("FAKE_OAUTH_ENABLED", "false")),
        fake_oauth_base_url=_str("FAKE_OAUTH_BASE_URL", "http://127.0.0.1:9100").rstrip("/"),
        fake_oauth_client_id=_str("FAKE_OAUTH_CLIENT_ID", "fake-client-id"),
        fake_oauth_redirect=_str("FAKE_OAUTH_REDIRECT_PATH", "/fake/oauth/callback"),

        session_max_age_seconds=_int(os.getenv("SESSION_MAX_AGE_SECONDS", "10800"), 10800),
        session_cleanup_interval_seconds=_int(os.getenv("SESSION_CLEANUP_INTERVAL_SECONDS", "300"), 300),
        http_timeout_seconds=_int(os.getenv("HTTP_TIMEOUT_SECONDS", "10"), 10),
    )


def validate_settings(s: Settings) -> None:
    if not s.database_url:
        raise SettingsError("Missing database URL in configuration")

    # Real providers may be left unconfigured when the fake one is on (local tests).
    if not s.fake_oauth_enabled:
        if not (s.github_client_id and s.github_client_secret and s.x_client_id and s.x_client_secret):
            raise SettingsError("Missing OAuth2 client ID/secret in configuration")
