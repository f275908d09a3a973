from pathlib import Path

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.models.enums import QBOEnvironment

PRODUCTION_API_BASE = "https://quickbooks.api.intuit.com/v3/company"
SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com/v3/company"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables and .env file.

    QuickBooks credentials come from the ``QBO_*`` variables. The refresh
    token in ``QBO_REFRESH_TOKEN`` only seeds the first run: once Intuit
    rotates it, the latest token set lives in the encrypted token store
    under ``data_dir/.credentials``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # QuickBooks OAuth app + company
    qbo_client_id: str = ""
    qbo_client_secret: str = ""
    qbo_company_id: str = ""
    qbo_refresh_token: str = ""
    qbo_environment: QBOEnvironment = QBOEnvironment.SANDBOX
    qbo_redirect_uri: str | None = None

    # Outbound API behaviour; delays and timeouts are in milliseconds
    api_retry_attempts: int = 3
    api_retry_delay: int = 1000
    api_timeout: int = 30000
    api_rate_limit_per_minute: int = 60
    api_concurrency: int = 5
    enable_retry: bool = True

    # Response cache
    enable_cache: bool = True
    cache_ttl: int = 300
    cache_max_size: int = 100
    cache_persist: bool = False

    # Paths & logging. Default is <project_root>/data so it works
    # regardless of the process working directory (Claude Desktop may
    # spawn the server from a read-only location).
    data_dir: Path = Path(__file__).resolve().parent.parent / "data"
    log_level: str = "INFO"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def base_url(self) -> str:
        if self.qbo_environment == QBOEnvironment.PRODUCTION:
            root = PRODUCTION_API_BASE
        else:
            root = SANDBOX_API_BASE
        return f"{root}/{self.qbo_company_id}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def token_url(self) -> str:
        return TOKEN_URL

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def credentials_path(self) -> Path:
        return self.data_dir / ".credentials"

    @property
    def is_configured(self) -> bool:
        """Return True when every credential needed to reach QuickBooks is set."""
        return all(
            (
                self.qbo_client_id,
                self.qbo_client_secret,
                self.qbo_company_id,
                self.qbo_refresh_token,
            )
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the cached Settings singleton. Created on first call."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached settings. Used in tests."""
    global _settings  # noqa: PLW0603
    _settings = None
