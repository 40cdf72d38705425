from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_database: str = "keyhaven"
    mysql_user: str = "keyhaven"
    mysql_password: str = "change_me_mysql_app"
    database_url_override: str | None = None

    # 64 hex characters (32 bytes) for AES-256-GCM.
    encryption_key: str = ""

    identity_token_secret: str = "change_me_identity_secret"
    identity_token_issuer: str = "keyhaven-identity"

    rotation_webhook_timeout_seconds: float = 5.0
    rotation_initial_delay_days: int = 30
    rotation_first_run_uses_interval: bool = False
    rotation_poll_seconds: int = 60
    rotation_dispatch_concurrency: int = 8

    notification_webhook_urls: str = ""
    notification_timeout_seconds: float = 5.0

    log_level: str = "INFO"
    json_logs: bool = False

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+aiomysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
        )

    @property
    def notification_webhook_url_list(self) -> list[str]:
        return [item.strip() for item in self.notification_webhook_urls.split(",") if item.strip()]


settings = Settings()
