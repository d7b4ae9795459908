from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./squirrel.db"
    squirrel_secret_key: str | None = None
    squirrel_debug: bool = False
    squirrel_plugins: str = ""
    log_level: str = "INFO"
    log_file: str | None = None
    cors_origins: str = "*"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        extra="ignore",
    )

    @property
    def plugin_modules(self) -> list[str]:
        return [part.strip() for part in self.squirrel_plugins.split(",") if part.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [part.strip() for part in self.cors_origins.split(",") if part.strip()] or ["*"]


settings = Settings()
