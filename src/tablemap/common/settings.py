from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env into os.environ
load_dotenv()


class Settings(BaseSettings):
    """Library configuration settings backed by environment variables."""

    database_url: str = Field(
        default="memory://",
        validation_alias="TABLEMAP_DATABASE_URL",
        description="Store used by the CLI: 'memory://' or any SQLAlchemy URL."
    )
    log_level: str = Field(default="INFO", validation_alias="TABLEMAP_LOG_LEVEL")
    log_json: bool = Field(
        default=False,
        validation_alias="TABLEMAP_LOG_JSON",
        description="Emit JSON log lines instead of plain text."
    )
    join_option_prefix: str = Field(
        default="_",
        min_length=1,
        validation_alias="TABLEMAP_JOIN_OPTION_PREFIX",
        description="Reserved key prefix marking per-relation options in join mappings."
    )
    index_wait_timeout_sec: float = Field(
        default=30.0,
        validation_alias="TABLEMAP_INDEX_WAIT_TIMEOUT_SEC",
        description="Maximum time an index_wait term blocks before failing."
    )
    index_wait_poll_sec: float = Field(
        default=0.05,
        validation_alias="TABLEMAP_INDEX_WAIT_POLL_SEC",
        description="Polling interval while waiting for an index to become ready."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


settings = Settings()
