from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional, Literal


BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = f"sqlite:///{BASE_DIR}/data/db/protee.db"

    # Server
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[Path] = None

    # Goals (seed for the device-local settings row)
    default_protein_goal: int = 150

    # Remote backend (Supabase-compatible REST + auth)
    supabase_url: Optional[str] = None                 # e.g. https://xyz.supabase.co
    supabase_anon_key: Optional[str] = None
    session_path: Path = BASE_DIR / "data" / "session.json"

    # Sync Engine
    sync_enabled: bool = False
    sync_interval_seconds: int = 300                    # 5 minutes
    sync_debounce_seconds: float = 1.0                  # post-mutation trigger delay
    sync_pull_overlap_seconds: float = 5.0              # commit-latency buffer on the pull cursor
    sync_page_size: int = 500
    sync_request_timeout: float = 15.0
    chat_sync_days: int = 14                            # chat history window

    @property
    def sync_configured(self) -> bool:
        return bool(self.sync_enabled and self.supabase_url and self.supabase_anon_key)

    def model_post_init(self, __context):
        (BASE_DIR / "data" / "db").mkdir(parents=True, exist_ok=True)
        self.session_path.parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
