from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # BrickLink API
    bricklink_consumer_key: str = ""
    bricklink_consumer_secret: str = ""
    bricklink_token_value: str = ""
    bricklink_token_secret: str = ""
    bricklink_base_url: str = "https://api.bricklink.com/api/store/v1"
    bricklink_timeout: int = 10
    bricklink_min_interval_ms: int = 500
    bricklink_call_budget: int = 0  # 0 means unlimited

    # Database
    database_url: str = "sqlite:///./data/catalog.db"
    store_page_size: int = 1000
    store_chunk_size: int = 200
    allow_atomic_sql: bool = True

    # App settings
    debug: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
