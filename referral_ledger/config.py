from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Public links
    APP_BASE_URL: str = "http://localhost:3000"

    # Code generation
    REFERRAL_CODE_BYTES: int = 6
    CODE_GENERATION_ATTEMPTS: int = 5

    # Validity windows
    REFERRAL_VALIDITY_DAYS: int = 30
    REWARD_VALIDITY_DAYS: int = 90

    # Dashboards
    RECENT_ACTIVITY_LIMIT: int = 10
    TOP_REFERRERS_LIMIT: int = 5
    DAILY_ACTIVITY_DAYS: int = 7

    LOG_LEVEL: str = "INFO"
    SEED_DEMO_DATA: bool = False

    @property
    def share_base_url(self) -> str:
        return self.APP_BASE_URL.rstrip("/")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
