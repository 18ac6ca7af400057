from pydantic_settings import BaseSettings
from functools import lru_cache
from decimal import Decimal
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "checkout"
    POSTGRES_USER: str = "checkout"
    POSTGRES_PASSWORD: str = "checkout"
    # Full URL wins over the POSTGRES_* parts (sqlite in dev/tests)
    DATABASE_URL: Optional[str] = None

    PAYSTACK_SECRET_KEY: str = "sk_test_change-me"
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT: float = 10.0
    FRONTEND_URL: str = "http://localhost:3000"
    CURRENCY: str = "NGN"

    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("10000")
    FLAT_SHIPPING_FEE: Decimal = Decimal("1500")

    LOG_LEVEL: str = "INFO"
    SERVICE_VERSION: str = "1.0.0"

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

@lru_cache
def get_settings() -> Settings:
    return Settings()
