import os
from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "p2p-escrow")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "escrow")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    idempotency_ttl_seconds: int = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "86400"))

    ads_service_url: str = os.getenv("ADS_SERVICE_URL", "http://advertisement-service:8000")
    ads_timeout_seconds: float = float(os.getenv("ADS_TIMEOUT_SECONDS", "5"))

    upload_path: str = os.getenv("UPLOAD_PATH", "./uploads")
    max_file_size: int = int(os.getenv("MAX_FILE_SIZE", "5242880"))  # 5MB

    # Mock exchange rate until a real price feed exists: 1 BTC = 45,000 USDT
    btc_usdt_rate: Decimal = Decimal(os.getenv("BTC_USDT_RATE", "45000"))
    demo_btc_balance: Decimal = Decimal(os.getenv("DEMO_BTC_BALANCE", "0.001"))
    demo_usdt_balance: Decimal = Decimal(os.getenv("DEMO_USDT_BALANCE", "1000.00"))
    btc_network: str = os.getenv("BTC_NETWORK", "mainnet")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+pymysql://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

settings = Settings()
