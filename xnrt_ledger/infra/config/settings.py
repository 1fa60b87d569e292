from decimal import Decimal
from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # App Settings
    APP_NAME: str = "XNRT Ledger"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: Optional[str] = None

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Security Settings
    JWT_SECRET_KEY: str = "your-secret-key"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",  # Frontend development
        "https://app.xnrt.io",  # Production frontend
    ]

    # Database Settings
    DATABASE_URL: Optional[str] = None  # Overrides the POSTGRES_* settings when set
    POSTGRES_USER: str = "xnrt"
    POSTGRES_PASSWORD: str = "xnrt"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "xnrt"
    POSTGRES_MIN_POOL_SIZE: int = 5
    POSTGRES_MAX_POOL_SIZE: int = 20
    DB_LOGGING_ENABLED: bool = False
    DB_CREATE_TABLES: bool = True

    # Redis Settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 10
    REDIS_SOCKET_TIMEOUT_SECONDS: int = 5

    # Wallet Link Challenge Settings
    WALLET_CHALLENGE_EXPIRY_SECONDS: int = 600  # 10 minutes
    WALLET_CHALLENGE_RETENTION_SECONDS: int = 3600  # Keep expired/consumed challenges for error reporting

    # Chain Settings (BSC)
    RPC_BSC_URL: str = "https://bsc-dataseed.binance.org"
    USDT_BSC_ADDRESS: str = "0x55d398326f99059ff775485246999027b3197955"
    XNRT_WALLET: str = ""  # Treasury address (legacy deposits from linked wallets)
    USDT_DECIMALS: int = 18
    BSC_CONFIRMATIONS: int = 12
    RPC_TIMEOUT_SECONDS: int = 15
    RPC_MAX_RETRIES: int = 3

    # Deposit Scanner Settings
    AUTO_DEPOSIT: bool = False
    SCANNER_ID: str = "bsc-usdt"
    SCANNER_INTERVAL_SECONDS: int = 60
    SCANNER_BATCH_SIZE: int = 300
    SCANNER_SAFETY_LAG: int = 3  # Blocks kept away from the head
    SCANNER_START_BLOCK: Optional[int] = None
    SCANNER_INITIAL_LOOKBACK: int = 100
    SCANNER_LOCK_TTL_SECONDS: int = 300

    # Staking Settings
    STAKE_REWARD_INTERVAL_MINUTES: int = 60

    # Economics
    XNRT_RATE_USDT: Decimal = Decimal("100")  # XNRT per 1 USDT
    PLATFORM_FEE_BPS: int = 0
    WITHDRAWAL_FEE_PERCENT: Decimal = Decimal("2")
    WITHDRAWAL_MIN_MAIN: Decimal = Decimal("100")  # main and staking pools
    WITHDRAWAL_MIN_REWARD_POOL: Decimal = Decimal("5000")  # referral and mining pools
    HOUSE_ACCOUNT_REFERRAL_CODE: str = "XNRTHOUSE"

    # HD Wallet Settings
    MASTER_SEED: Optional[str] = None  # 12/24-word mnemonic for deposit address derivation

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
