import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "kyc-poll")

    # Transfer server HTTP client
    TRANSFER_TIMEOUT_SEC: float = float(os.getenv("TRANSFER_TIMEOUT_SEC", "10.0"))
    # Per-process cap on pooled transfer server clients (least recently used is closed)
    MAX_TRANSFER_CLIENTS: int = int(os.getenv("MAX_TRANSFER_CLIENTS", "32"))
    # Shown by the anchor to explain where funds come from (optional withdraw params)
    WALLET_NAME: str = os.getenv("WALLET_NAME", "")
    WALLET_URL: str = os.getenv("WALLET_URL", "")

    # Attempt persistence
    ATTEMPT_TTL_SEC: int = int(os.getenv("ATTEMPT_TTL_SEC", "86400"))
    ATTEMPT_LOCK_TTL_MS: int = int(os.getenv("ATTEMPT_LOCK_TTL_MS", "15000"))

    # KYC status polling (pending-kyc / interactive KYC)
    KYC_POLL_INTERVAL_SEC: int = int(os.getenv("KYC_POLL_INTERVAL_SEC", "10"))
    KYC_POLL_MAX_ATTEMPTS: int = int(os.getenv("KYC_POLL_MAX_ATTEMPTS", "60"))

    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"

settings = Settings()
