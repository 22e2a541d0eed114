from typing import List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_KDF_ITERATIONS = 100_000


class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    PROJECT_NAME: str = "finledger"
    PROJECT_VERSION: str = "0.1.0"
    SERVICE_NAME: str = "finledger"

    # MongoDB
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "finledger"
    # Multi-document transactions need a replica set; without them every
    # ledger action runs as a compensating saga.
    USE_TRANSACTIONS: bool = False

    # Encryption (base64 of 32 raw bytes)
    ENCRYPTION_KEY: str = ""
    ENCRYPTION_PREVIOUS_KEYS: List[str] = []
    KDF_ITERATIONS: int = MIN_KDF_ITERATIONS
    DECRYPT_FAILURE_POLICY: Literal["null", "raise"] = "null"

    # Ledger
    BALANCE_EPSILON: float = 0.01

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        extra="ignore"
    )

    @field_validator("KDF_ITERATIONS")
    @classmethod
    def _check_iterations(cls, value: int) -> int:
        if value < MIN_KDF_ITERATIONS:
            raise ValueError(f"KDF_ITERATIONS must be at least {MIN_KDF_ITERATIONS}")
        return value


settings = Settings()
