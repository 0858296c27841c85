"""
config.py — PersonaChain Identity Core Configuration
======================================================
Every value can be overridden from the environment or a .env file.
Tests build Settings(_env_file=None, ...) directly instead of the cached one.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    APP_NAME: str = "PersonaChain Identity Core"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    TRUSTED_HOSTS: List[str] = ["personapass.org", "*.personapass.org"]

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./personachain.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Ledger
    LEDGER_BACKEND: str = "simulation"          # simulation | tendermint | ethereum
    LEDGER_RPC_URL: str = "http://127.0.0.1:26657"
    LEDGER_REST_URL: str = "http://127.0.0.1:1317"
    LEDGER_CHAIN_ID: str = "personachain-1"
    LEDGER_SIGNER_ADDRESS: str = ""
    LEDGER_TIMEOUT_SECONDS: float = 5.0
    LEDGER_RETRIES: int = 1
    LEDGER_FEE_DENOM: str = "uid"
    LEDGER_FEE_AMOUNT: int = 1000
    LEDGER_GAS_LIMIT: int = 200_000
    WEB3_PROVIDER_URL: str = "http://127.0.0.1:8545"
    ETH_CHAIN_ID: int = 1337
    DEPLOYER_PRIVATE_KEY: str = ""

    # DID method
    DID_METHOD: str = "persona"
    DID_ID_LENGTH: int = 12
    DID_SERVICE_ENDPOINT: str = "https://personapass.org/did"

    # Wallets
    WALLET_CHAIN_ID: str = "cosmoshub-4"
    SUPPORTED_WALLET_TYPES: List[str] = ["keplr", "leap"]

    # Cryptography
    PBKDF2_ITERATIONS: int = 100_000
    CHALLENGE_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"

    # Proofs
    PROOF_EXPIRATION_HOURS: int = 24
    PRESENTATION_REQUEST_MINUTES: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
