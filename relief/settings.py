import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        enable_decoding=False,
    )

    ENV: str = "dev"
    DATABASE_URL: str
    REDIS_URL: str
    DB_STATEMENT_TIMEOUT_SECONDS: float = 0.0
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    ADMIN_API_KEY: str | None = None
    SIGNER_PRIVATE_KEY: str | None = None
    SIGNER_PRIVATE_KEY_ENCRYPTED: str | None = None
    SIGNER_KEY_ENCRYPTION_KEY: str | None = None

    # Home chain: escrow, treasury and payouts live here.
    HOME_CHAIN_NAME: str = "ARC-TESTNET"
    HOME_CHAIN_ID: int = 5042002
    HOME_RPC_URL: str = "https://rpc.testnet.arc.network"
    HOME_CCTP_DOMAIN: int = 26
    HOME_USDC_ADDRESS: str = "0x3600000000000000000000000000000000000000"
    HOME_TOKEN_MESSENGER_ADDRESS: str | None = None
    HOME_MESSAGE_TRANSMITTER_ADDRESS: str | None = None
    HOME_EXPLORER_URL: str | None = "https://testnet.arcscan.app"
    HOME_NATIVE_SETTLEMENT_ASSET: bool = True

    # Vault chain: lending vault and swap pool live here.
    VAULT_CHAIN_NAME: str = "BASE-SEPOLIA"
    VAULT_CHAIN_ID: int = 84532
    VAULT_RPC_URL: str = "https://sepolia.base.org"
    VAULT_CCTP_DOMAIN: int = 6
    VAULT_USDC_ADDRESS: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    VAULT_TOKEN_MESSENGER_ADDRESS: str | None = None
    VAULT_MESSAGE_TRANSMITTER_ADDRESS: str | None = None
    VAULT_EXPLORER_URL: str | None = "https://sepolia.basescan.org"
    VAULT_NATIVE_SETTLEMENT_ASSET: bool = False

    # Additional payout chains keyed by chain name, as a JSON object of chain fields.
    EXTRA_CHAINS: dict[str, dict] = {}

    TREASURY_VAULT_ADDRESS: str | None = None
    MARKET_FACTORY_ADDRESS: str | None = None
    PAYOUT_EXECUTOR_ADDRESS: str | None = None
    BRIDGE_MANAGER_ADDRESS: str | None = None
    YIELD_CONTROLLER_ADDRESS: str | None = None
    VAULT_TOKEN_ADDRESS: str | None = None
    SWAP_ROUTER_ADDRESS: str | None = None

    CIRCLE_API_BASE: str = "https://api.circle.com"
    CIRCLE_API_KEY: str | None = None
    CIRCLE_ENTITY_SECRET: str | None = None
    CIRCLE_TREASURY_WALLET_ID: str | None = None
    CIRCLE_FEE_LEVEL: str = "MEDIUM"
    CIRCLE_TIMEOUT_SECONDS: float = 15.0
    ATTESTATION_API_BASE: str = "https://iris-api-sandbox.circle.com"
    EXTERNAL_MAX_CONCURRENT_CIRCLE_CALLS: int = 4

    CHAIN_RETRY_BASE_SECONDS: float = 30.0
    CHAIN_RETRY_MAX_SECONDS: float = 300.0
    CHAIN_RETRY_MAX_ATTEMPTS: int = 5
    RECEIPT_TIMEOUT_SECONDS: float = 180.0
    GAS_LIMIT_BUFFER_PCT: int = 20
    PAYOUT_CALCULATION_GAS_LIMIT: int = 2_000_000
    SIGNER_LOCK_TTL_SECONDS: int = 900
    SIGNER_LOCK_WAIT_SECONDS: float = 900.0
    SIGNER_LOCK_POLL_SECONDS: float = 0.5

    TRANSFER_POLL_INTERVAL_SECONDS: float = 3.0
    TRANSFER_POLL_MAX_ATTEMPTS: int = 60
    TREASURY_TOKEN_POLL_ATTEMPTS: int = 10

    BRIDGE_GRACE_SECONDS: float = 60.0
    ATTESTATION_POLL_INTERVAL_SECONDS: float = 5.0
    ATTESTATION_POLL_MAX_ATTEMPTS: int = 60

    SWAP_FEE_TIER: int = 500
    SWAP_FORWARD_SLIPPAGE_BPS: int = 500
    SWAP_REVERSE_SLIPPAGE_BPS: int = 1000

    POSITION_SCAN_WINDOW_BLOCKS: int = 10_000
    POSITION_SCAN_CHUNK_BLOCKS: int = 2_000

    BALANCE_RECHECK_ATTEMPTS: int = 5
    BALANCE_RECHECK_BASE_SECONDS: float = 3.0

    NGO_SHARE_PCT: int = 60
    WINNER_SHARE_PCT: int = 30
    DISTRIBUTION_YIELD_TOP_UP_UNITS: int = 0
    GAS_RESERVE_UNITS: int = 10_000

    RESOLUTION_SERVICE_URL: str | None = None
    RESOLUTION_TIMEOUT_SECONDS: float = 30.0

    PAYOUT_LOCK_TTL_SECONDS: int = 3600
    PAYOUT_JOB_TIMEOUT_SECONDS: int = 3600
    RECONCILE_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 300
    RECONCILE_BATCH_LIMIT: int = 200

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    HTTPX_SLOW_REQUEST_THRESHOLD_SECONDS: float = 2.0

    @field_validator(
        "SIGNER_PRIVATE_KEY",
        "SIGNER_PRIVATE_KEY_ENCRYPTED",
        "SIGNER_KEY_ENCRYPTION_KEY",
        "HOME_TOKEN_MESSENGER_ADDRESS",
        "HOME_MESSAGE_TRANSMITTER_ADDRESS",
        "HOME_EXPLORER_URL",
        "VAULT_TOKEN_MESSENGER_ADDRESS",
        "VAULT_MESSAGE_TRANSMITTER_ADDRESS",
        "VAULT_EXPLORER_URL",
        "TREASURY_VAULT_ADDRESS",
        "MARKET_FACTORY_ADDRESS",
        "PAYOUT_EXECUTOR_ADDRESS",
        "BRIDGE_MANAGER_ADDRESS",
        "YIELD_CONTROLLER_ADDRESS",
        "VAULT_TOKEN_ADDRESS",
        "SWAP_ROUTER_ADDRESS",
        "CIRCLE_API_KEY",
        "CIRCLE_ENTITY_SECRET",
        "CIRCLE_TREASURY_WALLET_ID",
        "RESOLUTION_SERVICE_URL",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip().lower() in {"", "none", "null"}:
            return None
        return value

    @field_validator("CORS_ALLOW_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if value is None:
            return value
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(",") if part.strip()]
            return parts
        return value

    @field_validator("EXTRA_CHAINS", mode="before")
    @classmethod
    def _parse_extra_chains(cls, value):
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("SWAP_FORWARD_SLIPPAGE_BPS", "SWAP_REVERSE_SLIPPAGE_BPS")
    @classmethod
    def _bps_in_range(cls, value: int) -> int:
        if value < 0 or value >= 10_000:
            raise ValueError("slippage must be within [0, 10000) basis points")
        return value

    @field_validator("WINNER_SHARE_PCT")
    @classmethod
    def _shares_fit(cls, value: int, info) -> int:
        ngo_pct = info.data.get("NGO_SHARE_PCT", 0)
        if value < 0 or ngo_pct + value > 100:
            raise ValueError("NGO_SHARE_PCT + WINNER_SHARE_PCT must not exceed 100")
        return value

settings = Settings()
