"""Configuration module for the Nelo WhatsApp assistant."""

import os
from typing import List, Dict, cast
from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="Nelo WhatsApp Assistant", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # FastAPI Configuration
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_reload: bool = Field(default=True, alias="API_RELOAD")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:8000"],
        alias="CORS_ORIGINS"
    )
    webhook_rate_limit: str = Field(default="120/minute", alias="WEBHOOK_RATE_LIMIT")
    admin_api_key: str = Field(default="", alias="ADMIN_API_KEY")

    # MongoDB Configuration
    mongodb_url: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URL")
    mongodb_database: str = Field(default="nelo", alias="MONGODB_DATABASE")

    # Twilio WhatsApp Configuration
    twilio_account_sid: str = Field(default="", alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field(default="", alias="TWILIO_AUTH_TOKEN")
    twilio_whatsapp_number: str = Field(default="", alias="TWILIO_WHATSAPP_NUMBER")
    whatsapp_verify_token: str = Field(default="", alias="WHATSAPP_VERIFY_TOKEN")

    # Custody gateway and other external capabilities
    custody_api_url: str = Field(default="http://localhost:4000", alias="CUSTODY_API_URL")
    custody_api_key: str = Field(default="", alias="CUSTODY_API_KEY")
    kyc_api_url: str = Field(default="http://localhost:4001", alias="KYC_API_URL")
    kyc_api_key: str = Field(default="", alias="KYC_API_KEY")
    payment_api_url: str = Field(default="http://localhost:4002", alias="PAYMENT_API_URL")
    payment_api_key: str = Field(default="", alias="PAYMENT_API_KEY")
    resolver_api_url: str = Field(default="http://localhost:4003", alias="RESOLVER_API_URL")
    handle_suffix: str = Field(default="base.eth", alias="HANDLE_SUFFIX")
    explorer_tx_url: str = Field(default="https://sepolia.basescan.org/tx/", alias="EXPLORER_TX_URL")

    # Fiat on-ramp instructions shown for "buy"
    payment_bank_name: str = Field(default="Providus Bank", alias="PAYMENT_BANK_NAME")
    payment_account_number: str = Field(default="9900112233", alias="PAYMENT_ACCOUNT_NUMBER")
    payment_account_name: str = Field(default="Nelo Collections", alias="PAYMENT_ACCOUNT_NAME")
    min_buy_amount: int = Field(default=100, alias="MIN_BUY_AMOUNT")
    max_buy_amount: int = Field(default=1_000_000, alias="MAX_BUY_AMOUNT")
    min_cash_out_amount: int = Field(default=100, alias="MIN_CASH_OUT_AMOUNT")
    card_creation_amount: int = Field(default=1000, alias="CARD_CREATION_AMOUNT")

    # Fees (service fee in basis points, caps and floors in whole token units)
    service_fee_bps: int = Field(default=100, alias="SERVICE_FEE_BPS")
    service_fee_cap: int = Field(default=1000, alias="SERVICE_FEE_CAP")
    min_network_fee: int = Field(default=0, alias="MIN_NETWORK_FEE")
    gas_price_buffer_percent: int = Field(default=120, alias="GAS_PRICE_BUFFER_PERCENT")
    fallback_gas_price_wei: int = Field(default=1_000_000_000, alias="FALLBACK_GAS_PRICE_WEI")
    eth_price_usd: int = Field(default=2500, alias="ETH_PRICE_USD")
    usd_to_ngn: int = Field(default=1600, alias="USD_TO_NGN")
    price_refresh_seconds: int = Field(default=300, alias="PRICE_REFRESH_SECONDS")
    rpc_url: str = Field(default="https://sepolia.base.org", alias="RPC_URL")
    price_api_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd,ngn",
        alias="PRICE_API_URL"
    )
    fee_collector_address: str = Field(default="", alias="FEE_COLLECTOR_ADDRESS")

    # Sessions and PIN
    session_timeout_minutes: int = Field(default=30, alias="SESSION_TIMEOUT_MINUTES")
    max_pin_attempts: int = Field(default=3, alias="MAX_PIN_ATTEMPTS")
    pin_hash_iterations: int = Field(default=100_000, alias="PIN_HASH_ITERATIONS")
    history_limit: int = Field(default=10, alias="HISTORY_LIMIT")

    # Settlement queue
    settlement_max_attempts: int = Field(default=3, alias="SETTLEMENT_MAX_ATTEMPTS")
    settlement_backoff_seconds: float = Field(default=5.0, alias="SETTLEMENT_BACKOFF_SECONDS")
    settlement_concurrency: int = Field(default=5, alias="SETTLEMENT_CONCURRENCY")
    monitor_timeout_seconds: float = Field(default=300.0, alias="MONITOR_TIMEOUT_SECONDS")
    monitor_poll_seconds: float = Field(default=5.0, alias="MONITOR_POLL_SECONDS")

    # Notifications and re-engagement
    notification_max_attempts: int = Field(default=3, alias="NOTIFICATION_MAX_ATTEMPTS")
    notification_backoff_seconds: float = Field(default=2.0, alias="NOTIFICATION_BACKOFF_SECONDS")
    broadcast_delay_seconds: float = Field(default=1.0, alias="BROADCAST_DELAY_SECONDS")
    engagement_interval_hours: int = Field(default=12, alias="ENGAGEMENT_INTERVAL_HOURS")
    inactive_days: int = Field(default=3, alias="INACTIVE_DAYS")
    engagement_limit: int = Field(default=50, alias="ENGAGEMENT_LIMIT")
    enable_scheduler: bool = Field(default=True, alias="ENABLE_SCHEDULER")

    # Logging
    log_to_file: bool = Field(default=True, alias="LOG_TO_FILE")
    log_file: str = Field(default="logs/app.log", alias="LOG_FILE")
    log_rotation: str = Field(default="10 MB", alias="LOG_ROTATION")
    log_retention: str = Field(default="30 days", alias="LOG_RETENTION")

    # Token configurations
    SUPPORTED_TOKENS: dict = {
        "cngn": {"name": "Nigerian Naira Token", "symbol": "₦", "code": "cNGN", "decimals": 6},
        "usdc": {"name": "USD Coin", "symbol": "$", "code": "USDC", "decimals": 6},
    }

    # Gas units per operation kind
    GAS_UNITS: dict = {
        "TRANSFER": 21000,
        "DEPOSIT": 96000,  # approve + custody deposit
        "CARD_CREATE": 96000,
        "WITHDRAW": 45000,
    }

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore"
    }

    def get_token_info(self, token: str) -> Dict[str, object]:
        """Get token information."""
        default_token = {"name": "", "symbol": "", "code": token.upper(), "decimals": 6}
        return cast(Dict[str, object], self.SUPPORTED_TOKENS.get(token.lower(), default_token))

    def is_supported_token(self, token: str) -> bool:
        return token.lower() in self.SUPPORTED_TOKENS

    def token_decimals(self, token: str) -> int:
        return int(cast(int, self.get_token_info(token)["decimals"]))

    def native_rate(self, token: str) -> int:
        """Whole-token price of one native coin (ETH)."""
        if token.lower() == "cngn":
            return self.eth_price_usd * self.usd_to_ngn
        return self.eth_price_usd


# Create global settings instance
settings = Settings()

# Ensure logs directory exists
if settings.log_to_file and settings.log_file:
    try:
        log_dir = os.path.dirname(settings.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        print(f"Warning: Could not create logs directory: {e}")
