"""Application configuration via environment variables."""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

SANDBOX_SHORT_CODE = "174379"


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./stk_gateway.db"
    log_level: str = "INFO"

    # Daraja credentials and endpoints
    mpesa_environment: str = "sandbox"  # "sandbox" | "production"
    mpesa_base_url: str = ""  # derived from mpesa_environment when empty
    mpesa_short_code: str = ""  # Paybill or Till number, kept as a string
    mpesa_passkey: str = ""
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_callback_url: str = ""
    mpesa_mode: str = "paybill"  # "paybill" | "till"

    # Transport behaviour
    mpesa_timeout_seconds: float = 12.0
    mpesa_token_retries: int = 2
    mpesa_backoff_base_seconds: float = 1.0
    mpesa_backoff_cap_seconds: float = 8.0
    mpesa_token_skew_seconds: float = 30.0

    # Placeholders used when the caller sends an empty reference/description
    mpesa_account_reference: str = "CHECKOUT"
    mpesa_description: str = "Payment"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("mpesa_environment", "mpesa_mode")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("mpesa_environment")
    @classmethod
    def _known_environment(cls, value: str) -> str:
        if value not in MPESA_BASE_URLS:
            raise ValueError(f"mpesa_environment must be one of {sorted(MPESA_BASE_URLS)}, got '{value}'")
        return value

    @field_validator("mpesa_mode")
    @classmethod
    def _known_mode(cls, value: str) -> str:
        if value not in ("paybill", "till"):
            raise ValueError(f"mpesa_mode must be 'paybill' or 'till', got '{value}'")
        return value

    @field_validator("mpesa_short_code")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        value = value.strip()
        if value and not value.isdigit():
            raise ValueError("mpesa_short_code must contain digits only")
        return value

    @field_validator("mpesa_callback_url")
    @classmethod
    def _https_callback(cls, value: str) -> str:
        value = value.strip()
        if value and not value.lower().startswith("https://"):
            raise ValueError("mpesa_callback_url must be an https:// URL")
        return value

    @model_validator(mode="after")
    def _derive_defaults(self) -> "Settings":
        if not self.mpesa_base_url:
            self.mpesa_base_url = MPESA_BASE_URLS[self.mpesa_environment]
        self.mpesa_base_url = self.mpesa_base_url.rstrip("/")
        if not self.mpesa_short_code and self.mpesa_environment == "sandbox":
            self.mpesa_short_code = SANDBOX_SHORT_CODE
        return self


settings = Settings()
