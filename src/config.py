"""
Configuration module for the Polymarket CLOB auth preflight.
Loads settings from environment variables with validation.
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


@dataclass
class ClobConfig:
    """CLOB API connection settings."""
    host: str = "https://clob.polymarket.com"
    chain_id: int = 137  # Polygon Mainnet
    timeout_seconds: float = 10.0


@dataclass
class WalletConfig:
    """Signing key and address settings."""
    private_key: str
    public_key: Optional[str] = None  # Sanity check against PRIVATE_KEY
    funder_address: Optional[str] = None  # Proxy/Safe deposit address
    signature_type: Optional[str] = None  # 0/1/2 or EOA/PROXY/SAFE
    address_override: Optional[str] = None
    force_mismatch: bool = False


@dataclass
class CredentialConfig:
    """Explicit API credentials and derivation switch."""
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    api_passphrase: Optional[str] = None
    derive_enabled: bool = True

    @property
    def has_explicit(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)


@dataclass
class PreflightConfig:
    """Preflight backoff settings."""
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 300_000
    interval_seconds: int = 60


@dataclass
class MatrixConfig:
    """Auth matrix probe settings."""
    enabled: bool = False
    signature_types: list[str] = field(default_factory=lambda: ["0", "2"])
    secret_decodings: list[str] = field(default_factory=lambda: ["base64", "base64url", "raw"])
    signature_encodings: list[str] = field(default_factory=lambda: ["base64url", "base64"])
    use_derived_creds: list[str] = field(default_factory=lambda: ["false", "true"])
    endpoint: str = "/balance-allowance"


@dataclass
class RateLimitConfig:
    """Auth failure log rate limiting."""
    initial_cooldown_ms: int = 5 * 60 * 1000
    max_cooldown_ms: int = 15 * 60 * 1000
    multiplier: float = 2.0


@dataclass
class RiskConfig:
    """Trading gate settings."""
    simulation_mode: bool = True  # Detect-only, no live trading


@dataclass
class LogConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    json_logging: bool = True
    debug_auth: bool = False  # Verbose per-attempt failure dump


@dataclass
class AzureConfig:
    """Azure-specific configuration."""
    keyvault_name: Optional[str] = None


@dataclass
class Config:
    """Main configuration container."""
    wallet: WalletConfig
    clob: ClobConfig = field(default_factory=ClobConfig)
    credentials: CredentialConfig = field(default_factory=CredentialConfig)
    preflight: PreflightConfig = field(default_factory=PreflightConfig)
    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    logging: LogConfig = field(default_factory=LogConfig)
    azure: AzureConfig = field(default_factory=AzureConfig)


def get_env(key: str, default: Optional[str] = None, required: bool = True) -> str:
    """Get environment variable with validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value or ""


def get_env_optional(key: str) -> Optional[str]:
    """Get environment variable, None when unset or blank."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes")


def get_env_int(key: str, default: int) -> int:
    """Get integer environment variable."""
    value = os.getenv(key, str(default))
    return int(value)


def get_env_float(key: str, default: float) -> float:
    """Get float environment variable."""
    value = os.getenv(key, str(default))
    return float(value)


def get_env_list(key: str, default: str) -> list[str]:
    """Get comma-separated environment variable as a list."""
    value = os.getenv(key) or default
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config() -> Config:
    """Load and validate configuration from environment."""

    # Check for Azure Key Vault first
    keyvault_name = os.getenv("AZURE_KEYVAULT_NAME")
    if keyvault_name:
        _load_secrets_from_keyvault(keyvault_name)

    log_level = get_env("LOG_LEVEL", "INFO", required=False)

    return Config(
        wallet=WalletConfig(
            private_key=get_env("PRIVATE_KEY"),
            public_key=get_env_optional("PUBLIC_KEY"),
            funder_address=get_env_optional("POLYMARKET_PROXY_ADDRESS"),
            signature_type=get_env_optional("POLYMARKET_SIGNATURE_TYPE"),
            address_override=get_env_optional("CLOB_POLY_ADDRESS_OVERRIDE"),
            force_mismatch=get_env_bool("FORCE_MISMATCH", False),
        ),
        clob=ClobConfig(
            host=get_env("CLOB_HOST", "https://clob.polymarket.com", required=False),
            chain_id=get_env_int("CHAIN_ID", 137),
            timeout_seconds=get_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
        ),
        credentials=CredentialConfig(
            api_key=get_env_optional("POLYMARKET_API_KEY"),
            api_secret=get_env_optional("POLYMARKET_API_SECRET"),
            api_passphrase=get_env_optional("POLYMARKET_API_PASSPHRASE"),
            derive_enabled=get_env_bool("CLOB_DERIVE_CREDS", True),
        ),
        preflight=PreflightConfig(
            backoff_base_ms=get_env_int("PREFLIGHT_BACKOFF_BASE_MS", 1000),
            backoff_max_ms=get_env_int("PREFLIGHT_BACKOFF_MAX_MS", 300_000),
            interval_seconds=get_env_int("PREFLIGHT_INTERVAL_SECONDS", 60),
        ),
        matrix=MatrixConfig(
            enabled=get_env_bool("CLOB_PREFLIGHT_MATRIX", False),
            signature_types=get_env_list("CLOB_PREFLIGHT_TRY_SIGNATURE_TYPES", "0,2"),
            secret_decodings=get_env_list("CLOB_PREFLIGHT_TRY_SECRET_DECODE", "base64,base64url,raw"),
            signature_encodings=get_env_list("CLOB_PREFLIGHT_TRY_SIG_ENCODING", "base64url,base64"),
            use_derived_creds=get_env_list("CLOB_PREFLIGHT_USE_DERIVED_CREDS", "false,true"),
            endpoint=get_env("CLOB_PREFLIGHT_ENDPOINT", "/balance-allowance", required=False),
        ),
        rate_limit=RateLimitConfig(
            initial_cooldown_ms=get_env_int("AUTH_FAILURE_COOLDOWN_MS", 5 * 60 * 1000),
            max_cooldown_ms=get_env_int("AUTH_FAILURE_MAX_COOLDOWN_MS", 15 * 60 * 1000),
        ),
        risk=RiskConfig(
            simulation_mode=get_env_bool("SIMULATION_MODE", True),  # Default to detect-only
        ),
        logging=LogConfig(
            log_level=log_level,
            json_logging=get_env_bool("JSON_LOGGING", True),
            debug_auth=get_env_bool("DEBUG_AUTH", False) or log_level.upper() == "DEBUG",
        ),
        azure=AzureConfig(
            keyvault_name=keyvault_name,
        ),
    )


def _load_secrets_from_keyvault(keyvault_name: str) -> None:
    """Load secrets from Azure Key Vault into environment."""
    try:
        from azure.identity import DefaultAzureCredential
        from azure.keyvault.secrets import SecretClient
        from azure.core.exceptions import ResourceNotFoundError
    except ImportError:
        print("Warning: AZURE_KEYVAULT_NAME is set but the azure extra is not installed")
        return

    vault_url = f"https://{keyvault_name}.vault.azure.net"
    credential = DefaultAzureCredential()
    client = SecretClient(vault_url=vault_url, credential=credential)

    # Map Key Vault secret names to environment variables
    secret_mappings = {
        "wallet-private-key": "PRIVATE_KEY",
        "polymarket-api-key": "POLYMARKET_API_KEY",
        "polymarket-api-secret": "POLYMARKET_API_SECRET",
        "polymarket-api-passphrase": "POLYMARKET_API_PASSPHRASE",
        "polymarket-proxy-address": "POLYMARKET_PROXY_ADDRESS",
    }

    try:
        for secret_name, env_var in secret_mappings.items():
            try:
                secret = client.get_secret(secret_name)
            except ResourceNotFoundError:
                continue  # Fall back to the env var
            if secret.value:
                os.environ[env_var] = secret.value
    except Exception as e:
        print(f"Warning: Failed to load secrets from Key Vault: {e}")
