"""
Configuration Management Module

Centralized configuration using pydantic-settings. Every setting can be
overridden with an ESS_BRIDGE_ prefixed environment variable or a .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class BridgeConfig(BaseSettings):
    """ESS bridge configuration"""

    # Persistence
    database_path: str = "ess_bridge.db"  # "memory" for an in-process store

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Protocol identity
    fsp_code: str = "FL7456"
    fsp_name: str = "ESS Bridge FSP"
    portal_name: str = "ESS_UTUMISHI"

    # Outbound callbacks
    callback_url: str = "http://localhost:9802/ess-loans/mvtyztwq/consume"
    callback_timeout: float = 30.0
    callback_max_attempts: int = 3

    # Ledger (Fineract) connection
    ledger_base_url: str = "http://localhost:8443/fineract-provider/api"
    ledger_tenant: str = "default"
    ledger_username: str = "mifos"
    ledger_password: str = "password"
    ledger_timeout: float = 10.0
    ledger_product_id: int = 1
    ledger_office_id: int = 1

    # Signing keys (PEM)
    private_key_path: Optional[str] = None
    portal_certificate_path: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Detached work processing
    worker_enabled: bool = True
    worker_poll_interval: float = 1.0

    # Default loan product
    default_product_code: str = "17"
    default_product_name: str = "Salary Loan"
    default_interest_rate: str = "24.00"  # annual percent
    default_processing_fee_rate: str = "2.00"  # percent of principal
    default_insurance_rate: str = "1.50"  # percent of principal
    default_other_charges: str = "50000.00"
    default_min_tenure: int = 1
    default_max_tenure: int = 96
    default_min_amount: str = "100000.00"
    default_max_amount: str = "50000000.00"

    # Days of interest added to outstanding principal for payoff quotes
    payoff_interest_days: int = 30

    class Config:
        env_prefix = "ESS_BRIDGE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = BridgeConfig()


def get_config() -> BridgeConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BridgeConfig:
    """Reload configuration from environment"""
    global config
    config = BridgeConfig()
    return config
