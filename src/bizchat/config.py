"""Runtime configuration for the assistant.

Every tunable policy constant lives here so that deployments can override it
through ``BIZCHAT_*`` environment variables or a ``.env`` file, and tests can
pass an explicit ``Settings`` instance to any component.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Assistant configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BIZCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Confirmation policy
    confirmation_threshold: float = Field(
        default=1000.0,
        description="Creation actions above this amount require explicit confirmation",
    )
    sensitive_actions: List[str] = Field(
        default_factory=lambda: ["send_invoice", "delete_invoice", "delete_customer"],
        description="Action types (and intents) that always require confirmation",
    )

    # Language model
    llm_model: Optional[str] = None
    llm_timeout: float = Field(default=20.0, description="Seconds before falling back")
    llm_max_tokens: int = 500
    llm_temperature: float = 0.3
    history_window: int = 5

    # Recent-entity caches
    recent_customers: int = 5
    recent_invoices: int = 5
    recent_expenses: int = 5
    recent_items: int = 10
    recent_entity_limit: int = 10

    # Search and display limits
    customer_search_limit: int = 10
    search_display_limit: int = 5
    catalog_limit: int = 10

    # User preference defaults
    default_currency: str = "USD"
    default_template: str = "modern"
    default_date_format: str = "MM/DD/YYYY"
    default_language: str = "en"

    # Invoicing
    default_invoice_number_format: str = "INV-{YYYY}-{###}"
    invoice_due_days: int = 30
    default_tax_rate: float = Field(default=0.0, description="Percent")

    # Reporting
    fiscal_year_start_month: int = Field(default=1, ge=1, le=12)

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings loaded from the environment."""
    return Settings()
