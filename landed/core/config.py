from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CUSTOMER_API_KEY = "lc-customer-dev-key"
DEFAULT_ADMIN_API_KEY = "lc-admin-dev-key"
DEFAULT_SYSTEM_API_KEY = "lc-system-dev-key"
DEFAULT_AUDITOR_API_KEY = "lc-auditor-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="LC_", extra="ignore")

    app_name: str = "Landed Cost Core"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./landed.db"

    auth_enabled: bool = True
    customer_api_key: str = DEFAULT_CUSTOMER_API_KEY
    admin_api_key: str = DEFAULT_ADMIN_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    auditor_api_key: str = DEFAULT_AUDITOR_API_KEY
    customer_actor_id: str = "customer-001"
    admin_actor_id: str = "admin-001"
    system_actor_id: str = "system-001"
    auditor_actor_id: str = "auditor-001"

    quote_validity_days: int = Field(default=7, ge=1)
    max_grand_total: Decimal = Field(
        default=Decimal("1000000"),
        description="Upper bound for a computed grand total, in calculation currency",
    )
    payment_epsilon: Decimal = Field(
        default=Decimal("0.01"),
        description="Tolerance when comparing amount paid against the quote total",
    )
    reconcile_repair: bool = False

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.customer_api_key == DEFAULT_CUSTOMER_API_KEY:
            insecure_items.append("LC_CUSTOMER_API_KEY")
        if self.admin_api_key == DEFAULT_ADMIN_API_KEY:
            insecure_items.append("LC_ADMIN_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("LC_SYSTEM_API_KEY")
        if self.auditor_api_key == DEFAULT_AUDITOR_API_KEY:
            insecure_items.append("LC_AUDITOR_API_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default api keys are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
