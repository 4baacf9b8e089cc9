"""
Centralized configuration for the e-Invoice submission service.

Pydantic v2 settings management: strict validation, no secret leakage,
and fast failure on invalid configuration.
"""

from functools import lru_cache
from typing import Annotated, Optional

from pydantic import AnyHttpUrl, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

EnvRequired = Annotated[
    str,
    Field(min_length=1),
]

SensitiveEnv = Annotated[
    SecretStr,
    Field(description="Sensitive credential, redacted from logs"),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if the intake service endpoint or the OAuth2
    client credentials are missing or malformed.
    """

    # ---------------------------------------------------------------------
    # Intake service
    # ---------------------------------------------------------------------

    api_base_url: Annotated[
        AnyHttpUrl,
        Field(description="Base URL of the document intake API"),
    ]

    identity_base_url: Annotated[
        Optional[AnyHttpUrl],
        Field(
            default=None,
            description=(
                "Base URL of the token endpoint. "
                "Defaults to api_base_url."
            ),
        ),
    ]

    request_timeout_seconds: Annotated[
        float,
        Field(default=30.0, gt=0),
    ]

    # ---------------------------------------------------------------------
    # OAuth2 client credentials
    # ---------------------------------------------------------------------

    client_id: EnvRequired
    client_secret: SensitiveEnv
    token_scope: str = "InvoicingAPI"

    token_refresh_threshold_seconds: Annotated[
        float,
        Field(
            default=300.0,
            ge=0,
            description="Renew the credential this long before it expires",
        ),
    ]

    token_proactive_refresh: Annotated[
        bool,
        Field(
            default=True,
            description="Renew from a timer before expiry instead of on demand only",
        ),
    ]

    verify_credentials_on_startup: bool = False

    # ---------------------------------------------------------------------
    # Polling
    # ---------------------------------------------------------------------

    polling_interval_seconds: Annotated[float, Field(default=5.0, ge=0)]
    polling_max_attempts: Annotated[int, Field(default=10, ge=1)]
    polling_initial_delay_seconds: Annotated[float, Field(default=0.3, ge=0)]

    heuristic_enabled: bool = True
    heuristic_min_attempt: Annotated[
        int,
        Field(
            default=10,
            ge=1,
            description=(
                "Earliest attempt number at which a long-running "
                "InProgress submission may be reported as accepted"
            ),
        ),
    ]
    heuristic_consecutive_attempts: Annotated[int, Field(default=2, ge=1)]
    heuristic_sub_status: str = "Submitted"

    # ---------------------------------------------------------------------
    # Batch preparation
    # ---------------------------------------------------------------------

    encode_concurrency: Annotated[int, Field(default=5, ge=1)]
    invoice_max_age_days: Annotated[
        Optional[int],
        Field(
            default=3,
            ge=0,
            description="Reject invoices issued earlier than this. None disables.",
        ),
    ]

    customer_api_url: Annotated[
        Optional[AnyHttpUrl],
        Field(
            default=None,
            description="CRUD service that serves customer reference data",
        ),
    ]
    customer_cache_ttl_seconds: Annotated[float, Field(default=300.0, ge=0)]

    # ---------------------------------------------------------------------
    # Supplier party rendered into every document
    # ---------------------------------------------------------------------

    supplier_name: str = ""
    supplier_tin: str = ""
    supplier_id_type: str = "BRN"
    supplier_id_number: str = ""
    supplier_msic_code: str = "00000"
    supplier_business_activity: str = "NOT APPLICABLE"
    supplier_phone: str = ""
    supplier_email: Optional[str] = None
    supplier_address_line: str = ""
    supplier_city: str = ""
    supplier_state_code: str = "17"
    supplier_postcode: str = ""
    supplier_country_code: str = "MYS"

    model_config = SettingsConfigDict(
        env_prefix="EINVOICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    @model_validator(mode="after")
    def heuristic_within_budget(self) -> "Settings":
        if (
            self.heuristic_enabled
            and self.heuristic_min_attempt > self.polling_max_attempts
        ):
            raise ValueError(
                "heuristic_min_attempt exceeds polling_max_attempts; "
                "the heuristic could never fire."
            )
        return self

    # ---------------------------------------------------------------------
    # Derived endpoints
    # ---------------------------------------------------------------------

    @property
    def api_root(self) -> str:
        return str(self.api_base_url).rstrip("/")

    @property
    def token_url(self) -> str:
        base = self.identity_base_url or self.api_base_url
        return f"{str(base).rstrip('/')}/connect/token"


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Settings provider for the application entrypoint.

    Constructed once per process and handed to the composition root;
    library code receives Settings explicitly and never calls this.
    """
    return Settings()
