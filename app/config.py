# app/config.py

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings
from functools import lru_cache


class RailTolerance(BaseModel):
    """Disbursement cadence and amount tolerances for one payment rail."""

    same_day_tolerance: float = 0.10
    window_days: int = 3
    business_days: bool = False
    sum_lookback_days: int = 5
    sum_tolerance: float = 0.50
    sum_max_members: int = 6


def _default_rail_tolerances() -> dict[str, RailTolerance]:
    # Card networks settle on business days, PayPal-style wallets are
    # batched daily, direct-debit collectors pay out on a slower cycle.
    return {
        "default": RailTolerance(),
        "braintree": RailTolerance(window_days=3, business_days=True),
        "stripe": RailTolerance(window_days=3, business_days=True, sum_lookback_days=7),
        "gocardless": RailTolerance(window_days=5, business_days=True, sum_lookback_days=10),
        "amex": RailTolerance(
            same_day_tolerance=5.0,
            window_days=5,
            business_days=True,
            sum_tolerance=5.0,
        ),
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Cash Reconciliation API"
    app_env: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    frontend_url: str = "http://localhost:3000"

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    records_table: str = "transactions"
    annotation_merge_rpc: str | None = None  # e.g. "merge_annotation"

    # Fetch
    fetch_page_size: int = 1000
    fetch_max_pages: int = 200

    # Pipeline
    match_workers: int = 4
    second_pass: bool = True
    summary_sample_size: int = 25
    summary_error_limit: int = 10

    # Matching cascade tolerances
    exact_amount_tolerance: float = 0.01
    amount_tolerance_percent: float = 5.0
    identity_date_window_days: int = 30
    narrow_date_window_days: int = 3
    fuzzy_name_threshold: float = 0.5
    min_token_length: int = 3

    # Matching cascade confidences
    confidence_exact_identifier: float = 0.98
    confidence_identifier_containment: float = 0.95
    confidence_reverified_identifier: float = 0.90
    confidence_identifier_in_description: float = 0.90
    confidence_email_amount_date: float = 0.85
    confidence_email_date: float = 0.70
    confidence_fuzzy_name_ceiling: float = 0.85
    confidence_fuzzy_name_loose_ceiling: float = 0.65
    confidence_amount_date: float = 0.60

    # Disbursements
    rail_tolerances: dict[str, RailTolerance] = Field(default_factory=_default_rail_tolerances)
    confidence_disbursement_reference: float = 1.0
    confidence_disbursement_same_day: float = 0.98
    confidence_disbursement_window: float = 0.95
    confidence_disbursement_window_floor: float = 0.85
    confidence_disbursement_sum: float = 0.80
    confidence_disbursement_net_of_fees: float = 0.75

    # Payables (AP invoice -> bank debit)
    ap_provider_similarity_strict: float = 0.70
    ap_provider_similarity_relaxed: float = 0.60
    ap_percent_tolerance: float = 2.0
    ap_multi_invoice_max: int = 5
    ap_multi_invoice_window_days: int = 10

    # P&L fallback
    internal_transfer_pattern: str = (
        r"propia cuenta|movimiento entre|traspasos? (?:propios?|entre)|dotacion"
        r"|cuenta propia|transferencia\s+a\s+favor.*propia|transf.*propia"
        r"|mov(?:imiento)?\s+interno|own account|internal transfer"
        r"|transfer between accounts|book transfer"
    )
    intercompany_entity_markers: list[str] = Field(default_factory=lambda: ["dsd"])
    intercompany_suffix_pattern: str = r"\bllc\b|\bs\.l\b|\bsl\b|\binc\b|\bltd\b|planning center"
    gateway_name_pattern: str = r"paypal|stripe|gocardless|braintree|american express|amex|adyen"
    internal_category: str = "internal"
    intercompany_category: str = "intercompany"
    catch_all_category: str = "105.0"
    confidence_internal_transfer: float = 0.95
    confidence_intercompany: float = 0.90
    confidence_name_extraction: float = 0.70
    confidence_gateway_dominant: float = 0.50
    confidence_catch_all: float = 0.10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
