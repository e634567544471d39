from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for AI models, data files, pricing and tracking limits."""
    gemini_api_key: str
    gemini_model: str
    catalog_path: Path
    orders_path: Optional[Path]
    prompts_dir: Path
    pay_now_discount: float
    verification_window_minutes: int
    customer_savings_percent: float
    wholesale_target_percent: float
    poll_interval_seconds: float
    ai_timeout_seconds: float


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Non-numeric PAY_NOW_DISCOUNT / VERIFICATION_WINDOW_MINUTES /
        percentage / interval values raise ValueError, as do out-of-range discount,
        window and comparison percentage values.
    If Removed: The service cannot locate its catalog or configure pricing and fails at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment variables.
    """
    # Resolve data paths, then parse numeric knobs.
    catalog_path = os.getenv("CATALOG_PATH")
    if catalog_path:
        catalog_file = Path(catalog_path)
    else:
        catalog_file = (BASE_DIR / "resources" / "catalog.json").resolve()

    orders_path = os.getenv("ORDERS_PATH")
    orders_file = Path(orders_path) if orders_path else None

    pay_now_discount = float(os.getenv("PAY_NOW_DISCOUNT", "0.10"))
    if not 0 <= pay_now_discount < 1:
        raise ValueError("PAY_NOW_DISCOUNT must be within [0, 1)")
    window = int(os.getenv("VERIFICATION_WINDOW_MINUTES", "90"))
    if window <= 0:
        raise ValueError("VERIFICATION_WINDOW_MINUTES must be positive")
    customer_savings = float(os.getenv("CUSTOMER_SAVINGS_PERCENT", "30"))
    if not math.isfinite(customer_savings) or not 0 <= customer_savings <= 100:
        raise ValueError("CUSTOMER_SAVINGS_PERCENT must be within [0, 100]")
    wholesale_target = float(os.getenv("WHOLESALE_TARGET_PERCENT", "55"))
    if not math.isfinite(wholesale_target) or wholesale_target < 0:
        raise ValueError("WHOLESALE_TARGET_PERCENT must be a non-negative number")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        catalog_path=catalog_file,
        orders_path=orders_file,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        pay_now_discount=pay_now_discount,
        verification_window_minutes=window,
        customer_savings_percent=customer_savings,
        wholesale_target_percent=wholesale_target,
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "3")),
        ai_timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", "30")),
    )
