from __future__ import annotations

"""
Engine configuration.

Split ratios and the token -> fiat table are external, versioned configuration
(YAML), never business policy hard-coded into the aggregators. Environment
variables override the tunables that operators adjust per deployment.

Supported env:
- FINANCE_ENGINE_CONFIG: path to YAML (default: configs/finance_engine.yaml)
- FINANCE_MAX_WORKERS
- FINANCE_BALANCE_MISMATCH_THRESHOLD
- FINANCE_REPORTING_CURRENCY
- FINANCE_PAGE_SIZE
"""

import logging
import os
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from finance_engine.ledger.models import SourceCategory

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000
_CENT = Decimal("0.01")

DEFAULT_CREATOR_BPS: dict[SourceCategory, int] = {
    SourceCategory.CHAT: 6500,
    SourceCategory.CALLS: 8000,
    SourceCategory.CALENDAR: 8000,
    SourceCategory.EVENTS: 8000,
    SourceCategory.OTHER: 7000,
}

# Fixed platform conversion table (1 token = N units of currency).
DEFAULT_TOKEN_TO_FIAT: dict[str, Decimal] = {
    "USD": Decimal("0.01"),
    "EUR": Decimal("0.009"),
    "GBP": Decimal("0.008"),
    "PLN": Decimal("0.04"),
}


def _repo_root() -> Path:
    # <root>/finance_engine/common/config.py -> parents[2] == <root>
    return Path(__file__).resolve().parents[2]


class RevenueSplitTable(BaseModel):
    """
    Creator share per source category in basis points (0..10000).

    The platform share is never configured: it is always derived by subtraction.
    """

    version: str = Field(default="2024-01", description="Stamped onto every snapshot.")
    creator_bps: dict[SourceCategory, int] = Field(default_factory=lambda: dict(DEFAULT_CREATOR_BPS))

    @field_validator("creator_bps")
    @classmethod
    def _validate_bps(cls, v: dict[SourceCategory, int]) -> dict[SourceCategory, int]:
        missing = [c.value for c in SourceCategory if c not in v]
        if missing:
            raise ValueError(f"creator_bps missing categories: {sorted(missing)}")
        for cat, bps in v.items():
            if isinstance(bps, bool) or not isinstance(bps, int):
                raise ValueError(f"creator_bps[{cat.value}] must be an integer")
            if bps < 0 or bps > BPS_DENOMINATOR:
                raise ValueError(f"creator_bps[{cat.value}] must be 0..{BPS_DENOMINATOR}")
        return v

    def creator_bps_for(self, category: SourceCategory) -> int:
        return int(self.creator_bps[category])


class FiatConversionTable(BaseModel):
    reporting_currency: str = "PLN"
    token_to_fiat: dict[str, Decimal] = Field(default_factory=lambda: dict(DEFAULT_TOKEN_TO_FIAT))

    @field_validator("token_to_fiat")
    @classmethod
    def _validate_rates(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        out: dict[str, Decimal] = {}
        for ccy, rate in v.items():
            if rate <= 0:
                raise ValueError(f"token_to_fiat[{ccy}] must be > 0")
            out[str(ccy).strip().upper()] = rate
        return out

    @model_validator(mode="after")
    def _reporting_currency_known(self) -> "FiatConversionTable":
        self.reporting_currency = self.reporting_currency.strip().upper()
        if self.reporting_currency not in self.token_to_fiat:
            raise ValueError(f"reporting_currency {self.reporting_currency} has no conversion rate")
        return self

    def rate(self, currency: Optional[str] = None) -> Decimal:
        ccy = (currency or self.reporting_currency).strip().upper()
        if ccy not in self.token_to_fiat:
            raise KeyError(f"no conversion rate for currency {ccy}")
        return self.token_to_fiat[ccy]

    def to_fiat(self, tokens: int, currency: Optional[str] = None) -> Decimal:
        return (Decimal(int(tokens)) * self.rate(currency)).quantize(_CENT, rounding=ROUND_HALF_UP)


class EngineSettings(BaseModel):
    splits: RevenueSplitTable = Field(default_factory=RevenueSplitTable)
    fiat: FiatConversionTable = Field(default_factory=FiatConversionTable)

    max_workers: int = Field(default=8, ge=1, le=64)
    page_size: int = Field(default=500, ge=1, le=10_000)

    # Reconciler tunables.
    balance_mismatch_threshold: int = Field(default=10, ge=1)
    high_severity_discrepancy: int = Field(default=100, ge=1)
    split_tolerance_tokens: int = Field(default=1, ge=0)

    # Bound the per-run failure map written to the audit trail.
    max_recorded_failures: int = Field(default=100, ge=0)


def default_config_path() -> Path:
    raw = os.getenv("FINANCE_ENGINE_CONFIG") or "configs/finance_engine.yaml"
    p = Path(raw)
    if not p.is_absolute():
        p = _repo_root() / p
    return p


def _env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for env_name, key in (
        ("FINANCE_MAX_WORKERS", "max_workers"),
        ("FINANCE_BALANCE_MISMATCH_THRESHOLD", "balance_mismatch_threshold"),
        ("FINANCE_PAGE_SIZE", "page_size"),
    ):
        raw = (os.getenv(env_name) or "").strip()
        if not raw:
            continue
        try:
            out[key] = int(raw)
        except ValueError:
            logger.warning("config.invalid_env_override name=%s value=%r", env_name, raw)
    return out


def load_settings(path: Optional[Path | str] = None) -> EngineSettings:
    """
    Load settings from YAML (if present) and apply env overrides.

    A missing file yields the built-in defaults; an invalid file raises.
    """
    p = Path(path) if path is not None else default_config_path()
    raw: dict[str, Any] = {}
    if p.exists():
        loaded = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{p}: expected a mapping at the top level")
        raw = loaded
    else:
        logger.info("config.file_missing path=%s using_defaults=true", p)

    raw.update(_env_overrides())
    ccy = (os.getenv("FINANCE_REPORTING_CURRENCY") or "").strip()
    if ccy:
        fiat = dict(raw.get("fiat") or {})
        fiat["reporting_currency"] = ccy
        raw["fiat"] = fiat

    return EngineSettings.model_validate(raw)
