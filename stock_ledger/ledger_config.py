from __future__ import annotations

import configparser
import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class StockPolicy(BaseModel):
    allow_negative_stock: bool = False
    apply_max_attempts: int = 4
    apply_backoff_seconds: float = 0.01

    @field_validator("apply_max_attempts")
    @classmethod
    def attempts_in_range(cls, v: int) -> int:
        # bounded retry: at least 3, at most 5 attempts before ContentionError
        return min(max(int(v), 3), 5)

    @field_validator("apply_backoff_seconds")
    @classmethod
    def backoff_not_negative(cls, v: float) -> float:
        return max(float(v), 0.0)


class AgingPolicy(BaseModel):
    aging_days: int = 30
    old_days: int = 90
    expiring_soon_days: int = 30


class LocationSpec(BaseModel):
    code: str
    name: str


class LocationsConfig(BaseModel):
    default: LocationSpec = Field(
        default_factory=lambda: LocationSpec(code="MAIN", name="Main Warehouse")
    )
    extra: List[LocationSpec] = Field(default_factory=list)

    def all(self) -> List[LocationSpec]:
        seen = {self.default.code}
        out = [self.default]
        for loc in self.extra:
            if loc.code not in seen:
                seen.add(loc.code)
                out.append(loc)
        return out


class LedgerConfig(BaseModel):
    stock: StockPolicy = Field(default_factory=StockPolicy)
    aging: AgingPolicy = Field(default_factory=AgingPolicy)
    locations: LocationsConfig = Field(default_factory=LocationsConfig)


_cached_configs: Dict[str, Tuple[LedgerConfig, float]] = {}


def _parse_bool(raw: str, default: bool) -> bool:
    value = (raw or "").strip().lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


def _parse_location(raw: str) -> Optional[LocationSpec]:
    part = (raw or "").strip()
    if not part:
        return None
    if ":" in part:
        code, name = part.split(":", 1)
        code = code.strip()
        if not code:
            return None
        return LocationSpec(code=code, name=name.strip() or code)
    return LocationSpec(code=part, name=part)


def parse_ini(text: str) -> LedgerConfig:
    parser = configparser.ConfigParser()
    parser.read_string(text)

    def get(section: str, key: str, default: str = "") -> str:
        return (parser.get(section, key, fallback=default) or "").strip()

    defaults = LedgerConfig()

    default_location = _parse_location(get("locations", "default")) or defaults.locations.default
    extra = [
        loc
        for loc in (_parse_location(p) for p in get("locations", "extra").split(","))
        if loc is not None
    ]

    return LedgerConfig(
        stock=StockPolicy(
            allow_negative_stock=_parse_bool(
                get("stock", "allow_negative_stock"), defaults.stock.allow_negative_stock
            ),
            apply_max_attempts=int(get("stock", "apply_max_attempts") or defaults.stock.apply_max_attempts),
            apply_backoff_seconds=float(
                get("stock", "apply_backoff_seconds") or defaults.stock.apply_backoff_seconds
            ),
        ),
        aging=AgingPolicy(
            aging_days=int(get("aging", "aging_days") or defaults.aging.aging_days),
            old_days=int(get("aging", "old_days") or defaults.aging.old_days),
            expiring_soon_days=int(
                get("aging", "expiring_soon_days") or defaults.aging.expiring_soon_days
            ),
        ),
        locations=LocationsConfig(default=default_location, extra=extra),
    )


def load_ledger_config(path: Optional[str] = None) -> LedgerConfig:
    """Load the stock policy file, re-reading it only when its mtime changes."""
    config_path = Path(path or os.getenv("LEDGER_CONFIG_PATH", "stock_ledger/ledger_config.conf"))
    key = str(config_path)

    try:
        mtime = float(config_path.stat().st_mtime)
    except OSError:
        mtime = 0.0

    cached = _cached_configs.get(key)
    if cached is not None and cached[1] == mtime:
        return cached[0]

    if not config_path.exists():
        cfg = LedgerConfig()
    elif config_path.suffix.lower() == ".json":
        cfg = LedgerConfig.model_validate(json.loads(config_path.read_text(encoding="utf-8")))
    else:
        cfg = parse_ini(config_path.read_text(encoding="utf-8"))

    _cached_configs[key] = (cfg, mtime)
    return cfg
