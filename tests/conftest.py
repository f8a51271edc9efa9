from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, Dict

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent))

from contact_scraper.config_loader import ConfigLoader  # noqa: E402


FAST_SETTINGS: Dict[str, Any] = {
    "browser": {
        "headless": True,
        "settle_delay": 0,
        "min_delay": 0,
        "max_delay": 0,
    },
    "scraping": {"max_concurrent_pages": 6},
    "consent": {"poll_attempts": 2, "poll_interval": 0, "apply_wait": 0},
    "captcha": {
        "enabled": True,
        "max_cycles": 3,
        "time_budget_seconds": 60,
        "reload_wait": 0,
        "submit_wait": 0,
        "contact_wait": 0,
        "type_delay_ms": 0,
    },
    "enrichment": {"batch_size": 3, "delay_between_batches": 0},
}


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def make_config():
    def _make(overrides: Dict[str, Any] | None = None) -> ConfigLoader:
        return ConfigLoader.from_dict(_merge(FAST_SETTINGS, overrides or {}))

    return _make


@pytest.fixture
def config(make_config) -> ConfigLoader:
    return make_config()
