"""
Configuration loader for the contact scraper
Reads and validates settings.yaml
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from contact_scraper.page_profile import PageProfile

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"


class ConfigValidationError(ValueError):
    """Raised when configuration fails invariant validation."""
    pass


def _validate_non_negative(value: Any, field: str) -> None:
    """Validate that a numeric value is non-negative."""
    if value is not None and float(value) < 0:
        raise ConfigValidationError(
            f"Invalid config: '{field}' must be non-negative, got {value}"
        )


def _validate_positive(value: Any, field: str) -> None:
    """Validate that a numeric value is positive (> 0)."""
    if value is not None and float(value) <= 0:
        raise ConfigValidationError(
            f"Invalid config: '{field}' must be positive (> 0), got {value}"
        )


def _validate_min_max_pair(min_val: Any, max_val: Any, min_field: str, max_field: str) -> None:
    """Validate that min_val <= max_val for a delay/range pair."""
    if min_val is not None and max_val is not None:
        if float(min_val) > float(max_val):
            raise ConfigValidationError(
                f"Invalid config: '{min_field}' ({min_val}) must be <= '{max_field}' ({max_val})"
            )


class ConfigLoader:
    """Loads and validates configuration from YAML file"""

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        *,
        require_file: bool = False,
        data: Optional[Dict[str, Any]] = None,
    ):
        self.config_path = Path(config_path)
        self.config: Dict[str, Any] = {}
        if data is not None:
            self.config = dict(data)
            self._validate_invariants()
        else:
            self._load(require_file)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigLoader":
        """Build a config directly from a mapping (tests, embedding)."""
        return cls(data=data)

    def _load(self, require_file: bool) -> None:
        """Load config from YAML file"""
        if not self.config_path.exists():
            if require_file:
                raise FileNotFoundError(f"Config file not found: {self.config_path}")
            logger.info("No config file at %s; using built-in defaults", self.config_path)
            self._validate_invariants()
            return

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self.config = yaml.safe_load(f) or {}
            logger.info("✓ Config loaded from %s", self.config_path)
        except yaml.YAMLError as e:
            logger.error("Error parsing config file: %s", e)
            raise

        self._validate_invariants()

    def _validate_invariants(self) -> None:
        """Validate configuration invariants. Raises ConfigValidationError on failure."""
        # Browser timeouts (must be positive)
        _validate_positive(self.get('browser.page_timeout'), 'browser.page_timeout')
        _validate_positive(self.get('browser.navigation_timeout'), 'browser.navigation_timeout')
        _validate_positive(self.get('browser.launch_timeout'), 'browser.launch_timeout')
        _validate_positive(self.get('browser.goto_timeout'), 'browser.goto_timeout')
        _validate_positive(self.get('browser.website_timeout'), 'browser.website_timeout')
        _validate_non_negative(self.get('browser.launch_retries'), 'browser.launch_retries')
        _validate_non_negative(self.get('browser.settle_delay'), 'browser.settle_delay')

        min_delay = self.get('browser.min_delay')
        max_delay = self.get('browser.max_delay')
        _validate_non_negative(min_delay, 'browser.min_delay')
        _validate_non_negative(max_delay, 'browser.max_delay')
        _validate_min_max_pair(min_delay, max_delay, 'browser.min_delay', 'browser.max_delay')

        # Scrape slots
        _validate_positive(self.get('scraping.max_concurrent_pages'), 'scraping.max_concurrent_pages')

        # Consent polling
        _validate_non_negative(self.get('consent.poll_attempts'), 'consent.poll_attempts')
        _validate_non_negative(self.get('consent.poll_interval'), 'consent.poll_interval')

        # Captcha settings
        _validate_positive(self.get('captcha.solve_timeout_seconds'), 'captcha.solve_timeout_seconds')
        _validate_positive(self.get('captcha.poll_interval_seconds'), 'captcha.poll_interval_seconds')
        _validate_positive(self.get('captcha.max_cycles'), 'captcha.max_cycles')
        _validate_positive(self.get('captcha.time_budget_seconds'), 'captcha.time_budget_seconds')
        _validate_non_negative(self.get('captcha.reload_wait'), 'captcha.reload_wait')
        _validate_non_negative(self.get('captcha.submit_wait'), 'captcha.submit_wait')
        _validate_non_negative(self.get('captcha.contact_wait'), 'captcha.contact_wait')

        # Batch enrichment
        _validate_positive(self.get('enrichment.batch_size'), 'enrichment.batch_size')
        _validate_non_negative(self.get('enrichment.delay_between_batches'), 'enrichment.delay_between_batches')

        page_profile = self.get('page_profile')
        if page_profile is not None and not isinstance(page_profile, dict):
            raise ConfigValidationError("Invalid config: 'page_profile' must be a mapping")

        logger.debug("✓ Config invariants validated")

    def get(self, key: str, default: Any = None) -> Any:
        """Get config value by dot notation (e.g., 'captcha.max_cycles')"""
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k, default)
            else:
                return default

        return value

    # === Browser Config ===

    def is_headless(self) -> bool:
        """Check if browser should run in headless mode"""
        return bool(self.get('browser.headless', True))

    def use_stealth(self) -> bool:
        """Check if Playwright stealth should be enabled"""
        return bool(self.get('browser.use_stealth', False))

    def get_page_timeout(self) -> int:
        """Get default page action timeout in milliseconds"""
        return int(float(self.get('browser.page_timeout', 60)) * 1000)

    def get_navigation_timeout(self) -> int:
        """Get navigation timeout in milliseconds"""
        return int(float(self.get('browser.navigation_timeout', 90)) * 1000)

    def get_goto_timeout(self) -> int:
        """Get the timeout for loading the job detail page in milliseconds"""
        return int(float(self.get('browser.goto_timeout', 30)) * 1000)

    def get_website_timeout(self) -> float:
        """Get the timeout in seconds for plain company website fetches"""
        return float(self.get('browser.website_timeout', 5))

    def get_launch_timeout(self) -> int:
        """Get browser launch timeout in milliseconds"""
        return int(float(self.get('browser.launch_timeout', 60)) * 1000)

    def get_launch_retries(self) -> int:
        """Get how many times a failed browser launch is retried"""
        return int(self.get('browser.launch_retries', 1))

    def get_settle_delay(self) -> float:
        """Seconds to let the detail page settle after navigation"""
        return float(self.get('browser.settle_delay', 5.0))

    def get_wait_until(self) -> str:
        """Playwright load state used for page.goto"""
        value = (self.get('browser.wait_until', 'networkidle') or 'networkidle').strip().lower()
        if value not in ('load', 'domcontentloaded', 'networkidle', 'commit'):
            logger.warning("Invalid browser.wait_until value %r; defaulting to 'networkidle'", value)
            return 'networkidle'
        return value

    def get_min_delay(self) -> float:
        """Get minimum human-like delay between actions"""
        return float(self.get('browser.min_delay', 0.5))

    def get_max_delay(self) -> float:
        """Get maximum human-like delay between actions"""
        return float(self.get('browser.max_delay', 1.5))

    def get_user_agent(self) -> str:
        return self.get(
            'browser.user_agent',
            'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
            '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        )

    def get_browser_channel(self) -> str:
        """Get Playwright browser channel override"""
        return self.get('browser.channel', '') or ''

    def get_browser_executable_path(self) -> str:
        """Get browser executable path override"""
        return self.get('browser.executable_path', '') or ''

    # === Scraping Config ===

    def get_max_concurrent_pages(self) -> int:
        """Get the number of page scrapes allowed to run at once"""
        return int(self.get('scraping.max_concurrent_pages', 6))

    # === Consent Config ===

    def is_consent_handling_enabled(self) -> bool:
        return bool(self.get('consent.enabled', True))

    def get_consent_poll_attempts(self) -> int:
        return int(self.get('consent.poll_attempts', 15))

    def get_consent_poll_interval(self) -> float:
        return float(self.get('consent.poll_interval', 1.5))

    def get_consent_apply_wait(self) -> float:
        """Seconds to wait after an accept action before re-checking"""
        return float(self.get('consent.apply_wait', 2.0))

    # === Captcha Config ===

    def is_captcha_auto_solve_enabled(self) -> bool:
        """Check if captcha auto-solving should be attempted."""
        return bool(self.get("captcha.enabled", True))

    def get_captcha_provider(self) -> str:
        """Get captcha provider name (default env CAPTCHA_PROVIDER or '2captcha')."""
        provider = (self.get("captcha.provider", "") or "").strip()
        if provider:
            return provider
        env_provider = (os.getenv("CAPTCHA_PROVIDER") or "").strip()
        return env_provider or "2captcha"

    def get_captcha_api_key_env(self) -> str:
        """Get env var name that contains the captcha API key."""
        return (self.get("captcha.api_key_env", "") or "TWOCAPTCHA_API_KEY").strip() or "TWOCAPTCHA_API_KEY"

    def get_captcha_api_key(self) -> str:
        """Read captcha API key from env using captcha.api_key_env (never stored in config)."""
        env_name = self.get_captcha_api_key_env()
        return (os.getenv(env_name) or "").strip()

    def get_captcha_solve_timeout_seconds(self) -> int:
        """Get how long to wait for the solving service to return an answer."""
        return int(self.get("captcha.solve_timeout_seconds", 120))

    def get_captcha_poll_interval_seconds(self) -> float:
        """Get captcha provider polling interval in seconds."""
        value = self.get("captcha.poll_interval_seconds", 5)
        return max(float(value), 1.0)

    def get_captcha_max_cycles(self) -> int:
        """Get max capture/solve cycles per page visit."""
        return max(int(self.get("captcha.max_cycles", 3)), 1)

    def get_captcha_time_budget_seconds(self) -> float:
        """Get total time budget for one challenge resolution."""
        return float(self.get("captcha.time_budget_seconds", 60))

    def get_captcha_reload_wait(self) -> float:
        return float(self.get("captcha.reload_wait", 2.5))

    def get_captcha_submit_wait(self) -> float:
        return float(self.get("captcha.submit_wait", 4.0))

    def get_captcha_contact_wait(self) -> float:
        return float(self.get("captcha.contact_wait", 8.0))

    def get_captcha_type_delay_ms(self) -> int:
        """Per-keystroke delay when typing the answer."""
        return int(self.get("captcha.type_delay_ms", 120))

    def should_report_bad_answers(self) -> bool:
        return bool(self.get("captcha.report_bad_answers", True))

    # === Enrichment Config ===

    def get_batch_size(self) -> int:
        return int(self.get('enrichment.batch_size', 3))

    def get_delay_between_batches(self, total_jobs: int = 0) -> float:
        """Delay between batches; larger runs use the slower default."""
        explicit = self.get('enrichment.delay_between_batches', None)
        if explicit is not None:
            return float(explicit)
        threshold = int(self.get('enrichment.large_batch_threshold', 10))
        return 1.5 if total_jobs > threshold else 0.8

    # === Page Profile ===

    def get_page_profile(self) -> PageProfile:
        """Get the page profile with any YAML overrides applied"""
        return PageProfile.from_overrides(self.get('page_profile', {}) or {})

    # === Output Config ===

    def get_output_path(self, file_type: str = 'json') -> Path:
        """Get output file path with timestamp if enabled"""
        use_timestamp = self.get('output.use_timestamp', True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S') if use_timestamp else ''

        defaults = {
            'json': 'output/enrichment_{timestamp}.json',
            'jsonl': 'output/enriched_jobs_{timestamp}.jsonl',
            'markdown': 'output/enrichment_{timestamp}.md',
        }
        template = self.get(f'output.{file_type}_file', defaults.get(file_type, f'output/enrichment.{file_type}'))
        filename = template.replace('{timestamp}', timestamp)

        return Path(filename)

    def get_metrics_template(self) -> str:
        return self.get('output.metrics_file', 'output/run_metrics_{timestamp}.json')

    # === Logging Config ===

    def get_log_level(self) -> str:
        """Get logging level"""
        return str(self.get('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Path:
        """Get log file path with timestamp"""
        template = self.get('logging.log_file', 'logs/contact_scraper.log')
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        filename = template.replace('{timestamp}', timestamp)
        return Path(filename)

    def __repr__(self) -> str:
        return (
            f"<Config: slots={self.get_max_concurrent_pages()}, "
            f"captcha={'on' if self.is_captcha_auto_solve_enabled() else 'off'}>"
        )


# Convenience function
def load_config(config_path: str = DEFAULT_CONFIG_PATH, *, require_file: bool = False) -> ConfigLoader:
    """Load configuration from file"""
    return ConfigLoader(config_path, require_file=require_file)
