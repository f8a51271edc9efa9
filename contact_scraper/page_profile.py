"""
Page profile for the Bundesagentur job detail page.

Every selector, marker and phrase the consent, challenge and extraction steps
rely on lives here so the page template can drift without touching the flow
logic. Any field can be overridden from the `page_profile` section of
settings.yaml.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageProfile:
    detail_url_template: str = "https://www.arbeitsagentur.de/jobsuche/jobdetail/{job_id}"
    cookie_domain: str = ".arbeitsagentur.de"

    # === Consent wall ===
    consent_cookies: Tuple[Tuple[str, str], ...] = (
        ("cookie-consent", "accepted"),
        ("cookie-analytics", "true"),
        ("cookie-preferences", "all"),
        ("cookieAccepted", "true"),
        ("usercentrics-consent", "accepted"),
        ("uc_consent", "accepted"),
        ("cookielawinfo-checkbox-necessary", "yes"),
        ("cookielawinfo-checkbox-analytics", "yes"),
        ("cookielawinfo-checkbox-advertisement", "yes"),
    )
    consent_storage_items: Tuple[Tuple[str, str], ...] = (
        ("cookieConsent", "accepted"),
        ("usercentrics_consent", "true"),
        ("cookie_preference", "all"),
        ("privacy_policy_accepted", "true"),
        ("gdpr_consent", "true"),
    )
    consent_banner_copy: Tuple[str, ...] = (
        "Verwendung von Cookies und anderen Technologien",
        "Alle Cookies akzeptieren",
        "Alle Cookies ablehnen",
    )
    consent_vendor_markers: Tuple[str, ...] = (
        "cookie-modal",
        "consent-modal",
        "privacy-modal",
        "usercentrics",
        "cookie-banner",
        "bahf-cookie-disclaimer",
    )
    consent_component_tag: str = "bahf-cookie-disclaimer-dpl3"
    consent_accept_phrases: Tuple[str, ...] = (
        "Alle Cookies akzeptieren",
        "Alle akzeptieren",
        "Alles akzeptieren",
        "Cookies akzeptieren",
        "Zustimmen und weiter",
        "Akzeptieren",
        "Zustimmen",
        "Einverstanden",
        "Verstanden",
        "Accept all cookies",
        "Accept All",
        "OK",
    )
    consent_second_step_phrases: Tuple[str, ...] = (
        "Alle Cookies akzeptieren",
        "Auswahl bestätigen",
    )
    consent_clickable_selectors: Tuple[str, ...] = (
        "button",
        "input[type='button']",
        "input[type='submit']",
        "a[role='button']",
        "[role='button']",
        "[data-testid*='accept']",
        "[data-testid*='consent']",
        "[id*='accept']",
        "[aria-label*='ccept']",
    )
    consent_removal_selectors: Tuple[str, ...] = (
        "[class*='cookie']",
        "[class*='consent']",
        "[class*='privacy']",
        "[id*='cookie']",
        "[id*='consent']",
        "[id*='privacy']",
        "[data-testid*='cookie']",
        "[data-testid*='consent']",
        ".modal",
        ".overlay",
        ".banner",
        "[role='dialog']",
    )
    consent_removal_vocabulary: Tuple[str, ...] = ("cookie", "consent", "datenschutz")

    # === Contact section ===
    contact_section_selectors: Tuple[str, ...] = (
        "#jobdetails-kontaktdaten-block",
        "#jobdetails-kontaktdaten-heading",
    )
    contact_section_toggle: str = "#jobdetails-kontaktdaten-heading button"

    # === Image challenge ===
    captcha_image_selectors: Tuple[str, ...] = (
        "img[alt='Sicherheitsabfrage']",
        "#kontaktdaten-captcha-image",
        "img[src*='/captcha/']",
        "img[src*='captcha']",
        "img[id*='captcha']",
        "img[title*='captcha']",
        "img[title*='Sicherheit']",
    )
    captcha_context_markers: Tuple[str, ...] = (
        "sicherheitsabfrage",
        "captcha",
        "zeichen",
        "kontaktdaten",
    )
    captcha_page_copy: Tuple[str, ...] = ("sicherheitsabfrage", "dargestellte zeichen")
    captcha_input_selector: str = "#kontaktdaten-captcha-input"
    captcha_submit_selector: str = "#kontaktdaten-captcha-absenden-button"
    captcha_submit_text: str = "absenden"
    captcha_reload_selector: str = "#kontaktdaten-captcha-neues-bild-button"
    captcha_reload_pattern: str = r"Anderes Bild laden|Neues Bild|Neues Captcha"
    captcha_url_pattern: str = r"captcha"
    captcha_unsupported_chars: str = r"[äöüÄÖÜß]"
    captcha_min_width: float = 50
    captcha_min_height: float = 20
    captcha_min_length: int = 5
    captcha_max_length: int = 7
    captcha_case_sensitive: bool = True
    captcha_language: str = "de"

    # === Network ===
    allowed_resource_types: Tuple[str, ...] = ("document", "script", "xhr", "fetch")
    blocked_host_pattern: str = r"(google-analytics|googletagmanager|gtag|doubleclick|facebook|hotjar|segment)\."

    # === External application link ===
    external_link_texts: Tuple[str, ...] = (
        "Externe Seite öffnen",
        "Kooperationspartner",
        "Stellenbeschreibung",
        "jobexport",
    )
    external_link_hosts: Tuple[str, ...] = ("jobexport", "stepstone", "xing", "jobs.de")
    external_site_indicators: Tuple[str, ...] = (
        "Externe Seite öffnen",
        "jobexport.de",
        "Vollständige Stellenbeschreibung bei unserem Kooperationspartner",
        "bei unserem Kooperationspartner einsehen",
    )

    def detail_url(self, job_id: str) -> str:
        return self.detail_url_template.format(job_id=job_id)

    @classmethod
    def from_overrides(cls, overrides: Dict[str, Any] | None) -> "PageProfile":
        """Build a profile from defaults plus a mapping of field overrides."""
        profile = cls()
        if not overrides:
            return profile

        known = {f.name for f in fields(cls)}
        changes: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown page_profile key: %s", key)
                continue
            changes[key] = _coerce(value)
        return replace(profile, **changes)


def _coerce(value: Any) -> Any:
    # YAML gives lists; the profile stores tuples (pairs stay pairs).
    if isinstance(value, list):
        return tuple(_coerce(v) for v in value)
    return value


def as_js_list(values: Tuple[Any, ...]) -> List[Any]:
    """Convert a profile tuple into a JSON-serialisable list for page.evaluate()."""
    return [list(v) if isinstance(v, tuple) else v for v in values]
