"""
Consent wall handling for the job detail page.

Strategies run in order until one succeeds: seed consent cookies and storage,
wait for the banner, call the vendor consent APIs, click an accept control
(twice when a second confirmation step appears), and as a last resort strip
the banner from the DOM. The handler never raises and always lets the
scrape proceed.
"""

import logging
from enum import Enum
from typing import Any, Optional

from contact_scraper.page_profile import PageProfile, as_js_list

logger = logging.getLogger(__name__)


class ConsentOutcome(str, Enum):
    DISABLED = "disabled"
    NOT_PRESENT = "not_present"
    ACCEPTED_VIA_API = "accepted_via_api"
    ACCEPTED_VIA_CLICK = "accepted_via_click"
    OVERLAY_REMOVED = "overlay_removed"
    ERROR = "error"


SEED_STORAGE_JS = """
(items) => {
  let stored = 0;
  for (const [key, value] of items) {
    try { localStorage.setItem(key, value); stored++; } catch (e) {}
    try { sessionStorage.setItem(key, value); } catch (e) {}
  }
  return stored;
}
"""

SCROLL_JS = """
(where) => {
  if (where === 'top') window.scrollTo(0, 0);
  else window.scrollTo(0, document.body ? document.body.scrollHeight : 0);
}
"""

DETECT_BANNER_JS = """
({copy, markers}) => {
  const bodyText = (document.body && document.body.textContent) || '';
  const html = document.documentElement.innerHTML || '';
  if (copy.some((c) => bodyText.includes(c))) return 'copy';
  if (bodyText.includes('Cookie') && bodyText.includes('akzeptieren')) return 'cookie_accept';
  if (bodyText.includes('Datenschutz') && bodyText.includes('Cookie')) return 'privacy_cookie';
  if (markers.some((m) => html.includes(m))) return 'markup';
  return null;
}
"""

ACCEPT_VIA_API_JS = """
(componentTag) => {
  const attempts = [
    () => window.acceptAllCookies && window.acceptAllCookies(),
    () => window.cookieConsent && window.cookieConsent.accept(),
    () => window.cmp && window.cmp.acceptAll(),
    () => window.usercentrics && window.usercentrics.acceptAll(),
    () => window.UC_UI && window.UC_UI.acceptAllConsents(),
    () => window.OneTrust && window.OneTrust.AllowAll(),
    () => window.Optanon && window.Optanon.Allow(),
    () => {
      const el = document.querySelector(componentTag);
      if (el && typeof el.acceptAll === 'function') { el.acceptAll(); return true; }
      return false;
    },
    () => {
      const btn = document.querySelector('[data-testid="uc-accept-all-button"]');
      if (btn) { btn.click(); return true; }
      return false;
    },
  ];
  for (let i = 0; i < attempts.length; i++) {
    try {
      const result = attempts[i]();
      if (result) return i + 1;
    } catch (e) {}
  }
  return 0;
}
"""

CLICK_ACCEPT_JS = """
({selectors, phrases, exactOnly}) => {
  const seen = new Set();
  const candidates = [];
  for (const sel of selectors) {
    try {
      for (const el of document.querySelectorAll(sel)) {
        if (!seen.has(el)) { seen.add(el); candidates.push(el); }
      }
    } catch (e) {}
  }
  const matches = (value, phrase) => {
    if (!value) return false;
    if (value === phrase) return true;
    return !exactOnly && phrase.length > 3 && value.includes(phrase);
  };
  for (const phrase of phrases) {
    for (const el of candidates) {
      const text = (el.textContent || el.value || '').trim();
      const aria = el.getAttribute('aria-label') || '';
      const title = el.getAttribute('title') || '';
      if (!(matches(text, phrase) || matches(aria, phrase) || matches(title, phrase))) continue;
      const rect = el.getBoundingClientRect();
      const style = window.getComputedStyle(el);
      if (rect.width <= 0 || rect.height <= 0) continue;
      if (style.display === 'none' || style.visibility === 'hidden') continue;
      try { el.scrollIntoView({block: 'center'}); } catch (e) {}
      try { el.click(); return phrase; } catch (e1) {}
      try { el.dispatchEvent(new MouseEvent('click', {bubbles: true})); return phrase; } catch (e2) {}
      try {
        el.focus();
        el.dispatchEvent(new KeyboardEvent('keydown', {key: 'Enter', bubbles: true}));
        return phrase;
      } catch (e3) {}
    }
  }
  return null;
}
"""

SECOND_STEP_JS = """
(phrases) => {
  const bodyText = (document.body && document.body.textContent) || '';
  return phrases.some((p) => bodyText.includes(p));
}
"""

REMOVE_OVERLAYS_JS = """
({selectors, vocabulary}) => {
  let removed = 0;
  for (const sel of selectors) {
    try {
      for (const el of document.querySelectorAll(sel)) {
        const text = (el.textContent || '').toLowerCase();
        if (vocabulary.some((w) => text.includes(w))) {
          el.style.display = 'none';
          el.remove();
          removed++;
        }
      }
    } catch (e) {}
  }
  return removed;
}
"""


class ConsentHandler:
    """Gets past the cookie consent wall, best effort"""

    def __init__(self, config, profile: Optional[PageProfile] = None):
        self.config = config
        self.profile = profile or config.get_page_profile()
        self.enabled = config.is_consent_handling_enabled()
        self.poll_attempts = config.get_consent_poll_attempts()
        self.poll_interval_ms = int(config.get_consent_poll_interval() * 1000)
        self.apply_wait_ms = int(config.get_consent_apply_wait() * 1000)
        self.click_wait_ms = self.apply_wait_ms + 1000

    async def handle(self, page: Any, job_id: str) -> bool:
        """Run the consent strategies. Always returns True; failures are logged."""
        await self.resolve(page, job_id)
        return True

    async def resolve(self, page: Any, job_id: str) -> ConsentOutcome:
        """Same as handle(), but reports which strategy got past the wall."""
        if not self.enabled:
            return ConsentOutcome.DISABLED

        try:
            outcome = await self._run(page, job_id)
        except Exception as exc:
            logger.warning("Consent handling failed for job %s: %s", job_id, exc)
            outcome = ConsentOutcome.ERROR
        logger.info("Consent outcome for job %s: %s", job_id, outcome.value)
        return outcome

    async def _run(self, page: Any, job_id: str) -> ConsentOutcome:
        await self._seed_consent(page, job_id)

        signal = await self._wait_for_banner(page)
        if not signal:
            logger.debug("No consent banner for job %s; assuming consent already given", job_id)
            return ConsentOutcome.NOT_PRESENT
        logger.debug("Consent banner detected for job %s (%s)", job_id, signal)

        api_method = await self._safe_evaluate(page, ACCEPT_VIA_API_JS, self.profile.consent_component_tag)
        if api_method:
            logger.debug("Consent accepted via JS API method %s", api_method)
            await page.wait_for_timeout(self.apply_wait_ms)
            return ConsentOutcome.ACCEPTED_VIA_API

        clicked = await self._click_accept(page, self.profile.consent_accept_phrases)
        if clicked:
            logger.debug("Clicked consent control %r for job %s", clicked, job_id)
            await page.wait_for_timeout(self.click_wait_ms)
            await self._confirm_second_step(page, job_id)
            await page.wait_for_timeout(self.apply_wait_ms)
            return ConsentOutcome.ACCEPTED_VIA_CLICK

        removed = await self._safe_evaluate(
            page,
            REMOVE_OVERLAYS_JS,
            {
                "selectors": list(self.profile.consent_removal_selectors),
                "vocabulary": list(self.profile.consent_removal_vocabulary),
            },
        )
        logger.debug("Removed %s consent overlay nodes for job %s", removed or 0, job_id)
        return ConsentOutcome.OVERLAY_REMOVED

    async def _seed_consent(self, page: Any, job_id: str) -> None:
        cookies = [
            {"name": name, "value": value, "domain": self.profile.cookie_domain, "path": "/"}
            for name, value in self.profile.consent_cookies
        ]
        try:
            await page.context.add_cookies(cookies)
        except Exception as exc:
            logger.debug("Consent cookie seeding failed for job %s: %s", job_id, exc)

        await self._safe_evaluate(page, SEED_STORAGE_JS, as_js_list(self.profile.consent_storage_items))

    async def _wait_for_banner(self, page: Any) -> Optional[str]:
        payload = {
            "copy": list(self.profile.consent_banner_copy),
            "markers": list(self.profile.consent_vendor_markers),
        }
        for attempt in range(self.poll_attempts):
            if attempt % 3 == 0:
                await self._safe_evaluate(page, SCROLL_JS, "top")
            elif attempt % 3 == 1:
                await self._safe_evaluate(page, SCROLL_JS, "bottom")

            signal = await self._safe_evaluate(page, DETECT_BANNER_JS, payload)
            if signal:
                return signal
            if attempt + 1 < self.poll_attempts:
                await page.wait_for_timeout(self.poll_interval_ms)
        return None

    async def _click_accept(self, page: Any, phrases, *, exact_only: bool = False) -> Optional[str]:
        return await self._safe_evaluate(
            page,
            CLICK_ACCEPT_JS,
            {
                "selectors": list(self.profile.consent_clickable_selectors),
                "phrases": list(phrases),
                "exactOnly": exact_only,
            },
        )

    async def _confirm_second_step(self, page: Any, job_id: str) -> None:
        phrases = list(self.profile.consent_second_step_phrases)
        if not await self._safe_evaluate(page, SECOND_STEP_JS, phrases):
            return
        clicked = await self._click_accept(page, phrases, exact_only=True)
        logger.debug("Second consent step for job %s: %s", job_id, clicked or "no control found")

    async def _safe_evaluate(self, page: Any, script: str, arg: Any = None) -> Any:
        try:
            return await page.evaluate(script, arg)
        except Exception as exc:
            logger.debug("Consent script failed: %s", exc)
            return None
