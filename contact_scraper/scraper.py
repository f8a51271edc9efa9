"""
Job Page Scraper - one visit to a job detail page.

Composes the browser session, consent handler, challenge flow and extractor in
strict order for a single job. Also hosts the plain company website scrape.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, List, Optional

import requests

from contact_scraper.browser_session import BrowserSession
from contact_scraper.challenge import ChallengeFlow, ChallengeResult
from contact_scraper.consent import ConsentHandler, ConsentOutcome
from contact_scraper.errors import PageLoadError
from contact_scraper.extractor import (
    DomSnapshot,
    anchors_from_html,
    collect_dom_snapshot,
    extract_from_dom,
    extract_from_html,
    find_external_link,
    has_external_site_indicators,
    has_real_contact,
)
from contact_scraper.models import Contact, dedupe_contacts

logger = logging.getLogger(__name__)


@dataclass
class ScrapeReport:
    """What one page visit produced, before the fallback policy is applied."""

    job_id: str
    url: str
    contacts: List[Contact] = field(default_factory=list)
    external_link: Optional[str] = None
    external_site: bool = False
    consent_outcome: Optional[ConsentOutcome] = None
    challenge: Optional[ChallengeResult] = None

    @property
    def has_real_contact(self) -> bool:
        return has_real_contact(self.contacts)


class JobPageScraper:
    """Drives one job detail page from navigation to extracted contacts"""

    def __init__(
        self,
        config,
        session: BrowserSession,
        consent: ConsentHandler,
        challenge: ChallengeFlow,
    ):
        self.config = config
        self.session = session
        self.consent = consent
        self.challenge = challenge
        self.profile = session.profile

    async def scrape(self, job_id: str) -> ScrapeReport:
        url = self.profile.detail_url(job_id)
        logger.info("Scraping job page %s", url)

        async with self.session.job_page(job_id) as page:
            await self._navigate(page, url)
            await page.wait_for_timeout(int(self.config.get_settle_delay() * 1000))

            consent_outcome = await self.consent.resolve(page, job_id)
            await self._random_delay()

            challenge = await self.challenge.resolve(page, job_id)

            snapshot = await self._snapshot(page, job_id)
            source_url = page.url or url
            contacts = extract_from_dom(snapshot, source_url)
            if snapshot.section_html:
                contacts = dedupe_contacts(contacts + extract_from_html(snapshot.section_html, source_url))

            external_site = has_external_site_indicators(snapshot.page_text, self.profile)
            external_link = None
            if external_site or not has_real_contact(contacts):
                anchors = snapshot.anchors or anchors_from_html(snapshot.section_html)
                external_link = find_external_link(anchors, self.profile)

        report = ScrapeReport(
            job_id=job_id,
            url=url,
            contacts=contacts,
            external_link=external_link,
            external_site=external_site,
            consent_outcome=consent_outcome,
            challenge=challenge,
        )
        logger.info(
            "Job %s scraped: %s contacts, external_link=%s, challenge=%s",
            job_id, len(contacts), bool(external_link), challenge.outcome.value,
        )
        return report

    async def _navigate(self, page: Any, url: str) -> None:
        try:
            await page.goto(url, wait_until=self.config.get_wait_until(), timeout=self.config.get_goto_timeout())
        except Exception as exc:
            raise PageLoadError(f"Navigation to {url} failed: {exc}") from exc

    async def _snapshot(self, page: Any, job_id: str) -> DomSnapshot:
        try:
            return await collect_dom_snapshot(page, self.profile)
        except Exception as exc:
            logger.warning("Contact section read failed for job %s: %s", job_id, exc)
            return DomSnapshot()

    async def _random_delay(self) -> None:
        """Add human-like delay between actions"""
        min_delay = self.config.get_min_delay()
        max_delay = self.config.get_max_delay()
        if max_delay <= 0:
            return
        await asyncio.sleep(random.uniform(min_delay, max_delay))


def _fetch_html(url: str, user_agent: str, timeout: float) -> str:
    response = requests.get(url, headers={"User-Agent": user_agent}, timeout=timeout)
    response.raise_for_status()
    return response.text


async def scrape_website_contacts(
    url: str,
    config,
    session: Optional[BrowserSession] = None,
) -> List[Contact]:
    """Scrape a company website: plain HTTP first, then the browser when a session is given."""
    try:
        html = await asyncio.to_thread(_fetch_html, url, config.get_user_agent(), config.get_website_timeout())
        contacts = extract_from_html(html, url)
        logger.info("Website scraped via HTTP: %s (%s contacts)", url, len(contacts))
        return contacts
    except requests.RequestException as exc:
        logger.warning("HTTP scrape of %s failed: %s", url, exc)

    if session is None:
        return []

    try:
        async with session.job_page(url) as page:
            await page.goto(url, wait_until="domcontentloaded", timeout=config.get_goto_timeout())
            html = await page.content()
    except Exception as exc:
        logger.error("Browser scrape of %s failed: %s", url, exc)
        return []

    contacts = extract_from_html(html, url)
    logger.info("Website scraped via browser: %s (%s contacts)", url, len(contacts))
    return contacts
