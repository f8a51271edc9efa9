"""
Contact Enrichment Service - turns job records into enriched leads.

For each job: reuse contact data already on the record, otherwise visit the
job page and apply the fallback policy (real contact > external link > none).
Results never carry synthesized values.
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from contact_scraper.models import (
    Contact,
    ContactConfidence,
    ContactSource,
    ContactType,
    EnrichmentResult,
    EnrichmentStatus,
    JobRecord,
    ResultConfidence,
)
from contact_scraper.run_metrics import RunMetrics
from contact_scraper.scraper import JobPageScraper, ScrapeReport

logger = logging.getLogger(__name__)

PERSONAL_EMAIL_DOMAINS = ("gmail.com", "yahoo.com", "hotmail.com", "outlook.com")
_EMAIL_FORMAT_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class EmailValidation:
    email: str
    is_valid: bool = False
    format: bool = False
    domain: bool = False
    business_domain: bool = False
    score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_email(email: Optional[str]) -> EmailValidation:
    """Format + domain check; business domains score higher than personal mailboxes."""
    value = (email or "").strip()
    validation = EmailValidation(email=value)
    validation.format = bool(_EMAIL_FORMAT_RE.match(value))
    if not validation.format:
        return validation

    domain = value.rsplit("@", 1)[1].lower()
    validation.domain = "." in domain
    if validation.domain:
        validation.business_domain = domain not in PERSONAL_EMAIL_DOMAINS
        validation.score = 80 if validation.business_domain else 40

    validation.is_valid = validation.format and validation.domain
    return validation


def _pick_best(contacts: List[Contact], contact_type: ContactType) -> Optional[Contact]:
    best: Optional[Contact] = None
    for contact in contacts:
        if contact.type != contact_type:
            continue
        if best is None or contact.confidence.rank > best.confidence.rank:
            best = contact
    return best


def build_result(job: JobRecord, report: ScrapeReport, started_at: datetime) -> EnrichmentResult:
    """Apply the fallback policy to one page visit."""
    challenge_outcome = report.challenge.outcome.value if report.challenge else None
    challenge_failed = bool(report.challenge and report.challenge.failed)
    common = dict(
        job=job,
        status=EnrichmentStatus.COMPLETED,
        challenge_outcome=challenge_outcome,
        started_at=started_at,
        completed_at=datetime.now(),
    )

    real = [c for c in report.contacts if c.type in (ContactType.EMAIL, ContactType.PHONE)]
    if real:
        email = _pick_best(real, ContactType.EMAIL)
        phone = _pick_best(real, ContactType.PHONE)
        best = email or phone
        if email and phone and phone.confidence.rank > email.confidence.rank:
            best = phone
        return EnrichmentResult(
            contacts=real,
            best_contact=best,
            confidence=ResultConfidence.HIGH if challenge_failed else ResultConfidence.VERY_HIGH,
            contact_email=email.value if email else None,
            contact_phone=phone.value if phone else None,
            **common,
        )

    link = report.external_link
    source = ContactSource.EXTERNAL_LINK
    if not link and job.external_url:
        link, source = job.external_url, ContactSource.JOB_RECORD_URL
    if link:
        contact = Contact(
            type=ContactType.EXTERNAL_LINK,
            value=link,
            confidence=ContactConfidence.MEDIUM,
            source=source,
        )
        return EnrichmentResult(
            contacts=[contact],
            best_contact=contact,
            confidence=ResultConfidence.MEDIUM,
            external_link=link,
            **common,
        )

    return EnrichmentResult(confidence=ResultConfidence.NONE, **common)


class ContactEnrichmentService:
    """Orchestrates enrichment for single jobs and batches"""

    def __init__(
        self,
        config,
        scraper: JobPageScraper,
        *,
        metrics: Optional[RunMetrics] = None,
        sink: Optional[Any] = None,
    ):
        self.config = config
        self.scraper = scraper
        self.metrics = metrics or RunMetrics()
        self.sink = sink

    async def enrich(self, job: JobRecord) -> EnrichmentResult:
        """Enrich one job. Never raises; failures come back as status=failed."""
        started_at = datetime.now()
        self.metrics.inc("jobs_total")

        if job.has_existing_contact():
            result = self._from_existing(job, started_at)
            self.metrics.inc("jobs_existing_contact")
        else:
            try:
                with self.metrics.timed("page_visit_seconds"):
                    report = await self.scraper.scrape(job.id)
                result = build_result(job, report, started_at)
                self.metrics.inc("jobs_scraped")
            except Exception as exc:
                logger.error("Enrichment failed for job %s: %s", job.id, exc)
                result = self._failed(job, exc, started_at)

        self.metrics.record_result(result)
        self._forward(result)
        return result

    def _from_existing(self, job: JobRecord, started_at: datetime) -> EnrichmentResult:
        contacts: List[Contact] = []
        if (job.contact_email or "").strip():
            contacts.append(Contact(
                type=ContactType.EMAIL,
                value=job.contact_email,
                confidence=ContactConfidence.HIGH,
                source=ContactSource.ORIGINAL_LISTING,
            ))
        if (job.contact_phone or "").strip():
            contacts.append(Contact(
                type=ContactType.PHONE,
                value=job.contact_phone,
                confidence=ContactConfidence.HIGH,
                source=ContactSource.ORIGINAL_LISTING,
            ))
        logger.info("Using existing contact data for job %s", job.id)
        return EnrichmentResult(
            job=job,
            status=EnrichmentStatus.COMPLETED,
            contacts=contacts,
            best_contact=contacts[0],
            confidence=ResultConfidence.HIGH,
            contact_email=job.contact_email if (job.contact_email or "").strip() else None,
            contact_phone=job.contact_phone if (job.contact_phone or "").strip() else None,
            started_at=started_at,
            completed_at=datetime.now(),
        )

    def _failed(self, job: JobRecord, error: BaseException, started_at: datetime) -> EnrichmentResult:
        return EnrichmentResult(
            job=job,
            status=EnrichmentStatus.FAILED,
            confidence=ResultConfidence.NONE,
            error=str(error) or type(error).__name__,
            started_at=started_at,
            completed_at=datetime.now(),
        )

    def _forward(self, result: EnrichmentResult) -> None:
        if self.sink is None:
            return
        try:
            self.sink.write(result)
        except Exception as exc:
            logger.warning("Result sink rejected job %s: %s", result.job.id, exc)

    async def enrich_many(
        self,
        jobs: Iterable[JobRecord],
        *,
        batch_size: Optional[int] = None,
        delay_between_batches: Optional[float] = None,
    ) -> List[EnrichmentResult]:
        """Enrich jobs in fixed-size concurrent batches; one failure never aborts the batch."""
        jobs = list(jobs)
        batch_size = batch_size or self.config.get_batch_size()
        if delay_between_batches is None:
            delay_between_batches = self.config.get_delay_between_batches(len(jobs))

        total_batches = (len(jobs) + batch_size - 1) // batch_size
        logger.info(
            "Starting batch enrichment: %s jobs, batch size %s, %.1fs between batches",
            len(jobs), batch_size, delay_between_batches,
        )

        results: List[EnrichmentResult] = []
        for start in range(0, len(jobs), batch_size):
            batch = jobs[start:start + batch_size]
            logger.info("Processing batch %s/%s (%s jobs)", start // batch_size + 1, total_batches, len(batch))

            outcomes = await asyncio.gather(*(self.enrich(job) for job in batch), return_exceptions=True)
            for job, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("Job enrichment failed in batch for %s: %s", job.id, outcome)
                    failed = self._failed(job, outcome, datetime.now())
                    self.metrics.record_result(failed)
                    results.append(failed)
                else:
                    results.append(outcome)

            if start + batch_size < len(jobs) and delay_between_batches > 0:
                await asyncio.sleep(delay_between_batches)

        stats = get_enrichment_stats(results)
        self.metrics.set_gauge("real_contact_rate", stats["real_contacts_rate"])
        logger.info(
            "Batch enrichment completed: %s/%s with real contacts (%s)",
            stats["real_contacts_found"], stats["total"], stats["real_contacts_rate"],
        )
        return results


def _rate(part: int, total: int) -> str:
    if total <= 0:
        return "0.0%"
    return f"{part / total * 100:.1f}%"


def get_enrichment_stats(results: List[EnrichmentResult]) -> Dict[str, Any]:
    total = len(results)
    completed = sum(1 for r in results if r.status == EnrichmentStatus.COMPLETED)
    failed = sum(1 for r in results if r.status == EnrichmentStatus.FAILED)
    with_real = sum(1 for r in results if r.has_real_contact)
    with_link = sum(1 for r in results if r.external_link)
    with_valid_email = sum(1 for r in results if r.contact_email and validate_email(r.contact_email).is_valid)
    by_confidence: Dict[str, int] = {c.value: 0 for c in ResultConfidence}
    for r in results:
        by_confidence[r.confidence.value] += 1

    return {
        "total": total,
        "completed": completed,
        "failed": failed,
        "completion_rate": _rate(completed, total),
        "real_contacts_found": with_real,
        "real_contacts_rate": _rate(with_real, total),
        "external_links_used": with_link,
        "valid_emails_found": with_valid_email,
        "valid_email_rate": _rate(with_valid_email, total),
        "by_confidence": by_confidence,
    }
