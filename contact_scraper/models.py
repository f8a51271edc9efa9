"""
Data models for the contact scraper
Defines structure for jobs, contacts and enrichment results
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from contact_scraper.page_profile import PageProfile

_DEFAULT_PROFILE = PageProfile()


class ContactType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    EXTERNAL_LINK = "external_link"


class ContactConfidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    ContactConfidence.LOW: 0,
    ContactConfidence.MEDIUM: 1,
    ContactConfidence.HIGH: 2,
}


class ResultConfidence(str, Enum):
    """How much a downstream consumer should trust the enriched contact."""

    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class EnrichmentStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class ContactSource:
    ORIGINAL_LISTING = "original_listing"
    MAILTO_LINK = "mailto_link"
    TEL_LINK = "tel_link"
    LABELED_TEXT = "labeled_text"
    PAGE_TEXT = "page_text"
    HTML_ATTRIBUTE = "html_attribute"
    EXTERNAL_LINK = "external_link"
    JOB_RECORD_URL = "job_record_url"


class JobRecord(BaseModel):
    """A job posting as delivered by the job-search API"""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(alias="refnr")
    title: str = Field(default="", alias="titel")
    company: str = Field(default="", alias="arbeitgeber")
    location: str = ""
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    external_url: Optional[str] = Field(default=None, alias="externeUrl")

    @property
    def detail_url(self) -> str:
        return _DEFAULT_PROFILE.detail_url(self.id)

    def has_existing_contact(self) -> bool:
        return bool((self.contact_email or "").strip() or (self.contact_phone or "").strip())

    def __str__(self) -> str:
        return f"{self.title} at {self.company} ({self.id})"


class Contact(BaseModel):
    """A single piece of contact data found for a job"""

    model_config = ConfigDict(frozen=True)

    type: ContactType
    value: str
    confidence: ContactConfidence
    source: str

    @property
    def dedupe_key(self) -> str:
        if self.type == ContactType.EMAIL:
            return f"email:{self.value.strip().lower()}"
        if self.type == ContactType.PHONE:
            digits = "".join(ch for ch in self.value if ch.isdigit())
            return f"phone:{digits}"
        return f"link:{self.value.strip()}"

    def __str__(self) -> str:
        return f"{self.type.value}={self.value} ({self.confidence.value})"


class EnrichmentResult(BaseModel):
    """Outcome of enriching one job; never mutated after it is returned"""

    model_config = ConfigDict(frozen=True)

    job: JobRecord
    status: EnrichmentStatus
    contacts: List[Contact] = Field(default_factory=list)
    best_contact: Optional[Contact] = None
    confidence: ResultConfidence = ResultConfidence.NONE
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    external_link: Optional[str] = None
    challenge_outcome: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def has_real_contact(self) -> bool:
        return bool(self.contact_email or self.contact_phone)

    def to_record(self) -> dict:
        """Flat JSON-ready record for sinks and summaries."""
        payload = self.model_dump(mode="json")
        payload["job_id"] = self.job.id
        return payload


@dataclass
class ChallengeAttempt:
    """One capture/submit round of the image challenge."""

    attempt_index: int
    image_bytes: bytes = b""
    submitted_text: Optional[str] = None
    accepted: bool = False
    note: str = ""


def dedupe_contacts(contacts: List[Contact]) -> List[Contact]:
    """Collapse contacts with the same normalized value, keeping the most confident one."""
    best: dict[str, Contact] = {}
    order: List[str] = []
    for contact in contacts:
        key = contact.dedupe_key
        current = best.get(key)
        if current is None:
            best[key] = contact
            order.append(key)
        elif contact.confidence.rank > current.confidence.rank:
            best[key] = contact
    return [best[k] for k in order]
