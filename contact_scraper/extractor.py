"""
Contact Extractor - pulls emails, phones and external apply links out of a job page.

Two modes share the same filters:
  - DOM mode works on a DomSnapshot gathered from the live contact section
    (mailto:/tel: anchors plus visible text, shadow roots included)
  - HTML mode works on a raw HTML string (page.content() or a plain HTTP fetch)

Only collect_dom_snapshot touches the browser; everything else is pure.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote

from bs4 import BeautifulSoup

from contact_scraper.models import Contact, ContactConfidence, ContactSource, ContactType, dedupe_contacts
from contact_scraper.page_profile import PageProfile

logger = logging.getLogger(__name__)

_EMAIL = r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"

EMAIL_RE = re.compile(rf"({_EMAIL})")
EMAIL_FULL_RE = re.compile(rf"^{_EMAIL}$")
HTML_EMAIL_RE = re.compile(
    rf"(?:href=[\"']mailto:|data-email=[\"']|email[\"']\s*:\s*[\"'])({_EMAIL})",
    re.IGNORECASE,
)
LABELED_EMAIL_RE = re.compile(rf"E-?Mail\s*:\s*({_EMAIL})", re.IGNORECASE)

# Contact-section label; newlines end the candidate
LABELED_PHONE_DOM_RE = re.compile(r"Telefon\s*:\s*([+0-9 ()\-]{8,})", re.IGNORECASE)
LABELED_PHONE_HTML_RE = re.compile(r"\b(?:Telefon|Tel|Phone|Fon)\s*:\s*([+\d ()\-]{8,20})", re.IGNORECASE)
GERMAN_PHONE_RE = re.compile(r"\+49[ \-]?\d{2,4}[ \-]?\d{3,8}(?:[ \-]?\d{1,4})?")
NATIONAL_PHONE_RE = re.compile(r"(?<![\d+])0\d{2,5}[ /\-]?\d{3,8}(?:[ \-]?\d{1,4})?")

JOB_ID_RE = re.compile(r"^\d{10}-\d$")
GARBAGE_BLOCKS_RE = re.compile(r"^(?:\d{1,3}\s+)+\d{1,3}$")
INTERNATIONAL_PHONE_RE = re.compile(r"^\+49\d{7,15}$")
NATIONAL_DIGITS_RE = re.compile(r"^0\d{7,15}$")

_SPACE_CHARS_RE = re.compile(r"[\u00A0\u202F\u2007]")
_CONTROL_SPACE_RE = re.compile(r"[\t\r\f\v]+")
_ZERO_WIDTH_RE = re.compile(r"[\u200B\u200C\u200D\u2060\uFEFF]")
_HYPHEN_RE = re.compile(r"[\u2010\u2011]")

_STATIC_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".css", ".js")
_PLACEHOLDER_DOMAINS = ("example.com", "example.org", "example.de", "domain.com", "sentry.io", "wixpress.com")


def normalize_text(text: str) -> str:
    """Replace spacing look-alikes with plain spaces and drop zero-width characters."""
    if not text:
        return ""
    text = _SPACE_CHARS_RE.sub(" ", text)
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _HYPHEN_RE.sub("-", text)
    return _CONTROL_SPACE_RE.sub(" ", text)


def classify_phone(raw: str) -> Optional[ContactConfidence]:
    """Return the confidence for a phone candidate, or None when it is garbage."""
    candidate = " ".join((raw or "").split())
    if not candidate:
        return None
    if JOB_ID_RE.match(candidate):
        return None
    if GARBAGE_BLOCKS_RE.match(candidate):
        return None
    normalized = re.sub(r"[^\d+]", "", candidate)
    if INTERNATIONAL_PHONE_RE.match(normalized):
        return ContactConfidence.HIGH
    if NATIONAL_DIGITS_RE.match(normalized):
        return ContactConfidence.MEDIUM
    return None


def is_plausible_email(value: str) -> bool:
    email = (value or "").strip().lower()
    if not EMAIL_FULL_RE.match(email):
        return False
    if email.endswith(_STATIC_SUFFIXES):
        return False
    domain = email.rsplit("@", 1)[1]
    return not any(domain == d or domain.endswith("." + d) for d in _PLACEHOLDER_DOMAINS)


def _clean_phone(raw: str) -> str:
    return " ".join((raw or "").split()).strip(" -(")


def _email_contact(value: str, confidence: ContactConfidence, source: str) -> Optional[Contact]:
    email = (value or "").strip().rstrip(".").lower()
    if not is_plausible_email(email):
        return None
    return Contact(type=ContactType.EMAIL, value=email, confidence=confidence, source=source)


def _phone_contact(raw: str, source: str) -> Optional[Contact]:
    value = _clean_phone(raw)
    confidence = classify_phone(value)
    if confidence is None:
        return None
    return Contact(type=ContactType.PHONE, value=value, confidence=confidence, source=source)


def has_real_contact(contacts: Iterable[Contact]) -> bool:
    return any(c.type in (ContactType.EMAIL, ContactType.PHONE) for c in contacts)


# === DOM mode ===

@dataclass
class DomSnapshot:
    """What the contact section looked like when it was read."""

    mailto_links: List[str] = field(default_factory=list)
    tel_links: List[str] = field(default_factory=list)
    text_blocks: List[str] = field(default_factory=list)
    anchors: List[Tuple[str, str]] = field(default_factory=list)
    page_text: str = ""
    section_html: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DomSnapshot":
        data = data or {}
        anchors = [
            (str(a.get("text") or ""), str(a.get("href") or ""))
            for a in data.get("anchors") or []
            if isinstance(a, dict)
        ]
        return cls(
            mailto_links=[str(v) for v in data.get("mailto") or []],
            tel_links=[str(v) for v in data.get("tel") or []],
            text_blocks=[str(v) for v in data.get("texts") or []],
            anchors=anchors,
            page_text=str(data.get("pageText") or ""),
            section_html=str(data.get("sectionHtml") or ""),
        )


COLLECT_SNAPSHOT_JS = """
(rootSelectors) => {
  const out = {mailto: [], tel: [], texts: [], anchors: [], pageText: '', sectionHtml: ''};
  let root = null;
  for (const sel of rootSelectors) {
    root = document.querySelector(sel);
    if (root) break;
  }
  root = root || document.body;
  if (!root) return out;
  const seen = new Set();
  const visit = (scope) => {
    scope.querySelectorAll('a[href]').forEach((a) => {
      const href = (a.getAttribute('href') || '').trim();
      if (seen.has(href)) return;
      if (/^mailto:/i.test(href)) { seen.add(href); out.mailto.push(href); }
      else if (/^tel:/i.test(href)) { seen.add(href); out.tel.push(href); }
    });
    const text = scope.innerText !== undefined ? scope.innerText : scope.textContent;
    if (text) out.texts.push(text);
    scope.querySelectorAll('*').forEach((el) => { if (el.shadowRoot) visit(el.shadowRoot); });
  };
  visit(root);
  out.sectionHtml = root.innerHTML || '';
  out.anchors = Array.from(document.querySelectorAll('a[href]')).map((a) => ({
    text: (a.textContent || '').trim(),
    href: a.href || '',
  }));
  out.pageText = (document.body && document.body.innerText) || '';
  return out;
}
"""


async def collect_dom_snapshot(page: Any, profile: PageProfile) -> DomSnapshot:
    """Read anchors and visible text from the live contact section."""
    data = await page.evaluate(COLLECT_SNAPSHOT_JS, list(profile.contact_section_selectors))
    return DomSnapshot.from_dict(data)


def extract_from_dom(snapshot: DomSnapshot, source_url: str = "") -> List[Contact]:
    contacts: List[Contact] = []

    for href in snapshot.mailto_links:
        address = unquote(re.sub(r"^mailto:", "", href, flags=re.IGNORECASE)).split("?", 1)[0]
        contact = _email_contact(address, ContactConfidence.HIGH, ContactSource.MAILTO_LINK)
        if contact:
            contacts.append(contact)

    for href in snapshot.tel_links:
        number = unquote(re.sub(r"^tel:", "", href, flags=re.IGNORECASE))
        contact = _phone_contact(number, ContactSource.TEL_LINK)
        if contact:
            contacts.append(contact)

    for block in snapshot.text_blocks:
        text = normalize_text(block)
        for match in LABELED_PHONE_DOM_RE.finditer(text):
            contact = _phone_contact(match.group(1), ContactSource.LABELED_TEXT)
            if contact:
                contacts.append(contact)
        for match in LABELED_EMAIL_RE.finditer(text):
            contact = _email_contact(match.group(1), ContactConfidence.HIGH, ContactSource.LABELED_TEXT)
            if contact:
                contacts.append(contact)

    result = dedupe_contacts(contacts)
    logger.debug("DOM extraction from %s: %s contacts", source_url or "page", len(result))
    return result


# === HTML mode ===

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return normalize_text(soup.get_text("\n"))


def anchors_from_html(html: str) -> List[Tuple[str, str]]:
    soup = _soup(html)
    return [(a.get_text(" ", strip=True), (a.get("href") or "").strip()) for a in soup.find_all("a", href=True)]


def extract_from_html(html: str, source_url: str = "") -> List[Contact]:
    """Layered extraction over a raw HTML string."""
    raw = normalize_text(html or "")
    soup = _soup(raw)
    tel_links = [a.get("href", "") for a in soup.find_all("a", href=re.compile(r"^tel:", re.IGNORECASE))]
    text = _visible_text(soup)

    contacts: List[Contact] = []

    # structured links and attributes
    for match in HTML_EMAIL_RE.finditer(raw):
        contact = _email_contact(match.group(1), ContactConfidence.HIGH, ContactSource.HTML_ATTRIBUTE)
        if contact:
            contacts.append(contact)
    for href in tel_links:
        contact = _phone_contact(unquote(href[4:]), ContactSource.TEL_LINK)
        if contact:
            contacts.append(contact)

    # labeled lines
    for match in LABELED_EMAIL_RE.finditer(text):
        contact = _email_contact(match.group(1), ContactConfidence.HIGH, ContactSource.LABELED_TEXT)
        if contact:
            contacts.append(contact)
    for match in LABELED_PHONE_HTML_RE.finditer(text):
        contact = _phone_contact(match.group(1), ContactSource.LABELED_TEXT)
        if contact:
            contacts.append(contact)

    # generic patterns
    for match in EMAIL_RE.finditer(text):
        contact = _email_contact(match.group(1), ContactConfidence.MEDIUM, ContactSource.PAGE_TEXT)
        if contact:
            contacts.append(contact)
    for pattern in (GERMAN_PHONE_RE, NATIONAL_PHONE_RE):
        for match in pattern.finditer(text):
            contact = _phone_contact(match.group(0), ContactSource.PAGE_TEXT)
            if contact:
                contacts.append(contact)

    result = dedupe_contacts(contacts)
    logger.debug("HTML extraction from %s: %s contacts", source_url or "html", len(result))
    return result


# === External apply link ===

def find_external_link(anchors: Sequence[Tuple[str, str]], profile: Optional[PageProfile] = None) -> Optional[str]:
    """Return the first anchor href that points at an external application page."""
    profile = profile or PageProfile()
    for text, href in anchors:
        if not href or not href.lower().startswith(("http://", "https://")):
            continue
        text = normalize_text(text or "")
        if any(marker in text for marker in profile.external_link_texts):
            return href
        lowered = href.lower()
        if any(host in lowered for host in profile.external_link_hosts):
            return href
    return None


def has_external_site_indicators(text: str, profile: Optional[PageProfile] = None) -> bool:
    profile = profile or PageProfile()
    text = text or ""
    return any(indicator in text for indicator in profile.external_site_indicators)
