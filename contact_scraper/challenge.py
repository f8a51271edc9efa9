"""
Image challenge (CAPTCHA) resolution for the contact section.

The flow is an explicit state machine:

    DETECT -> CAPTURE -> SOLVE -> SANITIZE -> SUBMIT -> VERIFY
    VERIFY -> SOLVED | SUBMIT (case variant) | RELOAD -> CAPTURE ...

Every loop iteration first checks the time budget and the cycle limit, so a
solver that never produces an accepted answer still terminates in FAILED.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional
from urllib.parse import urljoin

from contact_scraper.captcha_solver import ChallengeSolver, CaptchaSolveError, ImageChallengeRequest
from contact_scraper.models import ChallengeAttempt
from contact_scraper.page_profile import PageProfile

logger = logging.getLogger(__name__)

SECTION_OPEN_WAIT_MS = 3000
SMALL_IMAGE_RECHECK_MS = 5000


class ChallengeState(str, Enum):
    DETECT = "detect"
    CAPTURE = "capture"
    SOLVE = "solve"
    SANITIZE = "sanitize"
    SUBMIT = "submit"
    VERIFY = "verify"
    RELOAD = "reload"
    NO_CHALLENGE = "no_challenge"
    SOLVED = "solved"
    FAILED = "failed"


S = ChallengeState

TRANSITIONS: Dict[ChallengeState, FrozenSet[ChallengeState]] = {
    S.DETECT: frozenset({S.CAPTURE, S.NO_CHALLENGE, S.FAILED}),
    S.CAPTURE: frozenset({S.SOLVE, S.RELOAD}),
    S.SOLVE: frozenset({S.SANITIZE, S.RELOAD, S.FAILED}),
    S.SANITIZE: frozenset({S.SUBMIT, S.RELOAD}),
    S.SUBMIT: frozenset({S.VERIFY, S.FAILED}),
    S.VERIFY: frozenset({S.SOLVED, S.SUBMIT, S.RELOAD}),
    S.RELOAD: frozenset({S.CAPTURE}),
}

TERMINAL_STATES = frozenset({S.NO_CHALLENGE, S.SOLVED, S.FAILED})


# element.evaluate passes the element as the first argument
IMAGE_CONTEXT_JS = """
(el, markers) => {
  let parent = el.parentElement;
  let depth = 0;
  while (parent && depth < 3) {
    const html = (parent.innerHTML || '').toLowerCase();
    if (markers.some((m) => html.includes(m))) return true;
    parent = parent.parentElement;
    depth++;
  }
  return false;
}
"""

OPEN_SECTION_JS = """
(selector) => {
  const btn = document.querySelector(selector);
  if (btn) { btn.click(); return true; }
  return false;
}
"""

RELOAD_IMAGE_JS = """
({pattern, selector}) => {
  const re = new RegExp(pattern, 'i');
  const buttons = Array.from(document.querySelectorAll('button, a'));
  const btn = buttons.find((b) => re.test(b.textContent || '')) || document.querySelector(selector);
  if (btn && typeof btn.click === 'function') { btn.click(); return true; }
  return false;
}
"""

CLICK_SUBMIT_BY_TEXT_JS = """
(marker) => {
  const candidates = Array.from(document.querySelectorAll('button, input[type="submit"], [role="button"]'));
  const match = candidates.find((el) => {
    const t = (el.textContent || '').trim().toLowerCase();
    const v = (el.getAttribute('value') || '').trim().toLowerCase();
    return t.includes(marker) || v.includes(marker);
  });
  if (match) { match.click(); return true; }
  return false;
}
"""

CHALLENGE_VISIBLE_JS = """
(selectors) => {
  const el = selectors.map((s) => document.querySelector(s)).find(Boolean);
  if (!el) return false;
  const rect = el.getBoundingClientRect();
  const style = window.getComputedStyle(el);
  return rect.width > 0 && rect.height > 0 && style.display !== 'none' && style.visibility !== 'hidden';
}
"""

CONTACT_MARKUP_JS = """
(selector) => {
  const root = document.querySelector(selector) || document.body;
  const t = ((root && root.innerText) || '').toLowerCase();
  return t.includes('telefon') || t.includes('e-mail') || t.includes('e‑mail')
    || !!document.querySelector('a[href^="mailto:"]') || !!document.querySelector('a[href^="tel:"]');
}
"""


@dataclass
class ChallengeResult:
    outcome: ChallengeState
    attempts: List[ChallengeAttempt] = field(default_factory=list)
    reason: str = ""
    elapsed_seconds: float = 0.0

    @property
    def solved(self) -> bool:
        return self.outcome == S.SOLVED

    @property
    def failed(self) -> bool:
        return self.outcome == S.FAILED


@dataclass
class _Run:
    page: Any
    job_id: str
    started: float
    image: Any = None
    image_selector: Optional[str] = None
    image_bytes: bytes = b""
    answer: Optional[str] = None
    captcha_id: Optional[str] = None
    pending: List[str] = field(default_factory=list)
    cycles: int = 0
    attempts: List[ChallengeAttempt] = field(default_factory=list)
    reason: str = ""

    def new_attempt(self, **kwargs) -> ChallengeAttempt:
        attempt = ChallengeAttempt(attempt_index=len(self.attempts) + 1, **kwargs)
        self.attempts.append(attempt)
        return attempt


class ChallengeFlow:
    """Detects and resolves the image challenge guarding the contact section"""

    def __init__(
        self,
        config,
        solver: ChallengeSolver,
        profile: Optional[PageProfile] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.solver = solver
        self.profile = profile or config.get_page_profile()
        self.clock = clock
        self.max_cycles = config.get_captcha_max_cycles()
        self.time_budget = config.get_captcha_time_budget_seconds()
        self.reload_wait_ms = int(config.get_captcha_reload_wait() * 1000)
        self.submit_wait_ms = int(config.get_captcha_submit_wait() * 1000)
        self.contact_wait_ms = int(config.get_captcha_contact_wait() * 1000)
        self.type_delay_ms = config.get_captcha_type_delay_ms()
        self._unsupported = re.compile(self.profile.captcha_unsupported_chars)
        self._handlers: Dict[ChallengeState, Callable[[_Run], Awaitable[ChallengeState]]] = {
            S.DETECT: self._detect,
            S.CAPTURE: self._capture,
            S.SOLVE: self._solve,
            S.SANITIZE: self._sanitize,
            S.SUBMIT: self._submit,
            S.VERIFY: self._verify,
            S.RELOAD: self._reload,
        }

    async def resolve(self, page: Any, job_id: str) -> ChallengeResult:
        run = _Run(page=page, job_id=job_id, started=self.clock())
        state = S.DETECT

        while state not in TERMINAL_STATES:
            guard = self._check_guards(run, state)
            if guard:
                run.reason = guard
                state = S.FAILED
                break

            try:
                next_state = await self._handlers[state](run)
            except Exception as exc:
                logger.warning("Challenge %s aborted in %s: %s", job_id, state.value, exc)
                run.reason = f"page_error:{state.value}"
                state = S.FAILED
                break
            if next_state not in TRANSITIONS[state]:
                raise RuntimeError(f"Illegal challenge transition {state.value} -> {next_state.value}")
            logger.debug("Challenge %s: %s -> %s", job_id, state.value, next_state.value)
            state = next_state

        elapsed = max(self.clock() - run.started, 0.0)
        result = ChallengeResult(outcome=state, attempts=run.attempts, reason=run.reason, elapsed_seconds=elapsed)
        if result.failed:
            logger.warning(
                "Challenge failed for job %s (%s) after %s attempts in %.1fs",
                job_id, run.reason, len(run.attempts), elapsed,
            )
        else:
            logger.info("Challenge outcome for job %s: %s", job_id, state.value)
        return result

    def _check_guards(self, run: _Run, state: ChallengeState) -> Optional[str]:
        if state == S.DETECT:
            return None
        if self.clock() - run.started > self.time_budget:
            return "time_budget_exceeded"
        if state == S.CAPTURE and run.cycles >= self.max_cycles:
            return "max_cycles_exceeded"
        return None

    # === States ===

    async def _detect(self, run: _Run) -> ChallengeState:
        await self._open_contact_section(run.page)

        found = await self._find_challenge_image(run.page)
        if found is None:
            content = ""
            try:
                content = (await run.page.content()).lower()
            except Exception as exc:
                logger.debug("Could not read page content: %s", exc)
            if any(copy in content for copy in self.profile.captcha_page_copy):
                run.reason = "image_not_found"
                return S.FAILED
            return S.NO_CHALLENGE

        run.image, run.image_selector = found
        if not await self._image_large_enough(run):
            await run.page.wait_for_timeout(SMALL_IMAGE_RECHECK_MS)
            if not await self._image_large_enough(run):
                run.reason = "image_too_small"
                return S.FAILED

        logger.info("Challenge image found for job %s (%s)", run.job_id, run.image_selector or "context-search")
        return S.CAPTURE

    async def _capture(self, run: _Run) -> ChallengeState:
        run.cycles += 1
        run.answer = None
        run.captcha_id = None
        run.pending = []

        if run.image_selector:
            try:
                refreshed = await run.page.query_selector(run.image_selector)
                if refreshed is not None:
                    run.image = refreshed
            except Exception as exc:
                logger.debug("Re-query of challenge image failed: %s", exc)

        image_bytes = await self._fetch_image_bytes(run)
        if not image_bytes:
            try:
                image_bytes = await run.image.screenshot()
            except Exception as exc:
                logger.debug("Challenge screenshot failed: %s", exc)
                image_bytes = b""

        if not image_bytes:
            run.new_attempt(note="empty_image")
            return S.RELOAD

        run.image_bytes = image_bytes
        logger.debug("Captured challenge image for job %s (cycle %s, %s bytes)", run.job_id, run.cycles, len(image_bytes))
        return S.SOLVE

    async def _solve(self, run: _Run) -> ChallengeState:
        if not self.solver.available():
            run.reason = "solver_unavailable"
            return S.FAILED

        request = ImageChallengeRequest(
            image_bytes=run.image_bytes,
            min_length=self.profile.captcha_min_length,
            max_length=self.profile.captcha_max_length,
            case_sensitive=self.profile.captcha_case_sensitive,
            language=self.profile.captcha_language,
        )
        try:
            response = await self.solver.solve(request, timeout_seconds=self._remaining(run))
        except CaptchaSolveError as exc:
            logger.warning("Challenge solve failed for job %s: %s", run.job_id, exc)
            run.new_attempt(image_bytes=run.image_bytes, note=f"solve_error:{type(exc).__name__}")
            return S.RELOAD

        run.answer = (response.text or "").strip()
        run.captcha_id = response.captcha_id
        return S.SANITIZE

    async def _sanitize(self, run: _Run) -> ChallengeState:
        answer = run.answer or ""
        if not answer or self._unsupported.search(answer):
            run.new_attempt(image_bytes=run.image_bytes, submitted_text=None, note="unsupported_answer")
            return S.RELOAD

        variants: List[str] = []
        for candidate in (answer, answer.lower(), answer.upper()):
            if candidate not in variants:
                variants.append(candidate)
        run.pending = variants
        return S.SUBMIT

    async def _submit(self, run: _Run) -> ChallengeState:
        text = run.pending.pop(0)
        page = run.page

        field_el = await page.query_selector(self.profile.captcha_input_selector)
        if field_el is None:
            run.reason = "input_not_found"
            return S.FAILED

        run.new_attempt(image_bytes=run.image_bytes, submitted_text=text)
        try:
            await field_el.fill("")
            await field_el.type(text, delay=self.type_delay_ms)
            button = await page.query_selector(self.profile.captcha_submit_selector)
            if button is not None:
                await button.click()
            elif not await self._safe_evaluate(page, CLICK_SUBMIT_BY_TEXT_JS, self.profile.captcha_submit_text):
                await field_el.press("Enter")
            await page.wait_for_timeout(self.submit_wait_ms)
        except Exception as exc:
            logger.warning("Challenge answer submit failed for job %s: %s", run.job_id, exc)
            run.attempts[-1].note = "submit_error"
            run.reason = "submit_error"
            return S.FAILED
        return S.VERIFY

    async def _verify(self, run: _Run) -> ChallengeState:
        page = run.page
        await self._safe_evaluate(page, OPEN_SECTION_JS, self.profile.contact_section_toggle)

        if not await self._challenge_still_visible(run):
            run.attempts[-1].accepted = True
            await self._wait_for_contacts(page)
            return S.SOLVED

        run.attempts[-1].note = "rejected"
        if run.pending:
            return S.SUBMIT

        await self.solver.report_bad(run.captcha_id)
        return S.RELOAD

    async def _reload(self, run: _Run) -> ChallengeState:
        clicked = await self._safe_evaluate(
            run.page,
            RELOAD_IMAGE_JS,
            {"pattern": self.profile.captcha_reload_pattern, "selector": self.profile.captcha_reload_selector},
        )
        logger.debug("Challenge image reload for job %s: %s", run.job_id, "clicked" if clicked else "no control")
        await run.page.wait_for_timeout(self.reload_wait_ms)
        return S.CAPTURE

    # === Helpers ===

    def _remaining(self, run: _Run) -> float:
        return max(self.time_budget - (self.clock() - run.started), 0.0)

    async def _challenge_still_visible(self, run: _Run) -> bool:
        """Check the image that DETECT found, not whatever the selector list matches."""
        if run.image_selector:
            try:
                return bool(await run.page.evaluate(CHALLENGE_VISIBLE_JS, [run.image_selector]))
            except Exception as exc:
                logger.debug("Visibility script failed, checking the element handle: %s", exc)

        try:
            if await run.image.is_visible():
                return True
        except Exception as exc:
            logger.debug("Challenge image handle unusable, rescanning: %s", exc)
        # a detached handle may mean the page rendered a fresh image
        return await self._find_challenge_image(run.page) is not None

    async def _open_contact_section(self, page: Any) -> None:
        for selector in self.profile.contact_section_selectors:
            try:
                section = await page.query_selector(selector)
                if section is None:
                    continue
                await section.click()
                await page.wait_for_timeout(SECTION_OPEN_WAIT_MS)
                return
            except Exception as exc:
                logger.debug("Opening contact section via %s failed: %s", selector, exc)

    async def _find_challenge_image(self, page: Any):
        for selector in self.profile.captcha_image_selectors:
            try:
                element = await page.query_selector(selector)
                if element is None:
                    continue
                box = await element.bounding_box()
                if box and box["width"] > 0 and box["height"] > 0:
                    return element, selector
            except Exception as exc:
                logger.debug("Challenge selector %s failed: %s", selector, exc)

        try:
            images = await page.query_selector_all("img")
        except Exception as exc:
            logger.debug("Image scan failed: %s", exc)
            return None

        markers = list(self.profile.captcha_context_markers)
        for image in images:
            try:
                if not await image.evaluate(IMAGE_CONTEXT_JS, markers):
                    continue
                box = await image.bounding_box()
                if box and box["width"] >= self.profile.captcha_min_width and box["height"] >= self.profile.captcha_min_height:
                    return image, None
            except Exception as exc:
                logger.debug("Image context check failed: %s", exc)
        return None

    async def _image_large_enough(self, run: _Run) -> bool:
        try:
            box = await run.image.bounding_box()
        except Exception as exc:
            logger.debug("Challenge image measure failed: %s", exc)
            return False
        return bool(
            box
            and box["width"] >= self.profile.captcha_min_width
            and box["height"] >= self.profile.captcha_min_height
        )

    async def _fetch_image_bytes(self, run: _Run) -> bytes:
        """Download the image by its src through the page's request context (shares cookies)."""
        try:
            src = await run.image.get_attribute("src")
        except Exception as exc:
            logger.debug("Challenge src read failed: %s", exc)
            return b""
        if not src:
            return b""

        if src.startswith("data:image") and ";base64," in src:
            try:
                return base64.b64decode(src.split(";base64,", 1)[1])
            except ValueError:
                return b""

        url = urljoin(run.page.url, src)
        if not url.startswith("http"):
            return b""
        try:
            response = await run.page.request.get(url)
            if not response.ok:
                logger.debug("Challenge image download returned HTTP %s", response.status)
                return b""
            return await response.body()
        except Exception as exc:
            logger.debug("Challenge image download failed, using screenshot: %s", exc)
            return b""

    async def _wait_for_contacts(self, page: Any) -> None:
        try:
            await page.wait_for_function(
                CONTACT_MARKUP_JS,
                arg=self.profile.contact_section_selectors[0],
                timeout=self.contact_wait_ms,
            )
        except Exception as exc:
            logger.debug("Contact markup did not appear after challenge: %s", exc)

    async def _safe_evaluate(self, page: Any, script: str, arg: Any = None) -> Any:
        try:
            return await page.evaluate(script, arg)
        except Exception as exc:
            logger.debug("Challenge script failed: %s", exc)
            return None
