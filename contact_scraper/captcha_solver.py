"""
Image captcha solving through the 2captcha HTTP API.

TwoCaptchaSolver is the blocking HTTP adapter; ChallengeSolver is the async
wrapper the challenge flow talks to.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

logger = logging.getLogger(__name__)


class CaptchaSolveError(RuntimeError):
    pass


class CaptchaTimeoutError(CaptchaSolveError):
    """The service did not return an answer within the timeout."""
    pass


class CaptchaRejectedError(CaptchaSolveError):
    """The service reported the image unsolvable or returned an empty answer."""
    pass


# res.php / in.php error codes that mean "this image cannot be solved"
_REJECTION_CODES = {
    "ERROR_CAPTCHA_UNSOLVABLE",
    "ERROR_BAD_DUPLICATES",
    "ERROR_ZERO_CAPTCHA_FILESIZE",
    "ERROR_TOO_BIG_CAPTCHA_FILESIZE",
    "ERROR_IMAGE_TYPE_NOT_SUPPORTED",
    "ERROR_WRONG_FILE_EXTENSION",
}


@dataclass(frozen=True)
class ImageChallengeRequest:
    image_bytes: bytes
    min_length: int = 5
    max_length: int = 7
    case_sensitive: bool = True
    language: str = "de"


@dataclass(frozen=True)
class SolveResponse:
    text: str
    captcha_id: Optional[str] = None


class TwoCaptchaSolver:
    """
    Minimal 2captcha wrapper for distorted-text image captchas.

    Notes:
      - Never logs API keys or answers.
      - Blocking; run it off the event loop (see ChallengeSolver).
    """

    provider = "2captcha"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://2captcha.com",
        *,
        session: Optional[requests.Session] = None,
        request_timeout: int = 30,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        api_key = (api_key or "").strip()
        if not api_key:
            raise ValueError("2captcha api_key is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._request_timeout = request_timeout
        self._sleep = sleep
        self._clock = clock

    def solve_image(
        self,
        request: ImageChallengeRequest,
        *,
        timeout_seconds: int = 120,
        poll_interval_seconds: float = 5,
    ) -> SolveResponse:
        if not request.image_bytes:
            raise CaptchaRejectedError("captcha image is empty")

        captcha_id = self._submit_image(request)
        text = self._poll_until_solved(
            request_id=captcha_id,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        return SolveResponse(text=text, captcha_id=captcha_id)

    def report_bad(self, captcha_id: str) -> bool:
        """Tell 2captcha an answer was wrong so the solve is refunded."""
        if not captcha_id:
            return False
        params = {
            "key": self._api_key,
            "action": "reportbad",
            "id": captcha_id,
            "json": 1,
        }
        try:
            resp = self._get_json("/res.php", params)
        except CaptchaSolveError as e:
            logger.warning("2captcha reportbad failed: %s", e)
            return False
        return resp.get("status") == 1

    def get_balance(self) -> float:
        params = {"key": self._api_key, "action": "getbalance", "json": 1}
        resp = self._get_json("/res.php", params)
        if resp.get("status") != 1:
            raise CaptchaSolveError(f"2captcha balance error: {resp.get('request')}")
        try:
            return float(resp.get("request"))
        except (TypeError, ValueError) as exc:
            raise CaptchaSolveError("2captcha returned a non-numeric balance") from exc

    def test_connection(self) -> dict:
        """Account check: returns {'ok': bool, 'balance': float|None, 'error': str|None}."""
        try:
            balance = self.get_balance()
        except CaptchaSolveError as e:
            return {"ok": False, "balance": None, "error": str(e)}
        return {"ok": True, "balance": balance, "error": None}

    def _poll_until_solved(
        self,
        *,
        request_id: str,
        timeout_seconds: int,
        poll_interval_seconds: float,
    ) -> str:
        deadline = self._clock() + max(int(timeout_seconds), 1)
        poll_interval = max(float(poll_interval_seconds), 1.0)

        while self._clock() < deadline:
            self._sleep(poll_interval)
            answer = self._poll_result(request_id=request_id)
            if answer is not None:
                answer = answer.strip()
                if not answer:
                    raise CaptchaRejectedError("2captcha returned empty answer")
                return answer

        raise CaptchaTimeoutError("2captcha timed out waiting for solution")

    def _submit_image(self, request: ImageChallengeRequest) -> str:
        payload = {
            "key": self._api_key,
            "method": "base64",
            "body": base64.b64encode(request.image_bytes).decode("ascii"),
            "numeric": 0,
            "min_len": request.min_length,
            "max_len": request.max_length,
            "phrase": 0,
            "regsense": 1 if request.case_sensitive else 0,
            "calc": 0,
            "lang": request.language,
            "json": 1,
        }
        resp = self._post_json("/in.php", payload)
        if resp.get("status") != 1:
            code = (resp.get("request") or "").strip()
            if code in _REJECTION_CODES:
                raise CaptchaRejectedError(f"2captcha rejected image: {code}")
            raise CaptchaSolveError(f"2captcha submit error: {code}")
        request_id = str(resp.get("request") or "").strip()
        if not request_id:
            raise CaptchaSolveError("2captcha submit returned empty request id")
        return request_id

    def _poll_result(self, *, request_id: str) -> Optional[str]:
        params = {
            "key": self._api_key,
            "action": "get",
            "id": request_id,
            "json": 1,
        }
        resp = self._get_json("/res.php", params)
        status = resp.get("status")
        value = str(resp.get("request") or "").strip()
        if status == 1:
            return value
        if value == "CAPCHA_NOT_READY":
            return None
        if value in _REJECTION_CODES:
            raise CaptchaRejectedError(f"2captcha could not solve image: {value}")
        raise CaptchaSolveError(f"2captcha poll error: {value}")

    def _post_json(self, path: str, payload: dict) -> dict:
        url = f"{self._base_url}{path}"
        try:
            resp = self._session.post(url, data=payload, timeout=self._request_timeout)
        except requests.RequestException as exc:
            raise CaptchaSolveError(f"2captcha request error: {exc}") from exc
        return self._parse_json(resp)

    def _get_json(self, path: str, params: dict) -> dict:
        url = f"{self._base_url}{path}"
        try:
            resp = self._session.get(url, params=params, timeout=self._request_timeout)
        except requests.RequestException as exc:
            raise CaptchaSolveError(f"2captcha request error: {exc}") from exc
        return self._parse_json(resp)

    def _parse_json(self, resp: requests.Response) -> dict:
        if not resp.ok:
            raise CaptchaSolveError(f"2captcha HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise CaptchaSolveError("2captcha returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise CaptchaSolveError("2captcha returned unexpected response shape")
        return data


class ChallengeSolver:
    """
    Async facade over an image solver.

    Wraps TwoCaptchaSolver and provides:
    - available() - check if solver is configured
    - solve(request) - round-trip in a worker thread
    - report_bad(captcha_id) - best-effort refund request
    """

    def __init__(
        self,
        backend: Optional[Any] = None,
        *,
        timeout_seconds: int = 120,
        poll_interval_seconds: float = 5,
        report_bad_answers: bool = True,
    ):
        self._backend = backend
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._report_bad_answers = report_bad_answers

    @classmethod
    def from_config(cls, config: Any) -> "ChallengeSolver":
        backend = None
        if config.is_captcha_auto_solve_enabled():
            provider = config.get_captcha_provider().lower()
            api_key = config.get_captcha_api_key()
            if provider not in ("2captcha", "twocaptcha"):
                logger.warning("Unsupported captcha provider %r; auto-solve disabled", provider)
            elif not api_key:
                logger.warning(
                    "Captcha auto-solve enabled but %s is not set; challenges will fail",
                    config.get_captcha_api_key_env(),
                )
            else:
                backend = TwoCaptchaSolver(api_key=api_key)
                logger.info("ChallengeSolver initialized (provider=2captcha)")
        return cls(
            backend,
            timeout_seconds=config.get_captcha_solve_timeout_seconds(),
            poll_interval_seconds=config.get_captcha_poll_interval_seconds(),
            report_bad_answers=config.should_report_bad_answers(),
        )

    def available(self) -> bool:
        return self._backend is not None

    async def solve(self, request: ImageChallengeRequest, *, timeout_seconds: Optional[float] = None) -> SolveResponse:
        """Solve one image. `timeout_seconds` can only shorten the configured timeout."""
        if not self.available():
            raise CaptchaSolveError("no captcha solver configured")
        timeout = self._timeout if timeout_seconds is None else min(self._timeout, timeout_seconds)
        return await asyncio.to_thread(
            self._backend.solve_image,
            request,
            timeout_seconds=timeout,
            poll_interval_seconds=self._poll_interval,
        )

    async def report_bad(self, captcha_id: Optional[str]) -> None:
        if not (self.available() and self._report_bad_answers and captcha_id):
            return
        reported = await asyncio.to_thread(self._backend.report_bad, captcha_id)
        logger.debug("Reported bad captcha answer %s (accepted=%s)", captcha_id, reported)
