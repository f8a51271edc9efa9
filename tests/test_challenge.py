import pytest

from contact_scraper.captcha_solver import CaptchaRejectedError, ChallengeSolver
from contact_scraper.challenge import (
    CHALLENGE_VISIBLE_JS,
    CLICK_SUBMIT_BY_TEXT_JS,
    CONTACT_MARKUP_JS,
    RELOAD_IMAGE_JS,
    SMALL_IMAGE_RECHECK_MS,
    ChallengeFlow,
    ChallengeState,
)
from contact_scraper.page_profile import PageProfile

from fakes import FakeElement, FakePage, FakeRequestContext, FakeResponse, FakeSolverBackend

PROFILE = PageProfile()
IMAGE_SELECTOR = PROFILE.captcha_image_selectors[0]
PNG_DATA_URL = "data:image/png;base64,aGVsbG8="


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def challenge_page(expected="Xk7pQ", *, image=None, with_submit=True, with_input=True):
    """A page whose challenge disappears once `expected` is submitted."""
    page = FakePage()
    page.challenge_visible = True
    field = FakeElement()

    def on_submit(_button):
        if field.value == expected:
            page.challenge_visible = False

    page.selectors[IMAGE_SELECTOR] = image or FakeElement(box={"width": 200, "height": 60}, src=PNG_DATA_URL)
    if with_input:
        page.selectors[PROFILE.captcha_input_selector] = field
    if with_submit:
        page.selectors[PROFILE.captcha_submit_selector] = FakeElement(on_click=on_submit)
    # same lookup as the script: only the passed selectors count
    page.scripts[CHALLENGE_VISIBLE_JS] = lambda selectors: page.challenge_visible and any(
        page.selectors.get(s) for s in selectors
    )
    return page, field


def make_flow(config, answers, **kwargs):
    backend = FakeSolverBackend(answers, on_solve=kwargs.pop("on_solve", None))
    solver = ChallengeSolver(backend, report_bad_answers=True)
    return ChallengeFlow(config, solver, PROFILE, **kwargs), backend


@pytest.mark.asyncio
async def test_page_without_challenge(config):
    flow, backend = make_flow(config, ["unused"])
    page = FakePage(html="<html><body>Telefon: 030 1234567</body></html>")

    result = await flow.resolve(page, "job-1")

    assert result.outcome == ChallengeState.NO_CHALLENGE
    assert result.attempts == []
    assert backend.requests == []


@pytest.mark.asyncio
async def test_challenge_copy_without_image_fails(config):
    flow, _ = make_flow(config, ["unused"])
    page = FakePage(html="<p>Bitte lösen Sie die Sicherheitsabfrage</p>")

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "image_not_found"


@pytest.mark.asyncio
async def test_solved_on_first_answer(config):
    flow, backend = make_flow(config, ["Xk7pQ"])
    page, field = challenge_page("Xk7pQ")

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert len(result.attempts) == 1
    assert result.attempts[0].accepted
    assert result.attempts[0].submitted_text == "Xk7pQ"
    assert backend.requests[0].image_bytes == b"hello"
    assert backend.requests[0].min_length == 5
    assert backend.requests[0].max_length == 7
    assert backend.requests[0].case_sensitive
    assert page.waited_functions[0][0] == CONTACT_MARKUP_JS
    assert backend.reported == []


@pytest.mark.asyncio
async def test_case_variant_is_tried_before_reloading(config):
    flow, backend = make_flow(config, ["xk7pq"])
    page, _ = challenge_page("XK7PQ")

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert [a.submitted_text for a in result.attempts] == ["xk7pq", "XK7PQ"]
    assert result.attempts[0].note == "rejected"
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_always_wrong_solver_terminates_after_max_cycles(config):
    flow, backend = make_flow(config, ["wrong1"])
    page, _ = challenge_page("Xk7pQ")

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "max_cycles_exceeded"
    assert len(backend.requests) == 3
    # two case variants per image
    assert len(result.attempts) == 6
    assert not any(a.accepted for a in result.attempts)
    assert backend.reported == ["cap-1", "cap-2", "cap-3"]
    assert len(page.calls_to(RELOAD_IMAGE_JS)) == 3


@pytest.mark.asyncio
async def test_time_budget_stops_the_loop(config):
    clock = FakeClock()

    def slow_solve():
        clock.now += 100

    flow, backend = make_flow(config, ["Xk7pQ"], on_solve=slow_solve, clock=clock)
    page, _ = challenge_page("Xk7pQ")

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "time_budget_exceeded"
    assert len(backend.requests) == 1
    assert result.attempts == []
    assert result.elapsed_seconds == 100


@pytest.mark.asyncio
async def test_answer_with_umlaut_triggers_reload(config):
    flow, backend = make_flow(config, ["Grüße", "Xk7pQ"])
    page, _ = challenge_page("Xk7pQ")

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert result.attempts[0].note == "unsupported_answer"
    assert result.attempts[0].submitted_text is None
    assert result.attempts[-1].accepted
    assert len(page.calls_to(RELOAD_IMAGE_JS)) == 1
    assert len(backend.requests) == 2


@pytest.mark.asyncio
async def test_solver_error_reloads_image(config):
    flow, backend = make_flow(config, [CaptchaRejectedError("ERROR_CAPTCHA_UNSOLVABLE"), "Xk7pQ"])
    page, _ = challenge_page("Xk7pQ")

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert result.attempts[0].note == "solve_error:CaptchaRejectedError"
    assert len(backend.requests) == 2


@pytest.mark.asyncio
async def test_missing_solver_fails_fast(config):
    flow = ChallengeFlow(config, ChallengeSolver(None), PROFILE)
    page, _ = challenge_page()

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "solver_unavailable"


@pytest.mark.asyncio
async def test_tiny_image_is_rechecked_then_fails(config):
    flow, backend = make_flow(config, ["Xk7pQ"])
    page, _ = challenge_page(image=FakeElement(box={"width": 10, "height": 5}, src=PNG_DATA_URL))

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "image_too_small"
    assert SMALL_IMAGE_RECHECK_MS in page.waits
    assert backend.requests == []


@pytest.mark.asyncio
async def test_empty_image_is_never_sent_to_the_solver(config):
    flow, backend = make_flow(config, ["Xk7pQ"])
    page, _ = challenge_page(image=FakeElement(box={"width": 200, "height": 60}))

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "max_cycles_exceeded"
    assert [a.note for a in result.attempts] == ["empty_image"] * 3
    assert backend.requests == []


@pytest.mark.asyncio
async def test_image_is_downloaded_through_the_page(config):
    image = FakeElement(box={"width": 200, "height": 60}, src="/captcha/image.png")
    page, _ = challenge_page("Xk7pQ", image=image)
    page.request = FakeRequestContext({
        "https://www.arbeitsagentur.de/captcha/image.png": FakeResponse(b"png-bytes"),
    })
    flow, backend = make_flow(config, ["Xk7pQ"])

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert backend.requests[0].image_bytes == b"png-bytes"


@pytest.mark.asyncio
async def test_screenshot_used_when_download_fails(config):
    image = FakeElement(box={"width": 200, "height": 60}, src="/captcha/image.png", screenshot_bytes=b"shot")
    page, _ = challenge_page("Xk7pQ", image=image)
    flow, backend = make_flow(config, ["Xk7pQ"])

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert backend.requests[0].image_bytes == b"shot"


@pytest.mark.asyncio
async def test_image_found_by_surrounding_markup(config):
    page, _ = challenge_page("Xk7pQ")
    del page.selectors[IMAGE_SELECTOR]
    decoy = FakeElement(box={"width": 300, "height": 100}, context_match=False)
    captcha = FakeElement(
        box={"width": 150, "height": 50},
        context_match=True,
        src=PNG_DATA_URL,
        visible=lambda: page.challenge_visible,
    )
    page.images = [decoy, captcha]
    flow, backend = make_flow(config, ["Xk7pQ"])

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert backend.requests[0].image_bytes == b"hello"


@pytest.mark.asyncio
async def test_markup_found_image_is_not_solved_by_a_wrong_answer(config):
    page, _ = challenge_page("Xk7pQ")
    del page.selectors[IMAGE_SELECTOR]
    page.images = [FakeElement(box={"width": 150, "height": 50}, context_match=True, src=PNG_DATA_URL)]
    flow, backend = make_flow(config, ["WRONG1"])

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "max_cycles_exceeded"
    assert not any(a.accepted for a in result.attempts)
    assert len(backend.requests) == 3


@pytest.mark.asyncio
async def test_replaced_image_counts_as_still_visible(config):
    page, _ = challenge_page("Xk7pQ")
    del page.selectors[IMAGE_SELECTOR]
    first = FakeElement(box={"width": 150, "height": 50}, context_match=True, src=PNG_DATA_URL)
    fresh = FakeElement(box={"width": 150, "height": 50}, context_match=True, src=PNG_DATA_URL)
    page.images = [first]

    def image_replaced():
        # the page swaps in a new image; the old handle goes stale
        first.visible = False
        page.images = [fresh]

    flow, _ = make_flow(config, ["WRONG1"], on_solve=image_replaced)

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert not any(a.accepted for a in result.attempts)


@pytest.mark.asyncio
async def test_enter_pressed_when_no_submit_control(config):
    page, field = challenge_page("Xk7pQ", with_submit=False)
    page.scripts[CLICK_SUBMIT_BY_TEXT_JS] = False
    page.challenge_visible = False
    flow, _ = make_flow(config, ["Xk7pQ"])

    result = await flow.resolve(page, "job-1")

    assert result.solved
    assert field.pressed == ["Enter"]


@pytest.mark.asyncio
async def test_missing_input_field_fails(config):
    page, _ = challenge_page("Xk7pQ", with_input=False)
    flow, _ = make_flow(config, ["Xk7pQ"])

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "input_not_found"


@pytest.mark.asyncio
async def test_solver_timeout_is_capped_by_remaining_budget(config):
    clock = FakeClock()

    def slow_solve():
        clock.now += 25

    flow, backend = make_flow(config, ["wrong1"], on_solve=slow_solve, clock=clock)
    page, _ = challenge_page("Xk7pQ")

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "time_budget_exceeded"
    assert backend.timeouts == [60, 35, 10]


@pytest.mark.asyncio
async def test_submit_click_timeout_fails_the_challenge(config):
    def stuck(_button):
        raise TimeoutError("Timeout 60000ms exceeded waiting for element to be clickable")

    page, _ = challenge_page("Xk7pQ")
    page.selectors[PROFILE.captcha_submit_selector] = FakeElement(on_click=stuck)
    flow, _ = make_flow(config, ["Xk7pQ"])

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "submit_error"
    assert result.attempts[0].note == "submit_error"


@pytest.mark.asyncio
async def test_page_error_outside_submit_fails_the_challenge(config):
    page, _ = challenge_page("Xk7pQ")
    page.fail_waits = True
    flow, _ = make_flow(config, ["Grüße"])

    result = await flow.resolve(page, "job-1")

    assert result.failed
    assert result.reason == "page_error:reload"
