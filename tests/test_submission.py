import pytest

from config import CHATGPT_SEND_SELECTORS
from errors import PromptInputUnavailableError, SubmissionMismatchError, SubmissionNotDetectedError
from fakes import FakeClock, FakePage, assistant, roleless, user
from submission import (
    CONFIRM_STRATEGIES,
    click_send,
    confirm,
    submit_and_confirm,
    submit_prompt,
    wait_for_prompt_input,
)
from turns import build_match_candidates, user_message_snapshot


def test_confirm_strategies_are_ordered():
    assert [name for name, _ in CONFIRM_STRATEGIES] == ["expected-turn", "rescan", "signals", "retry-click"]


@pytest.mark.asyncio
async def test_fast_fill_then_send():
    page = FakePage()
    echo = await submit_prompt(page, "Hello   world")
    assert echo == "Hello world"
    assert page.sends == 1
    assert page.typed == []


@pytest.mark.asyncio
async def test_literal_fill_used_when_fast_readback_mismatches():
    page = FakePage()
    page.fill_transform = lambda text: text[:3]
    await submit_prompt(page, "line one\nline two")
    assert page.typed == ["line one", "line two"]
    assert ("Enter", True) in page.keys
    assert page.sends == 1
    assert page.turns[-1]["text"] == "line one\nline two"


@pytest.mark.asyncio
async def test_mismatch_after_both_fills_is_fatal():
    page = FakePage()
    page.readback_override = "something else"
    with pytest.raises(SubmissionMismatchError):
        await submit_prompt(page, "the real prompt")
    assert page.sends == 0


@pytest.mark.asyncio
async def test_enter_is_pressed_when_send_control_disabled():
    page = FakePage()
    page.send_enabled = False
    await submit_prompt(page, "hi")
    assert page.keys[-1] == ("Enter", False)


@pytest.mark.asyncio
async def test_submit_and_confirm_on_expected_turn():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "earlier"), assistant(2, "ok")], clock=clock)
    turn = await submit_and_confirm(page, "next question", clock=clock, sleep=clock.sleep)
    assert turn == 3


@pytest.mark.asyncio
async def test_rescan_finds_turn_beyond_expected():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "earlier"), assistant(2, "ok")], clock=clock)

    def land_late(p):
        p.turns.append(roleless(3))
        p.turns.append(user(4, p.input_value))
        p.input_value = ""

    page.on_send = land_late
    candidates = build_match_candidates("late prompt")
    before = await user_message_snapshot(page, candidates)
    await submit_prompt(page, "late prompt")
    result = await confirm(page, candidates, 3, before, timeout=2, clock=clock, sleep=clock.sleep)
    assert result == {"confirmed": True, "turn": 4, "strategy": "rescan"}


@pytest.mark.asyncio
async def test_signals_infer_submission_when_echo_differs():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "earlier"), assistant(2, "ok")], clock=clock)
    page.echo_transform = lambda text: "rendered differently"
    candidates = build_match_candidates("my prompt")
    before = await user_message_snapshot(page, candidates)
    await submit_prompt(page, "my prompt")
    result = await confirm(page, candidates, 3, before, timeout=2, clock=clock, sleep=clock.sleep)
    assert result == {"confirmed": True, "turn": 3, "strategy": "signals"}


@pytest.mark.asyncio
async def test_send_retried_once_when_nothing_happened():
    clock = FakeClock()
    page = FakePage(clock=clock)
    page.drop_sends = 1
    candidates = build_match_candidates("try again")
    before = await user_message_snapshot(page, candidates)
    await submit_prompt(page, "try again")
    result = await confirm(page, candidates, 1, before, timeout=2, clock=clock, sleep=clock.sleep)
    assert result == {"confirmed": True, "turn": 1, "strategy": "retry-click"}
    assert page.sends == 2


@pytest.mark.asyncio
async def test_unconfirmed_submission_raises():
    clock = FakeClock()
    page = FakePage(clock=clock)
    page.drop_sends = 5
    with pytest.raises(SubmissionNotDetectedError):
        await submit_and_confirm(page, "lost", timeout=2, clock=clock, sleep=clock.sleep)
    assert page.sends == 2


@pytest.mark.asyncio
async def test_wait_for_prompt_input_times_out():
    clock = FakeClock()
    page = FakePage(clock=clock)
    page.input_editable = False
    with pytest.raises(PromptInputUnavailableError):
        await wait_for_prompt_input(page, timeout=3, clock=clock, sleep=clock.sleep)


@pytest.mark.asyncio
async def test_send_uses_mouse_click_on_enabled_button():
    page = FakePage()
    assert await click_send(page)
    assert page.clicks == [CHATGPT_SEND_SELECTORS[0]]
    assert page.sends == 1
    assert page.keys == []


@pytest.mark.asyncio
async def test_send_falls_back_to_dom_click_when_mouse_click_misses():
    page = FakePage()
    page.mouse_clicks = False
    assert await click_send(page)
    assert page.clicks == CHATGPT_SEND_SELECTORS
    assert page.sends == 1
