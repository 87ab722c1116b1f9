import pytest

import page_scripts
from completion import clamp_poll_interval, reduce_generation_state, wait_for_completion, wait_for_idle
from errors import ResponseFailedError, ResponseStalledError, ResponseTimeoutError
from fakes import FakeClock, FakePage, assistant, roleless, user

REPLY = "abcdefghijklmnopqrstuvwxyz0123"


def wait(page, clock, **kwargs):
    kwargs.setdefault("timeout", 120)
    kwargs.setdefault("poll_interval", 0.5)
    return wait_for_completion(page, clock=clock, sleep=clock.sleep, **kwargs)


def test_poll_interval_is_clamped():
    assert clamp_poll_interval(0.01) == 0.5
    assert clamp_poll_interval(5) == 1.0
    assert clamp_poll_interval(0.75) == 0.75


def test_reduce_uses_lookahead_window_past_roleless_turn():
    raw = {
        "generating": False,
        "window": [
            {"turn": 3, "role": None, "text": "", "finished": False},
            {"turn": 4, "role": "assistant", "text": " hi ", "finished": True},
        ],
        "last": None,
    }
    snap = reduce_generation_state(raw, expected_reply_turn=3)
    assert snap.reply_index == 4
    assert snap.reply_text == "hi"
    assert snap.completion_visible
    assert snap.expected_turn_present and snap.expected_reply_present


def test_reduce_without_expected_turn_uses_last_reply():
    raw = {"generating": True, "window": [], "last": {"turn": 8, "role": "assistant",
                                                      "text": "x", "finished": False, "ordinal": 3}}
    snap = reduce_generation_state(raw)
    assert snap.generating
    assert snap.reply_index == 3
    assert not snap.completion_visible


@pytest.mark.asyncio
async def test_streamed_reply_completes_after_stability_window():
    clock = FakeClock()
    t0 = clock.now
    page = FakePage(turns=[user(1, "spell it")], clock=clock)

    def stream(p):
        shown = min(len(REPLY), int((clock.now - t0) * 10 + 1e-9))
        p.generating = shown < len(REPLY)
        p.set_reply(2, REPLY[:shown], finished=shown >= len(REPLY))

    page.on_evaluate = stream
    result = await wait(page, clock, timeout=60, expected_reply_turn=2)

    assert result["content"] == REPLY
    assert result["reply_index"] == 2
    assert result["conversation_url"] == page.url
    elapsed = clock.now - t0
    assert 3.0 + 2.0 <= elapsed < 60


@pytest.mark.asyncio
async def test_generation_ending_without_finished_control_fails():
    clock = FakeClock()
    t0 = clock.now
    page = FakePage(turns=[user(1, "q")], clock=clock)

    def script(p):
        p.generating = clock.now - t0 < 5
        p.set_reply(2, "partial", finished=False)

    page.on_evaluate = script
    with pytest.raises(ResponseFailedError):
        await wait(page, clock, timeout=300, expected_reply_turn=2)
    assert clock.now - t0 >= 5 + 30
    assert clock.now - t0 < 300


@pytest.mark.asyncio
async def test_generating_forever_stalls_never_completes():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "q"), assistant(2, "stuck", finished=True)], clock=clock)
    page.generating = True
    with pytest.raises(ResponseStalledError):
        await wait(page, clock, timeout=20, expected_reply_turn=2)


@pytest.mark.asyncio
async def test_never_generating_without_reply_times_out():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "q")], clock=clock)
    with pytest.raises(ResponseTimeoutError):
        await wait(page, clock, timeout=10, expected_reply_turn=2)


@pytest.mark.asyncio
async def test_finished_control_with_empty_text_keeps_polling():
    clock = FakeClock()
    t0 = clock.now
    page = FakePage(turns=[user(1, "q"), assistant(2, "", finished=True)], clock=clock)
    page.on_evaluate = lambda p: p.set_reply(2, "done" if clock.now - t0 >= 4 else "", finished=True)
    messages = []
    anomalies = set()

    result = await wait(page, clock, expected_reply_turn=2, log=messages.append, anomalies=anomalies)

    assert result["content"] == "done"
    assert clock.now - t0 >= 6
    assert "finished-without-text" in anomalies
    assert sum("reply text empty" in m for m in messages) == 1


@pytest.mark.asyncio
async def test_finished_control_on_earlier_turn_does_not_count():
    clock = FakeClock()
    page = FakePage(turns=[
        user(1, "first"),
        assistant(2, "old answer", finished=True),
        user(3, "second"),
        assistant(4, "new ans", finished=False),
    ], clock=clock)
    with pytest.raises(ResponseTimeoutError):
        await wait(page, clock, timeout=15, expected_reply_turn=4)


@pytest.mark.asyncio
async def test_reply_found_two_turns_after_user_turn():
    clock = FakeClock()
    page = FakePage(turns=[user(5, "q"), roleless(6), assistant(7, "located", finished=True)], clock=clock)
    result = await wait(page, clock, expected_reply_turn=6)
    assert result["content"] == "located"
    assert result["reply_index"] == 7


@pytest.mark.asyncio
async def test_continue_generating_is_clicked():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "q"), assistant(2, "part one", finished=False)], clock=clock)
    page.continue_visible = True

    def finish_after_continue(p):
        if p.continue_clicks:
            p.set_reply(2, "part one and two", finished=True)

    page.on_evaluate = finish_after_continue
    result = await wait(page, clock, expected_reply_turn=2)
    assert page.continue_clicks == 1
    assert result["content"] == "part one and two"


@pytest.mark.asyncio
async def test_single_poll_errors_are_swallowed():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "q"), assistant(2, "fine", finished=True)], clock=clock)
    calls = {"n": 0}

    def flaky(p):
        calls["n"] += 1
        if calls["n"] <= 2:
            raise RuntimeError("Cannot find context with specified id")

    page.on_evaluate = flaky
    messages = []
    result = await wait(page, clock, expected_reply_turn=2, log=messages.append)
    assert result["content"] == "fine"
    assert len(messages) == 1


@pytest.mark.asyncio
async def test_wait_for_idle():
    clock = FakeClock()
    t0 = clock.now
    page = FakePage(clock=clock)
    page.on_evaluate = lambda p: setattr(p, "generating", clock.now - t0 < 3)
    await wait_for_idle(page, timeout=10, clock=clock, sleep=clock.sleep)
    assert clock.now - t0 >= 3

    page.on_evaluate = None
    page.generating = True
    with pytest.raises(ResponseTimeoutError):
        await wait_for_idle(page, timeout=5, clock=clock, sleep=clock.sleep)


@pytest.mark.asyncio
async def test_continue_click_error_keeps_polling():
    clock = FakeClock()
    page = FakePage(turns=[user(1, "q"), assistant(2, "done", finished=True)], clock=clock)
    page.continue_visible = True
    page.raise_on[page_scripts.CLICK_CONTINUE] = RuntimeError("Execution context was destroyed")
    messages = []

    result = await wait(page, clock, expected_reply_turn=2, log=messages.append)

    assert result["content"] == "done"
    assert len(messages) == 1
    assert "continue click failed" in messages[0]
