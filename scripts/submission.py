#!/usr/bin/env python3
"""
Submission verifier: write the prompt, send it, and confirm the remote
side accepted it.

Both phases are ordered lists of named strategies tried until one
succeeds. Confirmation errs on the permissive side, since a missed
confirmation leads to a duplicate send later.
"""

import asyncio
import time

import page_scripts
from config import (
    CHATGPT_INPUT_SELECTORS, CHATGPT_SEND_SELECTORS,
    PROMPT_INPUT_TIMEOUT, CONFIRM_TIMEOUT, SUBMIT_SETTLE_DELAY,
)
from errors import (
    PromptInputUnavailableError, SubmissionMismatchError, SubmissionNotDetectedError,
)
from turns import (
    build_match_candidates, find_turn_for_content, infer_new_user_turn,
    list_turns, matches_any, next_user_turn, normalize_for_compare,
    user_message_snapshot,
)


def _quiet(msg: str) -> None:
    pass


async def read_prompt_input(page) -> dict:
    return await page.evaluate(
        page_scripts.PROMPT_INPUT_VALUE, {"selectors": CHATGPT_INPUT_SELECTORS},
    ) or {"found": False, "value": ""}


async def send_button_state(page) -> dict:
    return await page.evaluate(
        page_scripts.SEND_BUTTON_STATE, {"selectors": CHATGPT_SEND_SELECTORS},
    ) or {"found": False, "enabled": False}


async def wait_for_prompt_input(
    page,
    timeout: float = PROMPT_INPUT_TIMEOUT,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> None:
    start = clock()
    while clock() - start < timeout:
        try:
            state = await page.evaluate(
                page_scripts.PROMPT_INPUT_STATE, {"selectors": CHATGPT_INPUT_SELECTORS},
            ) or {}
            if state.get("found") and state.get("editable"):
                return
        except Exception:
            pass
        await sleep(0.5)
    raise PromptInputUnavailableError(f"Prompt input not available after {timeout:.0f}s")


# ── Writing the prompt ────────────────────────────────────────────────

async def _fill_fast(page, text: str) -> None:
    await page.evaluate(page_scripts.FILL_INPUT, {"selectors": CHATGPT_INPUT_SELECTORS, "text": text})


async def _fill_literal(page, text: str) -> None:
    """Type line by line; Shift+Enter inserts a newline without sending."""
    selectors = {"selectors": CHATGPT_INPUT_SELECTORS}
    await page.evaluate(page_scripts.CLEAR_INPUT, selectors)
    await page.evaluate(page_scripts.FOCUS_INPUT, selectors)
    lines = text.split("\n")
    for i, line in enumerate(lines):
        if line:
            await page.type_text(line)
        if i < len(lines) - 1:
            await page.press_key("Enter", shift=True)


FILL_STRATEGIES = [
    ("fast", _fill_fast),
    ("literal", _fill_literal),
]


async def click_send(page) -> bool:
    """Click the send control, falling back to Enter in the focused input.

    An enabled button gets a real mouse click first; the DOM click also
    finds send buttons matched only by their label.
    """
    if (await send_button_state(page)).get("enabled"):
        for selector in CHATGPT_SEND_SELECTORS:
            if await page.click(selector):
                return True
    clicked = await page.evaluate(page_scripts.CLICK_SEND, {"selectors": CHATGPT_SEND_SELECTORS})
    if clicked:
        return True
    await page.evaluate(page_scripts.FOCUS_INPUT, {"selectors": CHATGPT_INPUT_SELECTORS})
    await page.press_key("Enter")
    return False


async def submit_prompt(page, text: str, log=_quiet) -> str:
    """
    Write `text` into the prompt input, verify the readback, then send.

    Returns:
        The normalized readback that matched.

    Raises:
        SubmissionMismatchError: no fill strategy produced matching text.
    """
    expected = normalize_for_compare(text)
    echo = ""
    for name, fill in FILL_STRATEGIES:
        await page.evaluate(page_scripts.CLEAR_INPUT, {"selectors": CHATGPT_INPUT_SELECTORS})
        await fill(page, text)
        echo = normalize_for_compare((await read_prompt_input(page)).get("value"))
        if echo == expected:
            log(f"[submit] prompt written ({name}, {len(text)} chars)")
            break
        log(f"[submit] readback mismatch after {name} fill ({len(echo)}/{len(expected)} chars)")
    else:
        raise SubmissionMismatchError(
            f"Prompt readback did not match after {len(FILL_STRATEGIES)} attempts "
            f"(got {len(echo)} of {len(expected)} normalized chars)"
        )

    if not await click_send(page):
        log("[submit] send control not clickable, pressed Enter instead")
    return echo


# ── Confirming it landed ──────────────────────────────────────────────

async def wait_for_user_message(
    page,
    candidates: list[str],
    expected_turn: int,
    timeout: float,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> bool:
    """Wait for a user turn numbered `expected_turn` whose text matches."""
    start = clock()
    while clock() - start < timeout:
        try:
            for turn in await list_turns(page):
                if turn["turn"] == expected_turn and turn.get("role") == "user" \
                        and matches_any(normalize_for_compare(turn.get("text")), candidates):
                    return True
        except Exception:
            pass
        await sleep(0.5)
    return False


async def detect_submission_signals(page, candidates: list[str], before: dict) -> dict:
    """Compare against the pre-send snapshot for evidence a message went out."""
    after = await user_message_snapshot(page, candidates)
    field = await read_prompt_input(page)
    send = await send_button_state(page)

    prompt_still_present = matches_any(normalize_for_compare(field.get("value")), candidates)
    count_increased = after["count"] > before["count"]
    last_changed = bool(after["last_normalized"]) and after["last_normalized"] != before["last_normalized"]
    turn_advanced = after["max_turn"] is not None and (
        before["max_turn"] is None or after["max_turn"] > before["max_turn"]
    )

    reasons = []
    if not prompt_still_present:
        reasons.append("input-cleared")
    if count_increased:
        reasons.append("user-count-increased")
    if last_changed:
        reasons.append("last-user-changed")
    if turn_advanced:
        reasons.append("turn-advanced")
    if after["last_matches_prompt"]:
        reasons.append("last-user-matches")

    submitted = not prompt_still_present and (
        count_increased or turn_advanced or (last_changed and after["last_matches_prompt"])
    )
    return {
        "submitted": submitted,
        "reasons": reasons,
        "prompt_still_present": prompt_still_present,
        "send_enabled": bool(send.get("enabled")),
        "count_increased": count_increased,
        "last_changed": last_changed,
        "turn_advanced": turn_advanced,
        "after": after,
    }


async def _confirm_expected_turn(page, ctx: dict) -> int | None:
    if await wait_for_user_message(page, ctx["candidates"], ctx["expected_turn"],
                                   ctx["timeout"], ctx["clock"], ctx["sleep"]):
        return ctx["expected_turn"]
    return None


async def _confirm_rescan(page, ctx: dict) -> int | None:
    return await find_turn_for_content(page, ctx["candidates"], ctx["before"]["max_turn"])


async def _confirm_signals(page, ctx: dict) -> int | None:
    for delay in (0, SUBMIT_SETTLE_DELAY):
        if delay:
            await ctx["sleep"](delay)
        signals = await detect_submission_signals(page, ctx["candidates"], ctx["before"])
        ctx["signals"] = signals
        ctx["log"](f"[submit] signals: {', '.join(signals['reasons']) or 'none'}")
        if signals["submitted"]:
            return infer_new_user_turn(ctx["before"], signals["after"]) or ctx["expected_turn"]
    return None


async def _confirm_retry_click(page, ctx: dict) -> int | None:
    signals = ctx.get("signals")
    if not signals or not signals["prompt_still_present"] or not signals["send_enabled"]:
        return None
    if signals["count_increased"] or signals["last_changed"] or signals["turn_advanced"]:
        return None
    ctx["log"]("[submit] prompt still in input with send enabled; clicking send once more")
    await click_send(page)
    start = ctx["clock"]()
    while ctx["clock"]() - start < ctx["timeout"]:
        turn = await find_turn_for_content(page, ctx["candidates"], ctx["before"]["max_turn"])
        if turn is not None:
            return turn
        await ctx["sleep"](0.5)
    return None


CONFIRM_STRATEGIES = [
    ("expected-turn", _confirm_expected_turn),
    ("rescan", _confirm_rescan),
    ("signals", _confirm_signals),
    ("retry-click", _confirm_retry_click),
]


async def confirm(
    page,
    candidates: list[str],
    expected_turn: int,
    before: dict,
    timeout: float = CONFIRM_TIMEOUT,
    log=_quiet,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> dict:
    """
    Run the confirmation strategies in order.

    Returns:
        dict with confirmed, turn (the user turn number) and strategy.
    """
    ctx = {
        "candidates": candidates,
        "expected_turn": expected_turn,
        "before": before,
        "timeout": timeout,
        "log": log,
        "clock": clock,
        "sleep": sleep,
    }
    for name, strategy in CONFIRM_STRATEGIES:
        try:
            turn = await strategy(page, ctx)
        except Exception as e:
            log(f"[submit] confirm strategy {name} errored: {e}")
            continue
        if turn is not None:
            return {"confirmed": True, "turn": turn, "strategy": name}
    return {"confirmed": False, "turn": None, "strategy": None}


async def submit_and_confirm(
    page,
    prompt: str,
    candidates: list[str] | None = None,
    log=_quiet,
    timeout: float = CONFIRM_TIMEOUT,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> int:
    """
    Submit `prompt` and return the user turn number it landed on.

    Raises:
        SubmissionMismatchError: readback never matched.
        SubmissionNotDetectedError: no strategy confirmed the send.
    """
    candidates = candidates or build_match_candidates(prompt)
    expected_turn = await next_user_turn(page)
    before = await user_message_snapshot(page, candidates)

    await submit_prompt(page, prompt, log=log)
    result = await confirm(page, candidates, expected_turn, before, timeout, log, clock, sleep)
    if not result["confirmed"]:
        raise SubmissionNotDetectedError(
            f"Send triggered but no user turn confirmed within {timeout:.0f}s "
            f"(expected turn {expected_turn})"
        )
    log(f"[submit] confirmed user turn {result['turn']} via {result['strategy']}")
    return result["turn"]
