#!/usr/bin/env python3
"""
Completion detector: reduce polled DOM state to generating / completed /
stalled / failed.

A reply is final only when its turn shows a finished control, its text
is non-empty, and the text has not changed for STABILITY_WINDOW seconds.
The finished control can render slightly ahead of the last token flush.
"""

import asyncio
import time
from typing import NamedTuple

import page_scripts
from config import (
    POLL_INTERVAL, POLL_INTERVAL_MIN, POLL_INTERVAL_MAX,
    STABILITY_WINDOW, FAILED_GRACE, REPLY_LOOKAHEAD,
    CHATGPT_STOP_SELECTORS, CHATGPT_FINISHED_SELECTORS,
)
from errors import ResponseFailedError, ResponseStalledError, ResponseTimeoutError
from turns import locate_reply_turn


def _quiet(msg: str) -> None:
    pass


def note_once(anomalies: set, key: str, log, msg: str) -> None:
    """Log a repeating structural anomaly only the first time it is seen."""
    if key in anomalies:
        return
    anomalies.add(key)
    log(msg)


class GenerationSnapshot(NamedTuple):
    generating: bool
    completion_visible: bool
    reply_text: str
    reply_index: int
    expected_turn_present: bool
    expected_reply_present: bool
    continue_visible: bool = False


def clamp_poll_interval(interval: float | None) -> float:
    if interval is None:
        return POLL_INTERVAL
    return min(POLL_INTERVAL_MAX, max(POLL_INTERVAL_MIN, interval))


def reduce_generation_state(
    raw: dict,
    expected_reply_turn: int | None = None,
    lookahead: int = REPLY_LOOKAHEAD,
) -> GenerationSnapshot:
    """Pick the target reply out of a GENERATION_STATE result."""
    generating = bool(raw.get("generating"))
    continue_visible = bool(raw.get("continue_visible"))

    if expected_reply_turn is not None:
        window = raw.get("window") or []
        target = locate_reply_turn(window, expected_reply_turn, lookahead)
        expected_turn_present = any(t["turn"] == expected_reply_turn for t in window)
        index = target["turn"] if target else -1
    else:
        target = raw.get("last")
        expected_turn_present = target is not None
        index = target.get("ordinal", -1) if target else -1

    return GenerationSnapshot(
        generating=generating,
        completion_visible=bool(target and target.get("finished")),
        reply_text=(target.get("text") or "").strip() if target else "",
        reply_index=index,
        expected_turn_present=expected_turn_present,
        expected_reply_present=target is not None,
        continue_visible=continue_visible,
    )


async def poll(page, expected_reply_turn: int | None = None, lookahead: int = REPLY_LOOKAHEAD) -> GenerationSnapshot:
    raw = await page.evaluate(page_scripts.GENERATION_STATE, {
        "from_turn": expected_reply_turn,
        "to_turn": None if expected_reply_turn is None else expected_reply_turn + lookahead,
        "stop_selectors": CHATGPT_STOP_SELECTORS,
        "finished_selectors": CHATGPT_FINISHED_SELECTORS,
    }) or {}
    return reduce_generation_state(raw, expected_reply_turn, lookahead)


async def is_generating(page) -> bool:
    return (await poll(page)).generating


async def wait_for_idle(
    page,
    timeout: float,
    poll_interval: float = POLL_INTERVAL,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> None:
    """Wait until no generation is in progress on the page."""
    interval = clamp_poll_interval(poll_interval)
    start = clock()
    while clock() - start < timeout:
        try:
            if not await is_generating(page):
                return
        except Exception:
            pass
        await sleep(interval)
    raise ResponseTimeoutError(f"Remote side still generating after {timeout:.0f}s; not submitting")


async def wait_for_completion(
    page,
    timeout: float,
    poll_interval: float = POLL_INTERVAL,
    expected_reply_turn: int | None = None,
    lookahead: int = REPLY_LOOKAHEAD,
    stability_window: float = STABILITY_WINDOW,
    failed_grace: float = FAILED_GRACE,
    log=_quiet,
    anomalies: set | None = None,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> dict:
    """
    Poll until the reply is final.

    Returns:
        dict with content, reply_index and conversation_url.

    Raises:
        ResponseStalledError: still generating when the timeout elapsed.
        ResponseFailedError: generation stopped and no completion signal
            appeared within `failed_grace` seconds.
        ResponseTimeoutError: timeout elapsed with neither of the above.
    """
    interval = clamp_poll_interval(poll_interval)
    if anomalies is None:
        anomalies = set()

    start = clock()
    last_text = ""
    last_index = None
    last_change = start
    seen_generating = False
    generation_ended_at = None
    snapshot = None

    while clock() - start < timeout:
        try:
            snapshot = await poll(page, expected_reply_turn, lookahead)
        except Exception as e:
            note_once(anomalies, f"poll-error:{type(e).__name__}", log,
                      f"[completion] poll failed, retrying: {e}")
            await sleep(interval)
            continue

        now = clock()
        if snapshot.reply_text != last_text or snapshot.reply_index != last_index:
            last_text = snapshot.reply_text
            last_index = snapshot.reply_index
            last_change = now

        if expected_reply_turn is not None and snapshot.expected_turn_present and not snapshot.expected_reply_present:
            note_once(anomalies, "reply-outside-lookahead", log,
                      f"[completion] turn {expected_reply_turn} present but no reply within +{lookahead}")

        if snapshot.generating:
            seen_generating = True
            generation_ended_at = None
            await sleep(interval)
            continue

        if seen_generating and generation_ended_at is None:
            generation_ended_at = now

        if snapshot.continue_visible:
            try:
                clicked = await page.evaluate(page_scripts.CLICK_CONTINUE)
            except Exception as e:
                clicked = False
                note_once(anomalies, f"continue-error:{type(e).__name__}", log,
                          f"[completion] continue click failed, still polling: {e}")
            if clicked:
                log("[completion] clicked continue generating")
                last_change = now
                generation_ended_at = None
                await sleep(interval)
                continue

        if snapshot.completion_visible:
            if not snapshot.reply_text:
                note_once(anomalies, "finished-without-text", log,
                          "[completion] finished control visible but reply text empty; still polling")
            elif now - last_change >= stability_window:
                return {
                    "content": snapshot.reply_text,
                    "reply_index": snapshot.reply_index,
                    "conversation_url": await page.current_url(),
                }
        elif generation_ended_at is not None and now - generation_ended_at >= failed_grace:
            raise ResponseFailedError(
                f"Generation stopped but no completion signal appeared within {failed_grace:.0f}s"
            )

        await sleep(interval)

    if snapshot is not None and snapshot.generating:
        raise ResponseStalledError(f"Response still generating after {timeout:.0f}s")
    observed = "was observed" if seen_generating else "was never observed"
    raise ResponseTimeoutError(
        f"Timed out after {timeout:.0f}s waiting for a completed reply (generation {observed})"
    )
