#!/usr/bin/env python3
"""
Read the reasoning ("Thought for ...") panel of a run's conversation.

Works on active and finished runs: a separate tab is opened on the run's
conversation URL, the panel is expanded and its text read. By default
only the part not printed by the previous call is returned; the cursor
lives in the run directory as thinking.json.
"""

import asyncio
import time
from pathlib import Path

import page_scripts
from config import DEV_MODE, THINKING_WAIT, THINKING_EXPAND_DELAY, THINKING_PREFIX_CHARS, USER_DATA_DIR
from errors import AccessBlockedError, ThinkingUnavailableError, is_detached_frame_error
from page import launch_browser, open_page, release_browser
from run_state import load_run_config, load_status, now_iso, read_json, write_json_atomic
from worker import is_local_url


def _quiet(msg: str) -> None:
    pass


def thinking_state_path(run_path: Path) -> Path:
    return Path(run_path) / "thinking.json"


def read_thinking_state(run_path: Path) -> dict | None:
    return read_json(thinking_state_path(run_path))


def save_thinking_state(run_path: Path, state: dict) -> None:
    write_json_atomic(thinking_state_path(run_path), state)


def build_thinking_state(text: str) -> dict:
    return {"cursor": len(text), "prefix": text[:THINKING_PREFIX_CHARS], "updated_at": now_iso()}


def compute_thinking_increment(text: str, state: dict | None) -> tuple[str, dict]:
    """
    Text added since `state` was saved, plus the state to save next.

    The whole text comes back when there is no state, or when the panel
    no longer starts with the remembered prefix (a new reply replaced it).
    """
    next_state = build_thinking_state(text)
    if not state:
        return text, next_state
    if not text.startswith(state.get("prefix", "")) or state.get("cursor", 0) > len(text):
        return text, next_state
    return text[state["cursor"]:], next_state


async def extract_thinking(page, clock=time.monotonic, sleep=asyncio.sleep, timeout: float = THINKING_WAIT) -> str:
    """Wait for the reasoning toggle, expand it, and return the panel text."""
    start = clock()
    state = {}
    while clock() - start < timeout:
        state = await page.evaluate(page_scripts.THINKING_CONTENT) or {}
        if state.get("found"):
            break
        await sleep(0.5)
    if not state.get("found"):
        return ""
    if not state.get("expanded"):
        await page.evaluate(page_scripts.EXPAND_THINKING)
        await sleep(THINKING_EXPAND_DELAY)
        state = await page.evaluate(page_scripts.THINKING_CONTENT) or {}
    return (state.get("text") or "").strip()


async def read_thinking_content(
    config: dict,
    launcher=launch_browser,
    page_opener=open_page,
    releaser=release_browser,
    log=_quiet,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> str:
    """Open the run's conversation in its own tab and read the panel."""
    url = config["conversation_url"]
    for attempt in range(2):
        session = None
        page = None
        try:
            session = await launcher(Path(config.get("profile_dir") or USER_DATA_DIR), visible=False, log=log)
            page = await page_opener(session["browser"], url, fresh=True)
            await page.goto(url)
            if not (DEV_MODE and is_local_url(url)):
                access = await page.evaluate(page_scripts.ACCESS_STATE) or {}
                if access.get("challenge") or access.get("login"):
                    reason = "challenge" if access.get("challenge") else "login"
                    raise AccessBlockedError(reason, f"ChatGPT not ready ({reason}); resolve it with --show-browser")
            return await extract_thinking(page, clock, sleep)
        except Exception as e:
            if not is_detached_frame_error(e) or attempt >= 1:
                raise
            log(f"[thinking] detached frame; retrying ({attempt + 1}/2)")
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as e:
                    log(f"[thinking] tab close failed: {e}")
            if session is not None:
                await releaser(session, log)
    raise ThinkingUnavailableError("Failed to read thinking content")


async def read_thinking(run_path: Path, full: bool = False, reader=read_thinking_content, log=_quiet) -> str:
    """
    Thinking text for the run at `run_path`; incremental unless `full`.

    Raises:
        ThinkingUnavailableError: the run has no conversation URL yet.
    """
    run_path = Path(run_path)
    config = load_run_config(run_path)
    status = load_status(run_path) or {}
    url = status.get("conversation_url") or config.get("conversation_url")
    if not url:
        raise ThinkingUnavailableError(
            f"Thinking not available for run {config['run_id']} "
            f"(state={status.get('state', 'unknown')}, stage={status.get('stage', 'unknown')}); "
            "the run has not reached a conversation yet"
        )
    config["conversation_url"] = url
    text = await reader(config, log=log)
    if full:
        save_thinking_state(run_path, build_thinking_state(text))
        return text
    chunk, next_state = compute_thinking_increment(text, read_thinking_state(run_path))
    save_thinking_state(run_path, next_state)
    return chunk
