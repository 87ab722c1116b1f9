#!/usr/bin/env python3
"""
Turn locator: map logical conversation positions onto the remote UI's
turn numbering.

Turn numbers increase monotonically but do not alternate between user
and assistant; role-less turns can sit between a prompt and its reply.
"""

import re

import page_scripts
from config import PROMPT_MATCH_PREFIX, REPLY_LOOKAHEAD

_WHITESPACE_RE = re.compile(r"\s+")
_ATTACHED_MARKER_RE = re.compile(r"\[attached:[^\]]+\]", re.IGNORECASE)


def normalize_for_compare(value: str | None) -> str:
    """Collapse whitespace runs (incl. NBSP and tabs) to one space and trim."""
    if not value:
        return ""
    value = value.replace("\r\n", "\n").replace("\u00a0", " ").replace("\t", " ")
    return _WHITESPACE_RE.sub(" ", value).strip()


def strip_attachment_markers(prompt: str) -> str:
    return _ATTACHED_MARKER_RE.sub("", prompt)


def build_match_candidates(prompt: str) -> list[str]:
    """Normalized forms of `prompt` an echoed user turn may take."""
    candidates = []
    for value in (prompt, strip_attachment_markers(prompt)):
        normalized = normalize_for_compare(value)
        if normalized and normalized not in candidates:
            candidates.append(normalized)
    return candidates


def matches_expected(value: str, expected: str, prefix_len: int = PROMPT_MATCH_PREFIX) -> bool:
    """Exact match, or a shared prefix when `expected` is long (UI may truncate)."""
    if not value:
        return False
    if value == expected:
        return True
    if len(expected) > prefix_len:
        return value.startswith(expected[:prefix_len])
    return False


def matches_any(value: str, candidates: list[str]) -> bool:
    return any(matches_expected(value, c) for c in candidates)


async def list_turns(page) -> list[dict]:
    return await page.evaluate(page_scripts.TURNS) or []


async def next_user_turn(page) -> int:
    """max(existing turn numbers) + 1; 1 for an empty conversation."""
    turns = await list_turns(page)
    return max((t["turn"] for t in turns), default=0) + 1


async def find_turn_for_content(page, candidates: list[str], min_turn: int | None = None) -> int | None:
    """Latest user turn above `min_turn` whose text matches a candidate."""
    matched = None
    for turn in await list_turns(page):
        if min_turn is not None and turn["turn"] <= min_turn:
            continue
        if turn.get("role") != "user":
            continue
        if matches_any(normalize_for_compare(turn.get("text")), candidates):
            matched = turn["turn"]
    return matched


def locate_reply_turn(turns: list[dict], expected_turn: int, lookahead: int = REPLY_LOOKAHEAD) -> dict | None:
    """First assistant turn in [expected_turn, expected_turn + lookahead]."""
    for turn in sorted(turns, key=lambda t: t["turn"]):
        if turn["turn"] < expected_turn or turn["turn"] > expected_turn + lookahead:
            continue
        if turn.get("role") == "assistant":
            return turn
    return None


async def user_message_snapshot(page, candidates: list[str]) -> dict:
    """
    Point-in-time view of user messages, compared before/after a send.

    Returns:
        dict with count, last_normalized, last_matches_prompt,
        last_turn and max_turn (None when no numbered turns exist).
    """
    messages = await page.evaluate(page_scripts.USER_MESSAGES) or []
    turns = await list_turns(page)
    last = messages[-1] if messages else None
    last_normalized = normalize_for_compare(last["text"]) if last else ""
    return {
        "count": len(messages),
        "last_normalized": last_normalized,
        "last_matches_prompt": matches_any(last_normalized, candidates),
        "last_turn": last["turn"] if last else None,
        "max_turn": max((t["turn"] for t in turns), default=None),
    }


def infer_new_user_turn(before: dict, after: dict) -> int | None:
    """The last user turn number, if it moved forward between snapshots."""
    after_turn = after.get("last_turn")
    if after_turn is None:
        return None
    before_turn = before.get("last_turn")
    if before_turn is None or after_turn > before_turn:
        return after_turn
    return None


async def prompt_already_submitted(page, prompt: str) -> bool:
    """True when the most recent user message is exactly this prompt."""
    messages = await page.evaluate(page_scripts.USER_MESSAGES) or []
    if not messages:
        return False
    return normalize_for_compare(messages[-1]["text"]) == normalize_for_compare(prompt)
