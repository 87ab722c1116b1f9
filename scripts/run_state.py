#!/usr/bin/env python3
"""
Run persistence: one directory per run holding plain JSON records that
a separate status/result process can read at any time.

    <RUNS_DIR>/<run_id>/
        run.json      run config
        status.json   state, stage, message (+ needs for needs_user)
        result.md     reply text
        result.json   terminal record
        run.log       worker log
        cancel.json   cancel marker
"""

import hashlib
import json
import os
import shutil
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from config import (
    RUNS_DIR, RUN_TTL, USER_DATA_DIR, CHATGPT_URL, DEFAULT_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS, POLL_INTERVAL,
)

ACTIVE_STATES = {"starting", "running", "needs_user"}
TERMINAL_STATES = {"completed", "failed", "canceled"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def write_text_atomic(path: Path, content: str) -> None:
    """Write via a temp file + fsync + rename so readers never see partial data."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def write_json_atomic(path: Path, data) -> None:
    write_text_atomic(path, json.dumps(data, indent=2) + "\n")


def read_json(path: Path):
    """Parsed JSON at `path`, or None when missing or unreadable."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return None


# ── Paths ─────────────────────────────────────────────────────────────

def run_dir(run_id: str, root: Path = RUNS_DIR) -> Path:
    return Path(root) / run_id


def config_path(run_path: Path) -> Path:
    return Path(run_path) / "run.json"


def status_path(run_path: Path) -> Path:
    return Path(run_path) / "status.json"


def result_path(run_path: Path) -> Path:
    return Path(run_path) / "result.md"


def result_json_path(run_path: Path) -> Path:
    return Path(run_path) / "result.json"


def log_path(run_path: Path) -> Path:
    return Path(run_path) / "run.log"


def cancel_path(run_path: Path) -> Path:
    return Path(run_path) / "cancel.json"


# ── Records ───────────────────────────────────────────────────────────

def create_run_config(
    prompt: str,
    attachments: list[dict] | None = None,
    root: Path = RUNS_DIR,
    base_url: str = CHATGPT_URL,
    conversation_url: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    poll_interval: float = POLL_INTERVAL,
    profile_dir: Path = USER_DATA_DIR,
    allow_visible: bool = False,
    allow_kill: bool = False,
    allow_restart_other: bool = False,
    original_prompt: str | None = None,
) -> dict:
    run_id = uuid.uuid4().hex[:12]
    return {
        "run_id": run_id,
        "created_at": now_iso(),
        "prompt": prompt,
        "original_prompt": original_prompt if original_prompt is not None else prompt,
        "prompt_hash": hashlib.sha256(prompt.encode("utf-8")).hexdigest(),
        "attachments": attachments or [],
        "profile_dir": str(profile_dir),
        "base_url": base_url,
        "allow_visible": allow_visible,
        "allow_kill": allow_kill,
        "allow_restart_other": allow_restart_other,
        "poll_interval": poll_interval,
        "timeout": timeout,
        "debug_port": None,
        "browser_pid": None,
        "conversation_url": conversation_url,
        "last_reply_index": None,
        "attempt": 0,
        "max_attempts": max_attempts,
        "run_dir": str(run_dir(run_id, root)),
        "started_at": None,
        "completed_at": None,
        "last_error": None,
    }


def save_run_config(config: dict) -> None:
    write_json_atomic(config_path(config["run_dir"]), config)


def load_run_config(run_path: Path) -> dict:
    config = read_json(config_path(run_path))
    if config is None:
        raise FileNotFoundError(f"No run config in {run_path}")
    return config


def save_status(
    config: dict,
    state: str,
    stage: str | None = None,
    message: str | None = None,
    needs: dict | None = None,
) -> dict:
    status = {
        "run_id": config["run_id"],
        "state": state,
        "stage": stage,
        "message": message,
        "updated_at": now_iso(),
        "attempt": config.get("attempt"),
        "conversation_url": config.get("conversation_url"),
    }
    if needs:
        status["needs"] = needs
    write_json_atomic(status_path(config["run_dir"]), status)
    return status


def load_status(run_path: Path) -> dict | None:
    return read_json(status_path(run_path))


def save_result(config: dict, state: str, content: str | None = None, error: str | None = None) -> dict:
    result = {
        "run_id": config["run_id"],
        "state": state,
        "completed_at": now_iso(),
        "conversation_url": config.get("conversation_url"),
    }
    if content is not None:
        result["content"] = content
        write_text_atomic(result_path(config["run_dir"]), content)
    if error is not None:
        result["error"] = error
    write_json_atomic(result_json_path(config["run_dir"]), result)
    return result


def load_result(run_path: Path) -> dict | None:
    return read_json(result_json_path(run_path))


# ── Cancellation ──────────────────────────────────────────────────────

def request_cancel(run_path: Path) -> None:
    write_json_atomic(cancel_path(run_path), {"canceled_at": now_iso()})


def is_canceled(run_path: Path) -> bool:
    return cancel_path(run_path).exists()


# ── Housekeeping ──────────────────────────────────────────────────────

def _created_at(run_path: Path) -> float | None:
    config = read_json(config_path(run_path))
    if config and config.get("created_at"):
        try:
            return datetime.fromisoformat(config["created_at"].replace("Z", "+00:00")).timestamp()
        except ValueError:
            pass
    try:
        return run_path.stat().st_mtime
    except OSError:
        return None


def cleanup_runs_root(root: Path = RUNS_DIR, ttl: float = RUN_TTL, log=None) -> int:
    """Remove finished runs older than `ttl` seconds. Returns the count removed."""
    root = Path(root)
    if not root.is_dir():
        return 0
    now = time.time()
    removed = 0
    for entry in root.iterdir():
        if not entry.is_dir():
            continue
        created = _created_at(entry)
        if created is None or now - created < ttl:
            continue
        status = load_status(entry)
        if status and status.get("state") in ACTIVE_STATES:
            continue
        try:
            shutil.rmtree(entry)
            removed += 1
        except OSError as e:
            if log:
                log(f"[cleanup] failed to remove {entry.name}: {e}")
    if removed and log:
        log(f"[cleanup] removed {removed} run(s) older than {ttl / 3600:.0f}h")
    return removed


def make_run_logger(path: Path, verbose: bool = False):
    """Logger appending `[timestamp] message` lines to run.log; mirrors to stderr when verbose."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    def log(msg: str) -> None:
        line = f"[{now_iso()}] {msg}"
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        if verbose:
            print(msg, file=sys.stderr)

    return log
