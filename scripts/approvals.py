#!/usr/bin/env python3
"""
Restart approval record shared by all runs on this machine.

A run that wants to restart a browser it does not own waits for a human
to approve (`chatgpt.py --approve-restart`). The first run to take the
lock after approval does the restart and writes a done marker; the
others see the marker and carry on without restarting again.
"""

import asyncio
import json
import os
import time
from pathlib import Path

import psutil

from config import APPROVALS_DIR, APPROVAL_POLL_INTERVAL, APPROVAL_TIMEOUT
from run_state import read_json, write_json_atomic

APPROVAL_FILE = "browser-restart.json"
DONE_FILE = "browser-restart.done"
RESTART_LOCK = "browser-restart.lock"


def approvals_dir() -> Path:
    APPROVALS_DIR.mkdir(parents=True, exist_ok=True)
    return APPROVALS_DIR


def write_restart_approval(directory: Path | None = None, approved_at: float | None = None) -> None:
    directory = Path(directory or approvals_dir())
    write_json_atomic(directory / APPROVAL_FILE, {"approved_at": approved_at or time.time()})


def read_restart_approval(directory: Path | None = None) -> dict | None:
    return read_json(Path(directory or approvals_dir()) / APPROVAL_FILE)


def write_restart_done(directory: Path | None = None, approved_at: float | None = None) -> None:
    directory = Path(directory or approvals_dir())
    write_json_atomic(directory / DONE_FILE, {"done_at": time.time(), "approved_at": approved_at})


def read_restart_done(directory: Path | None = None) -> dict | None:
    return read_json(Path(directory or approvals_dir()) / DONE_FILE)


def clear_restart_files(directory: Path | None = None, preserve_done: bool = False) -> None:
    directory = Path(directory or approvals_dir())
    names = [APPROVAL_FILE, RESTART_LOCK]
    if not preserve_done:
        names.append(DONE_FILE)
    for name in names:
        try:
            (directory / name).unlink()
        except FileNotFoundError:
            pass


def try_acquire_lock(lock_path: Path) -> bool:
    """Create `lock_path` exclusively; False if another run already holds it."""
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as f:
        json.dump({"pid": os.getpid(), "created_at": time.time()}, f)
    return True


def release_restart_lock(directory: Path | None = None) -> None:
    try:
        (Path(directory or approvals_dir()) / RESTART_LOCK).unlink()
    except FileNotFoundError:
        pass


def lock_is_stale(lock_path: Path, approved_at: float) -> bool:
    """True when the lock holder died or the lock predates `approved_at`."""
    holder = read_json(lock_path)
    if not isinstance(holder, dict):
        return False
    pid = holder.get("pid")
    if pid is not None and not psutil.pid_exists(pid):
        return True
    created_at = holder.get("created_at")
    return created_at is not None and created_at < approved_at


def _is_fresh(done: dict, wait_since: float) -> bool:
    if done.get("done_at", 0) >= wait_since:
        return True
    approved_at = done.get("approved_at")
    return approved_at is not None and approved_at >= wait_since


async def wait_for_restart_approval(
    run_id: str,
    directory: Path | None = None,
    on_status=None,
    is_canceled=None,
    poll_interval: float = APPROVAL_POLL_INTERVAL,
    timeout: float = APPROVAL_TIMEOUT,
    clock=time.time,
    sleep=asyncio.sleep,
    log=None,
) -> dict:
    """
    Block until a restart is approved, done by someone else, canceled,
    or the wait times out.

    Returns:
        {"action": "restart" | "done" | "canceled" | "timeout", ...}
    """
    directory = Path(directory or approvals_dir())
    wait_since = clock()
    if on_status:
        on_status(f"waiting for approval to restart the browser (run {run_id})")
    if log:
        log(f"[restart] waiting for approval in {directory}")

    while clock() - wait_since < timeout:
        if is_canceled and is_canceled():
            return {"action": "canceled"}

        done = read_restart_done(directory)
        if done and _is_fresh(done, wait_since):
            return {"action": "done", "done_at": done.get("done_at")}

        approval = read_restart_approval(directory)
        if approval and approval.get("approved_at", 0) >= wait_since:
            lock = directory / RESTART_LOCK
            if try_acquire_lock(lock):
                return {"action": "restart", "approved_at": approval["approved_at"]}
            if lock_is_stale(lock, approval["approved_at"]):
                if log:
                    log(f"[restart] removing stale lock {lock}")
                release_restart_lock(directory)
                continue
            # another run is restarting; wait for its done marker

        await sleep(poll_interval)
    return {"action": "timeout"}


def mark_restart_done(directory: Path | None = None, approved_at: float | None = None) -> None:
    directory = Path(directory or approvals_dir())
    write_restart_done(directory, approved_at)
    clear_restart_files(directory, preserve_done=True)
