#!/usr/bin/env python3
"""
Recovery controller: decide whether a failed attempt left the browser
usable, and restore it when it did not.

Order is fixed: health check -> soft reload -> hard restart. The hard
restart only happens when the debug endpoint itself is unreachable,
only with --allow-kill, and never touches another browser on the
machine without --allow-restart-other plus a human approval.
"""

import asyncio
import time
from pathlib import Path

import psutil
from nodriver import cdp

import page_scripts
from approvals import mark_restart_done, release_restart_lock, wait_for_restart_approval
from config import (
    HEALTH_TIMEOUT, BROWSER_CLOSE_WAIT, TERMINATE_WAIT, FORCE_KILL, USER_DATA_DIR,
)
from errors import (
    AuthorizationRequiredError, BrowserUnresponsiveError, NeedsUserError,
    RunCanceledError, should_skip_recovery,
)
from page import debug_endpoint_alive

BROWSER_PROCESS_NAMES = ("chrome", "google chrome", "chromium", "chromium-browser", "msedge", "brave")


def _quiet(msg: str) -> None:
    pass


# ── Health checks ─────────────────────────────────────────────────────

async def check_debug_endpoint(port: int | None, timeout: float = HEALTH_TIMEOUT) -> dict:
    if not port:
        return {"ok": True}
    if await debug_endpoint_alive(port, timeout):
        return {"ok": True}
    return {"ok": False, "reason": f"debug-endpoint: no response on port {port}"}


async def check_browser_runtime(browser, timeout: float = HEALTH_TIMEOUT) -> dict:
    try:
        await asyncio.wait_for(browser.connection.send(cdp.target.get_targets()), timeout)
        return {"ok": True}
    except Exception as e:
        return {"ok": False, "reason": f"runtime: {e or type(e).__name__}"}


async def check_page_responsive(page, timeout: float = HEALTH_TIMEOUT) -> dict:
    try:
        await asyncio.wait_for(page.evaluate(page_scripts.PING), timeout)
        return {"ok": True}
    except Exception as e:
        return {"ok": False, "reason": f"page: {e or type(e).__name__}"}


async def health_check(session: dict, page) -> dict:
    """Endpoint, runtime and page checks, in that order."""
    endpoint = await check_debug_endpoint(session.get("port"))
    runtime = await check_browser_runtime(session["browser"])
    page_health = await check_page_responsive(page)
    reasons = [c["reason"] for c in (endpoint, runtime, page_health) if not c["ok"]]
    return {
        "endpoint": endpoint["ok"],
        "runtime": runtime["ok"],
        "page": page_health["ok"],
        "reasons": reasons,
    }


async def soft_reload(page, log=_quiet) -> bool:
    try:
        await page.evaluate(page_scripts.STOP_LOADING)
        await page.reload()
        log("[recovery] reload ok")
        return True
    except Exception as e:
        log(f"[recovery] reload failed: {e}")
        return False


# ── Processes ─────────────────────────────────────────────────────────

def is_process_alive(pid: int) -> bool:
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


async def wait_for_pid_exit(pid: int, timeout: float, clock=time.monotonic, sleep=asyncio.sleep) -> bool:
    start = clock()
    while clock() - start < timeout:
        if not is_process_alive(pid):
            return True
        await sleep(0.25)
    return not is_process_alive(pid)


async def request_browser_shutdown(browser, log=_quiet) -> bool:
    """Ask the browser to close itself over CDP (Browser.close)."""
    try:
        await browser.connection.send(cdp.browser.close())
        return True
    except Exception as e:
        log(f"[recovery] Browser.close failed: {e}")
        return False


async def terminate_pid(
    pid: int,
    timeout: float = TERMINATE_WAIT,
    force_kill: bool = FORCE_KILL,
    log=_quiet,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> bool:
    """SIGTERM and wait; SIGKILL only when `force_kill`. True once the process is gone."""
    if not is_process_alive(pid):
        return True
    try:
        psutil.Process(pid).terminate()
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied as e:
        log(f"[recovery] terminate pid {pid} denied: {e}")
    if await wait_for_pid_exit(pid, timeout, clock, sleep):
        return True
    if not force_kill:
        log(f"[recovery] pid {pid} still alive; skipping kill (set FORCE_KILL=1 to enable)")
        return False
    log(f"[recovery] force killing pid {pid}")
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied as e:
        log(f"[recovery] kill pid {pid} denied: {e}")
    return await wait_for_pid_exit(pid, 2.0, clock, sleep)


def list_other_browser_pids(profile_dir: Path = USER_DATA_DIR) -> list[int]:
    """Top-level browser processes that are not running on our profile."""
    ours = f"--user-data-dir={Path(profile_dir).resolve()}"
    pids = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            name = (proc.info["name"] or "").lower()
            cmdline = proc.info["cmdline"] or []
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if not any(name.startswith(n) for n in BROWSER_PROCESS_NAMES):
            continue
        if any(arg.startswith("--type=") for arg in cmdline):
            continue
        if ours in cmdline:
            continue
        pids.append(proc.info["pid"])
    return pids


# ── Orchestrated recovery ─────────────────────────────────────────────

async def _stop_own_browser(session: dict, endpoint_ok: bool, log, clock, sleep) -> bool:
    pid = session.get("pid")
    if not pid:
        return True
    if endpoint_ok and await request_browser_shutdown(session["browser"], log):
        if await wait_for_pid_exit(pid, BROWSER_CLOSE_WAIT, clock, sleep):
            log(f"[recovery] browser pid {pid} exited after Browser.close")
            return True
        log(f"[recovery] browser pid {pid} still alive after Browser.close")
    log(f"[recovery] terminating browser pid {pid}")
    return await terminate_pid(pid, TERMINATE_WAIT, FORCE_KILL, log, clock, sleep)


async def attempt_recovery(
    error: BaseException,
    session: dict,
    page,
    config: dict,
    second_pass: bool = False,
    save_status=None,
    is_canceled=None,
    log=_quiet,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> str:
    """
    Try to leave the browser usable after `error`.

    Returns:
        "skipped"    error says nothing about browser health
        "healthy"    browser and page respond; the error was elsewhere
        "recovered"  a soft reload brought the page back
        "restarted"  the browser was shut down (or restarted by another run)

    Raises:
        AuthorizationRequiredError: a restart is needed but not allowed.
        NeedsUserError: waiting for restart approval timed out.
        RunCanceledError: canceled while waiting for approval.
        BrowserUnresponsiveError: nothing brought the browser back.
    """
    def status(message: str, needs: dict | None = None, state: str = "running") -> None:
        if save_status:
            save_status(state, "recovery", message, needs)

    if should_skip_recovery(error):
        log(f"[recovery] skipping for non-browser error: {type(error).__name__}")
        return "skipped"

    status("checking browser health")
    log(f"[recovery] error: {error}")
    health = await health_check(session, page)
    log(f"[recovery] endpoint={health['endpoint']} runtime={health['runtime']} page={health['page']}")

    if health["endpoint"] and health["page"]:
        if not health["runtime"]:
            log("[recovery] runtime check failed but page is responsive; skipping restart")
        return "healthy"

    if health["endpoint"]:
        await soft_reload(page, log)
        after = await check_page_responsive(page)
        log(f"[recovery] post-reload page={after['ok']}")
        if after["ok"]:
            return "recovered"
        raise BrowserUnresponsiveError(
            "Page unresponsive after reload while the browser endpoint is up; "
            + "; ".join(health["reasons"])
        )

    if not config.get("allow_kill"):
        detail = "Browser debug endpoint unreachable; resume with --allow-kill to restart it"
        status(detail, {"type": "authorization-required", "details": detail}, state="needs_user")
        raise AuthorizationRequiredError(detail)

    approval = None
    others = list_other_browser_pids(Path(config.get("profile_dir") or USER_DATA_DIR)) if second_pass else []
    if others and config.get("allow_restart_other"):
        detail = (f"Browser still unresponsive after a restart and {len(others)} other browser "
                  f"process(es) are running; approve with --approve-restart")
        status(detail, {"type": "restart-approval", "details": detail}, state="needs_user")
        approval = await wait_for_restart_approval(
            config["run_id"],
            on_status=lambda msg: status(msg, {"type": "restart-approval", "details": msg}, state="needs_user"),
            is_canceled=is_canceled,
            log=log,
            sleep=sleep,
        )
        if approval["action"] == "canceled":
            raise RunCanceledError("Canceled while waiting for restart approval")
        if approval["action"] == "timeout":
            raise NeedsUserError("restart-approval", "Restart approval was not given in time")
        if approval["action"] == "done":
            log("[recovery] restart already completed by another run")
            return "restarted"

    holds_lock = bool(approval and approval["action"] == "restart")
    try:
        status("browser unresponsive; restarting")
        if not await _stop_own_browser(session, health["endpoint"], log, clock, sleep):
            raise BrowserUnresponsiveError(
                f"Browser pid {session.get('pid')} did not exit; set FORCE_KILL=1 to allow a forced kill"
            )

        if holds_lock:
            for pid in others:
                log(f"[recovery] terminating other browser pid {pid}")
                await terminate_pid(pid, BROWSER_CLOSE_WAIT, FORCE_KILL, log, clock, sleep)
            mark_restart_done(approved_at=approval.get("approved_at"))
            holds_lock = False
    finally:
        if holds_lock:
            log("[recovery] restart failed; releasing restart lock")
            release_restart_lock()

    log("[recovery] browser stopped; next attempt relaunches it")
    return "restarted"
