#!/usr/bin/env python3
"""
Run worker: drives one prompt run to a terminal state.

Started detached by chatgpt.py as `worker.py --run-dir DIR`. Everything
it does is visible through the run directory (status.json, run.log,
result.json); the process itself prints nothing.

States: starting -> running -> needs_user | completed | failed | canceled.
The running stage tag (launch, login, navigate, submit, waiting, extract,
recovery, cleanup) is informational only.
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path
from urllib.parse import urlparse

import page_scripts
from attachments import inline_overflow_attachments, upload_attachments
from completion import is_generating, wait_for_completion, wait_for_idle
from config import (
    CHATGPT_ORIGIN, DEV_MODE, PROMPT_INPUT_TIMEOUT, CONFIRM_TIMEOUT,
    RESUBMIT_CONFIRM_TIMEOUT, CONVERSATION_URL_TIMEOUT, CANCEL_POLL_INTERVAL,
    HEARTBEAT_INTERVAL, ATTEMPT_RETRY_DELAY, MAX_STALL_RELOADS, USER_DATA_DIR,
)
from errors import (
    AccessBlockedError, BrowserUnresponsiveError, ConversationBusyError,
    ConversationUrlMissingError, NeedsUserError, ResponseFailedError,
    ResponseStalledError, RunCanceledError, is_detached_frame_error,
)
from page import launch_browser, minimize_window, open_page, release_browser
from recovery import attempt_recovery
from run_state import (
    is_canceled, load_run_config, log_path, make_run_logger, now_iso,
    save_result, save_run_config, save_status,
)
from submission import submit_and_confirm, wait_for_prompt_input
from turns import build_match_candidates, find_turn_for_content, prompt_already_submitted

LOCAL_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
CONVERSATION_PATHS = ("/c/", "/chat/", "/conversation/")


def is_local_url(url: str) -> bool:
    return (urlparse(url).hostname or "").lower() in LOCAL_HOSTS


def is_conversation_url(url: str | None) -> bool:
    return bool(url) and any(part in url for part in CONVERSATION_PATHS)


def check_target_url(url: str, label: str) -> None:
    """Only chatgpt.com is driven; localhost mocks are allowed in dev mode."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid {label} URL: {url}")
    if DEV_MODE and is_local_url(url):
        return
    if f"{parsed.scheme}://{parsed.netloc}" != CHATGPT_ORIGIN:
        raise ValueError(f"Unsupported {label} URL ({url}). Only {CHATGPT_ORIGIN}/ is supported.")


class RunWorker:
    """Attempt loop for a single run config.

    Browser, page, upload and recovery collaborators are injectable so
    the loop can be driven against an in-memory page.
    """

    def __init__(
        self,
        config: dict,
        launcher=launch_browser,
        page_opener=open_page,
        uploader=upload_attachments,
        recover=attempt_recovery,
        minimizer=minimize_window,
        releaser=release_browser,
        log=None,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.run_path = Path(config["run_dir"])
        self.launcher = launcher
        self.page_opener = page_opener
        self.uploader = uploader
        self.recover = recover
        self.minimizer = minimizer
        self.releaser = releaser
        self.log = log or make_run_logger(log_path(self.run_path))
        self.clock = clock
        self.sleep = sleep
        self.anomalies = set()
        self.recovery_retries = 0
        self.stage = "init"
        self.message = ""
        self.candidates = build_match_candidates(config["prompt"])

    # ── Persistence helpers ───────────────────────────────────────────

    def save(self) -> None:
        save_run_config(self.config)

    def status(self, state: str, stage: str, message: str, needs: dict | None = None) -> None:
        self.stage = stage
        self.message = message
        save_status(self.config, state, stage, message, needs)

    def canceled(self) -> bool:
        return is_canceled(self.run_path)

    def _finalize_failed(self, message: str) -> dict:
        self.config["last_error"] = message
        self.config["completed_at"] = now_iso()
        self.save()
        save_result(self.config, "failed", error=message)
        self.status("failed", "cleanup", message)
        self.log(f"[worker] failed: {message}")
        return {"state": "failed", "error": message}

    def _finalize_canceled(self, message: str) -> dict:
        self.config["completed_at"] = now_iso()
        self.save()
        save_result(self.config, "canceled", error=message)
        self.status("canceled", "cleanup", message)
        self.log(f"[worker] canceled: {message}")
        return {"state": "canceled"}

    def _needs_user(self, error: NeedsUserError) -> dict:
        self.status("needs_user", self.stage, error.detail,
                    needs={"type": error.reason, "details": error.detail})
        self.log(f"[worker] needs user ({error.reason}): {error.detail}")
        return {"state": "needs_user", "reason": error.reason, "detail": error.detail}

    def _target_url(self) -> str:
        return self.config.get("conversation_url") or self.config["base_url"]

    # ── Attempt loop ──────────────────────────────────────────────────

    async def run(self) -> dict:
        config = self.config
        self.log(f"[worker] start run {config['run_id']}")
        config["started_at"] = config.get("started_at") or now_iso()
        self.save()
        self.status("starting", "init", "worker starting")

        if self.canceled():
            return self._finalize_canceled("Canceled before start")
        try:
            check_target_url(config["base_url"], "base_url")
            if config.get("conversation_url"):
                check_target_url(config["conversation_url"], "conversation_url")
        except ValueError as e:
            return self._finalize_failed(str(e))

        attempt = max(1, config.get("attempt") or 1)
        max_attempts = max(1, config.get("max_attempts") or 1)
        while attempt <= max_attempts:
            config["attempt"] = attempt
            self.save()
            self.status("running", "launch", f"attempt {attempt} launching browser")
            try:
                outcome = await self._run_attempt()
                if outcome == "retry":
                    self.recovery_retries += 1
                    if self.recovery_retries > 1:
                        raise BrowserUnresponsiveError("Recovery retry limit exceeded")
                    self.log(f"[worker] retrying attempt {attempt} after recovery")
                    continue
                return outcome
            except RunCanceledError as e:
                return self._finalize_canceled(str(e))
            except NeedsUserError as e:
                return self._needs_user(e)
            except Exception as e:
                message = str(e) or type(e).__name__
                self.log(f"[worker] attempt {attempt} error: {message}")
                config["last_error"] = message
                self.save()
                self.status("running", "cleanup", f"attempt {attempt} failed: {message}")
                if attempt >= max_attempts:
                    return self._finalize_failed(message)
                await self.sleep(ATTEMPT_RETRY_DELAY)
                attempt += 1
        return self._finalize_failed(config.get("last_error") or "No attempts made")

    async def _run_attempt(self) -> dict | str:
        config = self.config
        session = None
        page = None
        try:
            session = await self.launcher(
                Path(config.get("profile_dir") or USER_DATA_DIR),
                visible=config.get("allow_visible", False),
                log=self.log,
            )
            config["browser_pid"] = session.get("pid")
            config["debug_port"] = session.get("port")
            self.save()
            page = await self.page_opener(session["browser"], self._target_url())
            if not config.get("allow_visible"):
                await self._minimize(page)

            for page_attempt in range(2):
                try:
                    return await self._drive(page)
                except Exception as e:
                    if not is_detached_frame_error(e) or page_attempt >= 1:
                        raise
                    self.log(f"[worker] detached frame detected; reopening page ({page_attempt + 1}/2)")
                    page = await self.page_opener(session["browser"], self._target_url(), fresh=True)
            raise BrowserUnresponsiveError("Detached frame retry limit exceeded")
        except (NeedsUserError, RunCanceledError):
            raise
        except Exception as e:
            if session is None or page is None:
                raise
            if self.canceled():
                raise RunCanceledError("Canceled during run") from e
            result = await self.recover(
                e, session, page, config,
                second_pass=self.recovery_retries > 0,
                save_status=lambda state, stage, message, needs=None: self.status(state, stage, message, needs),
                is_canceled=self.canceled,
                log=self.log,
                sleep=self.sleep,
            )
            if result in ("recovered", "restarted"):
                return "retry"
            raise
        finally:
            if session is not None:
                try:
                    await self.releaser(session, self.log)
                except Exception as e:
                    self.log(f"[worker] browser release failed: {e}")

    async def _minimize(self, page) -> None:
        """Keep the automation window out of the way; failure only degrades focus."""
        try:
            await self.minimizer(page)
            self.config["focus"] = {"state": "hidden"}
        except Exception as e:
            self.config["focus"] = {"state": "visible", "reason": str(e) or type(e).__name__}
            self.log(f"[focus] could not minimize browser window: {e}")
        self.save()

    # ── One pass over the page ────────────────────────────────────────

    async def _drive(self, page) -> dict:
        config = self.config
        target = self._target_url()
        local_mock = DEV_MODE and is_local_url(target)

        self.status("running", "login", "navigating to ChatGPT")
        await page.goto(target)
        if local_mock:
            self.log("[dev] local mock detected; skipping access checks")
        else:
            await self._ensure_ready(page)

        self.status("running", "navigate", "waiting for prompt input")
        await wait_for_prompt_input(page, PROMPT_INPUT_TIMEOUT, self.clock, self.sleep)

        expected_reply_turn = None
        if await prompt_already_submitted(page, config["prompt"]):
            user_turn = await find_turn_for_content(page, self.candidates)
            if user_turn:
                expected_reply_turn = user_turn + 1
                self.log(f"[prompt] existing prompt at turn {user_turn}; expecting reply at {expected_reply_turn}")
            else:
                self.log("[prompt] existing prompt detected; turn number not found")
        else:
            expected_reply_turn = await self._submit(page, local_mock)

        self.status("running", "waiting", "awaiting response")
        completion = await self._wait_with_cancel(page, expected_reply_turn)

        if is_conversation_url(completion["conversation_url"]):
            config["conversation_url"] = completion["conversation_url"]
        config["last_reply_index"] = completion["reply_index"]
        config["completed_at"] = now_iso()
        self.save()

        self.status("running", "extract", "writing result")
        save_result(config, "completed", content=completion["content"])
        self.status("completed", "cleanup", "completed")
        self.log(f"[worker] completed run {config['run_id']}")
        return {
            "state": "completed",
            "content": completion["content"],
            "conversation_url": config.get("conversation_url"),
        }

    async def _ensure_ready(self, page) -> None:
        state = await page.evaluate(page_scripts.ACCESS_STATE) or {}
        if state.get("challenge"):
            raise AccessBlockedError(
                "challenge",
                "Anti-automation challenge detected; solve it with --show-browser, then --resume",
            )
        if state.get("login"):
            raise AccessBlockedError(
                "login",
                "Login required; log in to ChatGPT with --show-browser, then --resume",
            )

    async def _submit(self, page, local_mock: bool) -> int:
        """Submit the prompt; returns the turn number the reply is expected at."""
        config = self.config
        if config.get("conversation_url"):
            if await is_generating(page):
                raise ConversationBusyError(
                    "Previous response still generating. Wait for completion or cancel before sending a follow-up."
                )
        else:
            await wait_for_idle(page, config["timeout"], config["poll_interval"], self.clock, self.sleep)

        attachments = config.get("attachments") or []
        if attachments:
            self.status("running", "submit", f"uploading {len(attachments)} file(s)")
            overflow = await self.uploader(page, attachments, self.log)
            self.log(f"[attachments] uploaded {len(attachments) - len(overflow)} file(s)"
                     + (f", inlining {len(overflow)}" if overflow else ""))
            # rebuilt from the original each time so retries and resumes inline once
            prompt = config.get("original_prompt") or config["prompt"]
            if overflow:
                prompt = inline_overflow_attachments(prompt, overflow)
            if prompt != config["prompt"]:
                config["prompt"] = prompt
                self.candidates = build_match_candidates(prompt)
                self.save()
            await wait_for_prompt_input(page, 10.0, self.clock, self.sleep)

        self.status("running", "submit", "submitting prompt")
        user_turn = await submit_and_confirm(
            page, config["prompt"], self.candidates, self.log, CONFIRM_TIMEOUT, self.clock, self.sleep,
        )
        await self._capture_conversation_url(page, allow_missing=local_mock)
        return user_turn + 1

    async def _capture_conversation_url(self, page, allow_missing: bool = False) -> None:
        if self.config.get("conversation_url"):
            return
        start = self.clock()
        while self.clock() - start < CONVERSATION_URL_TIMEOUT:
            url = await page.current_url()
            if is_conversation_url(url):
                self.config["conversation_url"] = url
                self.save()
                self.log(f"[prompt] conversation URL detected: {url}")
                return
            await self.sleep(0.25)
        if allow_missing:
            self.log("[prompt] conversation URL not detected (local mock)")
            return
        raise ConversationUrlMissingError("Conversation URL not detected after prompt submission")

    async def _resubmit(self, page) -> int:
        self.status("running", "submit", "resubmitting prompt")
        await wait_for_prompt_input(page, PROMPT_INPUT_TIMEOUT, self.clock, self.sleep)
        user_turn = await submit_and_confirm(
            page, self.config["prompt"], self.candidates, self.log,
            RESUBMIT_CONFIRM_TIMEOUT, self.clock, self.sleep,
        )
        url = await page.current_url()
        if is_conversation_url(url):
            self.config["conversation_url"] = url
            self.save()
        return user_turn + 1

    # ── Waiting with cancellation ─────────────────────────────────────

    async def _watch_cancel(self) -> None:
        while True:
            if self.canceled():
                raise RunCanceledError("Canceled by user")
            await self.sleep(CANCEL_POLL_INTERVAL)

    async def _heartbeat(self) -> None:
        """Refresh status.json without changing the stage some other step set."""
        while True:
            await self.sleep(HEARTBEAT_INTERVAL)
            self.status("running", self.stage, self.message)

    async def _race_cancel(self, coro):
        """Run `coro` until it finishes or the cancel marker shows up."""
        waiter = asyncio.create_task(coro)
        watcher = asyncio.create_task(self._watch_cancel())
        try:
            done, _ = await asyncio.wait({waiter, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if watcher in done:
                watcher.result()
            return waiter.result()
        finally:
            for task in (waiter, watcher):
                if not task.done():
                    task.cancel()

    async def _wait_with_cancel(self, page, expected_reply_turn: int | None) -> dict:
        config = self.config
        heartbeat = asyncio.create_task(self._heartbeat())
        resubmitted = False
        stall_reloads = 0
        try:
            while True:
                try:
                    return await self._race_cancel(wait_for_completion(
                        page,
                        timeout=config["timeout"],
                        poll_interval=config["poll_interval"],
                        expected_reply_turn=expected_reply_turn,
                        log=self.log,
                        anomalies=self.anomalies,
                        clock=self.clock,
                        sleep=self.sleep,
                    ))
                except ResponseStalledError:
                    if stall_reloads >= MAX_STALL_RELOADS:
                        raise
                    stall_reloads += 1
                    self.status("running", "recovery", "refreshing after stalled response")
                    self.log(f"[worker] response stalled; reloading ({stall_reloads}/{MAX_STALL_RELOADS})")
                    await page.reload()
                except ResponseFailedError:
                    if resubmitted:
                        raise
                    resubmitted = True
                    self.log("[worker] response failed; resubmitting once")
                    expected_reply_turn = await self._race_cancel(self._resubmit(page))
                    self.status("running", "waiting", "awaiting response")
        finally:
            heartbeat.cancel()


async def run_once(config: dict, **kwargs) -> dict:
    """Drive `config` to a terminal outcome: completed, needs_user, failed or canceled."""
    return await RunWorker(config, **kwargs).run()


def main():
    parser = argparse.ArgumentParser(description="Run worker for a single ChatGPT prompt run")
    parser.add_argument("--run-dir", required=True, help="Run directory holding run.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="Mirror the run log to stderr")
    args = parser.parse_args()

    run_path = Path(args.run_dir)
    config = load_run_config(run_path)
    log = make_run_logger(log_path(run_path), args.verbose)
    outcome = asyncio.run(run_once(config, log=log))
    if outcome["state"] == "failed":
        sys.exit(1)


if __name__ == "__main__":
    main()
