#!/usr/bin/env python3
"""
ChatGPT runner CLI - start prompt runs in the background and query them.

Each run executes in its own detached worker process (worker.py) and is
observable through its run directory, so several runs can proceed in
parallel and the CLI can exit while a reasoning model thinks.
"""

import asyncio
import argparse
import json
import re
import subprocess
import sys
import time
from pathlib import Path

from approvals import write_restart_approval
from attachments import merge_attachments, parse_prompt_attachments, resolve_attachments
from config import (
    RUNS_DIR, RUN_TTL, CHATGPT_URL, DEFAULT_TIMEOUT, DEFAULT_MAX_ATTEMPTS, POLL_INTERVAL,
)
from errors import AttachmentError, NeedsUserError, ThinkingUnavailableError
from run_state import (
    TERMINAL_STATES, cleanup_runs_root, create_run_config, load_result,
    load_run_config, load_status, log_path, make_run_logger, request_cancel,
    result_path, run_dir, save_run_config, save_status,
)
from thinking import read_thinking
from worker import check_target_url, run_once

WORKER_SCRIPT = Path(__file__).parent / "worker.py"


def _log(msg: str, verbose: bool) -> None:
    """Print debug message to stderr if verbose mode is enabled."""
    if verbose:
        print(f"[chatgpt] {msg}", file=sys.stderr)


def estimate_tokens(text: str) -> int:
    """
    Estimate token count for Claude/GPT models.
    Uses ~4 chars per token heuristic (accurate within 10-20% for English).
    """
    if not text:
        return 0
    return max(1, len(text) // 4)


def extract_code_blocks(text: str) -> list[str]:
    """Extract fenced code blocks (without the fence markers) from markdown text."""
    blocks = []
    pattern = re.compile(r'```(?:\w*)\n(.*?)```', re.DOTALL)
    for match in pattern.finditer(text):
        code = match.group(1).rstrip('\n')
        if code:
            blocks.append(code)
    return blocks


def spawn_worker(run_path: Path, verbose: bool = False) -> int:
    """Start worker.py detached from this terminal. Returns its pid."""
    cmd = [sys.executable, str(WORKER_SCRIPT), "--run-dir", str(run_path)]
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    _log(f"worker pid {proc.pid} for {run_path}", verbose)
    return proc.pid


def start_run(args) -> dict:
    prompt = args.prompt
    if prompt == "-":
        prompt = sys.stdin.read()
    prompt, referenced = parse_prompt_attachments(prompt)
    attachments = merge_attachments(referenced, resolve_attachments(args.file or []))
    if args.continue_chat:
        check_target_url(args.continue_chat, "conversation_url")

    config = create_run_config(
        prompt,
        attachments=attachments,
        base_url=CHATGPT_URL,
        conversation_url=args.continue_chat,
        timeout=args.timeout or DEFAULT_TIMEOUT,
        max_attempts=args.max_attempts,
        poll_interval=args.poll_interval,
        allow_visible=args.show_browser,
        allow_kill=args.allow_kill,
        allow_restart_other=args.allow_restart_other,
    )
    save_run_config(config)
    save_status(config, "starting", "init", "queued")
    make_run_logger(log_path(config["run_dir"]))(f"[cli] created run {config['run_id']}")
    return config


def resume_run(run_id: str, args) -> dict:
    """Re-arm a run that stopped in needs_user (or failed) and restart its worker."""
    run_path = run_dir(run_id)
    config = load_run_config(run_path)
    if args.allow_kill:
        config["allow_kill"] = True
    if args.allow_restart_other:
        config["allow_restart_other"] = True
    if args.show_browser:
        config["allow_visible"] = True
    status = load_status(run_path) or {}
    if status.get("state") == "failed":
        config["attempt"] = 0
    save_run_config(config)
    save_status(config, "starting", "init", "resumed")
    return config


def wait_for_terminal(run_id: str, timeout: float, interval: float = 2.0) -> dict:
    """Poll status.json until the run finishes or needs a human."""
    start = time.monotonic()
    status = {}
    while time.monotonic() - start < timeout:
        status = load_status(run_dir(run_id)) or {}
        if status.get("state") in TERMINAL_STATES or status.get("state") == "needs_user":
            return status
        time.sleep(interval)
    return status


def build_result(run_id: str) -> dict:
    run_path = run_dir(run_id)
    status = load_status(run_path) or {}
    result = load_result(run_path) or {}
    content = result.get("content")
    if content is None and result_path(run_path).exists():
        content = result_path(run_path).read_text(encoding="utf-8")
    out = {
        "success": result.get("state") == "completed",
        "run_id": run_id,
        "state": status.get("state") or result.get("state"),
        "conversation_url": result.get("conversation_url") or status.get("conversation_url"),
    }
    if content is not None:
        out["response"] = content
        out["tokens"] = {"response": estimate_tokens(content)}
    if result.get("error"):
        out["error"] = result["error"]
    elif not out["success"]:
        out["error"] = status.get("message") or "Run has not completed"
    if status.get("needs"):
        out["needs"] = status["needs"]
    return out


def print_status(status: dict, as_json: bool) -> None:
    if as_json:
        print(json.dumps(status, indent=2))
        return
    print(f"Run:     {status.get('run_id')}")
    print(f"State:   {status.get('state')}  (stage: {status.get('stage')})")
    print(f"Message: {status.get('message')}")
    if status.get("conversation_url"):
        print(f"Chat:    {status['conversation_url']}")
    if status.get("needs"):
        print(f"Needs:   {status['needs']['type']} - {status['needs']['details']}")
    print(f"Updated: {status.get('updated_at')}")


def print_result(result: dict, args) -> None:
    if args.json:
        if args.code_only and result.get("success"):
            blocks = extract_code_blocks(result.get("response", ""))
            result["code_blocks"] = blocks
        print(json.dumps(result, indent=2))
    elif result.get("success"):
        if args.code_only:
            blocks = extract_code_blocks(result["response"])
            if blocks:
                print("\n\n".join(blocks))
            else:
                print("(no code blocks found in response)", file=sys.stderr)
        else:
            print(result["response"])
    else:
        print(f"Error: {result.get('error')}", file=sys.stderr)
    if not result.get("success"):
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Run prompts against ChatGPT in background browser workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start a run and wait for the reply
  chatgpt-runner --prompt "What is the capital of France?" --wait

  # Start in the background, check later
  chatgpt-runner --prompt "Long analysis" --timeout 3600
  chatgpt-runner --status RUN_ID
  chatgpt-runner --result RUN_ID --json
  chatgpt-runner --thinking RUN_ID              # reasoning output so far

  # Continue a conversation, with files
  chatgpt-runner --continue-chat https://chatgpt.com/c/ID --prompt "Follow-up" --file notes.md

  # Runs waiting on a human
  chatgpt-runner --resume RUN_ID --show-browser     # after logging in
  chatgpt-runner --resume RUN_ID --allow-kill       # allow restarting a stuck browser
  chatgpt-runner --approve-restart                  # approve a pending restart

  # Housekeeping
  chatgpt-runner --cancel RUN_ID
  chatgpt-runner --cleanup
"""
    )

    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument("--prompt", "-p",
                            help="Prompt to send ('-' reads it from stdin)")
    mode_group.add_argument("--status", metavar="RUN_ID",
                            help="Show the current status of a run")
    mode_group.add_argument("--result", metavar="RUN_ID",
                            help="Print the reply of a finished run")
    mode_group.add_argument("--thinking", metavar="RUN_ID",
                            help="Print new reasoning output of a run since the last call")
    mode_group.add_argument("--cancel", metavar="RUN_ID",
                            help="Ask a running worker to stop")
    mode_group.add_argument("--resume", metavar="RUN_ID",
                            help="Restart the worker of a run that needs a human or failed")
    mode_group.add_argument("--approve-restart", action="store_true",
                            help="Approve a pending browser restart requested by a run")
    mode_group.add_argument("--cleanup", action="store_true",
                            help=f"Remove finished runs older than {RUN_TTL // 3600}h")

    parser.add_argument("--file", action="append", metavar="PATH",
                        help="Attach file(s) to the prompt (can be used multiple times)")
    parser.add_argument("--continue-chat", metavar="URL",
                        help="Conversation URL to continue instead of starting a new chat")
    parser.add_argument("--timeout", "-t", type=int,
                        help=f"Reply timeout in seconds (default: {DEFAULT_TIMEOUT})")
    parser.add_argument("--poll-interval", type=float, default=POLL_INTERVAL,
                        help="Completion poll interval in seconds (clamped to 0.5-1.0)")
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS,
                        help=f"Attempts before giving up (default: {DEFAULT_MAX_ATTEMPTS})")
    parser.add_argument("--allow-kill", action="store_true",
                        help="Allow restarting the automation browser if it is stuck")
    parser.add_argument("--allow-restart-other", action="store_true",
                        help="Allow restarting other browsers on this machine (still needs --approve-restart)")
    parser.add_argument("--show-browser", action="store_true",
                        help="Show browser window (needed for login and challenges)")
    parser.add_argument("--wait", action="store_true",
                        help="Block until the run finishes and print the reply")
    parser.add_argument("--foreground", action="store_true",
                        help="Run the worker in this process instead of detaching it")
    parser.add_argument("--json", action="store_true",
                        help="Output full JSON")
    parser.add_argument("--code-only", action="store_true",
                        help="Extract only fenced code blocks from the reply")
    parser.add_argument("--full", action="store_true",
                        help="With --thinking, print the whole reasoning output")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging to stderr")

    args = parser.parse_args()

    if (args.file or args.continue_chat) and not args.prompt:
        parser.error("--file/--continue-chat requires --prompt")
    if args.max_attempts < 1:
        parser.error("--max-attempts must be at least 1")

    # ── Status / result / cancel ──────────────────────────────────
    if args.status:
        status = load_status(run_dir(args.status))
        if status is None:
            print(f"Error: unknown run {args.status}", file=sys.stderr)
            sys.exit(1)
        print_status(status, args.json)
        return

    if args.result:
        print_result(build_result(args.result), args)
        return

    if args.thinking:
        run_path = run_dir(args.thinking)
        if not run_path.is_dir():
            print(f"Error: unknown run {args.thinking}", file=sys.stderr)
            sys.exit(1)
        log = make_run_logger(log_path(run_path), args.verbose)
        try:
            text = asyncio.run(read_thinking(run_path, full=args.full, log=log))
        except (ThinkingUnavailableError, NeedsUserError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if args.json:
            print(json.dumps({"run_id": args.thinking, "full": args.full, "thinking": text}, indent=2))
        elif text:
            print(text)
        return

    if args.cancel:
        run_path = run_dir(args.cancel)
        if not run_path.is_dir():
            print(f"Error: unknown run {args.cancel}", file=sys.stderr)
            sys.exit(1)
        request_cancel(run_path)
        print(json.dumps({"run_id": args.cancel, "cancel_requested": True}) if args.json
              else f"Cancel requested for {args.cancel}")
        return

    if args.approve_restart:
        write_restart_approval()
        print("Browser restart approved")
        return

    if args.cleanup:
        removed = cleanup_runs_root(RUNS_DIR, RUN_TTL, log=lambda msg: _log(msg, args.verbose))
        print(json.dumps({"removed": removed}) if args.json else f"Removed {removed} run(s)")
        return

    # ── Start or resume a run ─────────────────────────────────────
    try:
        config = resume_run(args.resume, args) if args.resume else start_run(args)
    except (AttachmentError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    run_id = config["run_id"]

    if args.foreground:
        log = make_run_logger(log_path(config["run_dir"]), args.verbose)
        asyncio.run(run_once(config, log=log))
        print_result(build_result(run_id), args)
        return

    spawn_worker(Path(config["run_dir"]), args.verbose)
    if not args.wait:
        if args.json:
            print(json.dumps({"run_id": run_id, "run_dir": config["run_dir"], "state": "starting"}, indent=2))
        else:
            print(run_id)
        return

    status = wait_for_terminal(run_id, config["timeout"] * max(1, config["max_attempts"]) + 120)
    if status.get("state") == "needs_user":
        print_status(status, args.json)
        sys.exit(1)
    print_result(build_result(run_id), args)


if __name__ == "__main__":
    main()
