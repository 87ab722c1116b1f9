#!/usr/bin/env python3
"""
Configuration for the ChatGPT run worker
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
SKILL_DIR = Path(__file__).parent.parent
load_dotenv(SKILL_DIR / ".env")

# Data directories
DATA_DIR = Path(os.getenv("CHATGPT_RUNNER_HOME", str(Path.home() / ".chatgpt-runner")))
RUNS_DIR = DATA_DIR / "runs"
APPROVALS_DIR = Path(os.getenv("APPROVALS_DIR", str(DATA_DIR / "approvals")))
USER_DATA_DIR = DATA_DIR / "browser_profile"

# Finished runs older than this are removed by cleanup (seconds)
RUN_TTL = 48 * 60 * 60


def clean_browser_locks(profile_dir: Path = USER_DATA_DIR):
    """Remove stale Chrome singleton locks left by crashed/killed browser processes."""
    for name in ('SingletonLock', 'SingletonSocket', 'SingletonCookie'):
        lock = profile_dir / name
        if lock.exists() or lock.is_symlink():
            try:
                lock.unlink()
            except OSError:
                pass


# Browser settings
HEADLESS = os.getenv("HEADLESS", "false").lower() == "true"  # Default to visible for Cloudflare
DEBUG_HOST = "127.0.0.1"

# Browser args for stealth. The debugging port is picked by nodriver and
# read back from the profile's DevToolsActivePort file when reusing.
BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-first-run",
    "--no-default-browser-check",
]

# ChatGPT URL
CHATGPT_URL = "https://chatgpt.com/"
CHATGPT_ORIGIN = "https://chatgpt.com"

# Local mock pages (localhost) are only accepted in dev mode
DEV_MODE = os.getenv("CHATGPT_RUNNER_DEV", "0") == "1"

# Run defaults
DEFAULT_TIMEOUT = int(os.getenv("DEFAULT_TIMEOUT", "1800"))  # 30 min default for reasoning models
DEFAULT_MAX_ATTEMPTS = 1

# Response polling settings (seconds)
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "1.0"))
POLL_INTERVAL_MIN = 0.5
POLL_INTERVAL_MAX = 1.0
STABILITY_WINDOW = 2.0  # reply text must be unchanged this long before it is final
FAILED_GRACE = 30.0  # generation ended with no completion signal for this long -> failed

# Reply turn lookahead past the expected turn. Observed as 3 in the current UI;
# intermediate role-less turns can push the reply further out.
REPLY_LOOKAHEAD = int(os.getenv("REPLY_LOOKAHEAD", "3"))

# Long prompts match on this many leading normalized characters
PROMPT_MATCH_PREFIX = 200

# Submission timing (seconds)
PROMPT_INPUT_TIMEOUT = 30.0
CONFIRM_TIMEOUT = 12.0
RESUBMIT_CONFIRM_TIMEOUT = 8.0
SUBMIT_SETTLE_DELAY = 2.0
CONVERSATION_URL_TIMEOUT = 30.0

# Orchestration timing (seconds)
CANCEL_POLL_INTERVAL = 1.0
HEARTBEAT_INTERVAL = 30.0
ATTEMPT_RETRY_DELAY = 2.0
MAX_STALL_RELOADS = 2

# Reasoning panel reader (seconds)
THINKING_WAIT = 15.0
THINKING_EXPAND_DELAY = 1.0
THINKING_PREFIX_CHARS = 200

# Recovery settings (seconds)
HEALTH_TIMEOUT = 1.5
BROWSER_CLOSE_WAIT = 8.0
TERMINATE_WAIT = 10.0
APPROVAL_POLL_INTERVAL = 2.0
APPROVAL_TIMEOUT = float(os.getenv("APPROVAL_TIMEOUT", "600"))
FORCE_KILL = os.getenv("FORCE_KILL", "0") == "1"

# Attachment limits
MAX_UPLOAD_FILES = 10
MAX_FILE_SIZE = 20 * 1024 * 1024  # 20MB

# Input field selectors for ChatGPT
# ChatGPT uses ProseMirror editor - a contenteditable div, not a textarea
CHATGPT_INPUT_SELECTORS = [
    # ProseMirror editor (primary - ChatGPT's main input)
    'div#prompt-textarea[contenteditable="true"]',
    'div[data-testid="prompt-textarea"]',
    'div.ProseMirror[contenteditable="true"]',
    # Fallback selectors
    'textarea#prompt-textarea',
    'textarea[placeholder*="Message"]',
    'textarea[placeholder*="ChatGPT"]',
    'div[contenteditable="true"][role="textbox"]',
]

# Send button selectors
CHATGPT_SEND_SELECTORS = [
    'button[data-testid="send-button"]',
    'button[aria-label="Send prompt"]',
    'button[aria-label="Send"]',
    'button.send-button',
]

# Stop generation button (indicates response in progress)
CHATGPT_STOP_SELECTORS = [
    'button[data-testid="stop-button"]',
    'button[aria-label="Stop generating"]',
    'button[aria-label="Stop streaming"]',
    'button.stop-button',
]

# Controls that only render once a reply is finished, scoped to its turn
CHATGPT_FINISHED_SELECTORS = [
    '[data-testid="copy-turn-action-button"]',
    'button[aria-label="Copy"]',
    '[data-testid="share-turn-action-button"]',
]
