#!/usr/bin/env python3
"""
Browser plumbing: launch or reuse the automation Chrome, open a tab,
and wrap it in a narrow page handle.

The interaction engine only ever talks to a page handle:

    await page.goto(url)
    await page.evaluate(script, args)   # page_scripts.* sources
    await page.click(selector)
    await page.current_url()
    await page.reload()
    await page.type_text(text)
    await page.press_key(key, shift=False)
    await page.upload_files(paths)
    await page.close()

NodriverPage implements it over CDP; tests use an in-memory fake.
"""

import asyncio
import json
import sys
from pathlib import Path
from urllib.parse import urlparse

import httpx
import nodriver as uc
import psutil
from nodriver import cdp

import page_scripts
from config import (
    HEADLESS, USER_DATA_DIR, BROWSER_ARGS, DEBUG_HOST,
    clean_browser_locks,
)
from errors import PageScriptError


def _quiet(msg: str) -> None:
    pass


class NodriverPage:
    """Page handle backed by a nodriver tab."""

    def __init__(self, tab):
        self.tab = tab

    async def evaluate(self, script: str, args: dict | None = None):
        """Run a page_scripts function with JSON args via CDP Runtime.evaluate.

        nodriver's tab.evaluate() silently returns None on chatgpt.com
        due to execution context issues, so the protocol is used directly.
        The expression is sent to the browser's existing JS context - not
        Python eval().
        """
        expression = f"({script})({json.dumps(args or {})})"
        result, exceptions = await self.tab.send(cdp.runtime.evaluate(
            expression, return_by_value=True, await_promise=True,
        ))
        if exceptions:
            detail = exceptions.exception.description if exceptions.exception else exceptions.text
            raise PageScriptError(detail)
        if result is None:
            return None
        if result.value is not None:
            return result.value
        # For complex objects (arrays, objects), serialize via JSON
        if result.object_id:
            props, _ = await self.tab.send(
                cdp.runtime.call_function_on(
                    'function() { return JSON.stringify(this); }',
                    object_id=result.object_id,
                    return_by_value=True,
                )
            )
            if props and props.value:
                return json.loads(props.value)
        return None

    async def goto(self, url: str) -> None:
        await self.tab.send(cdp.page.navigate(url=url))
        await self.tab.sleep(2)

    async def current_url(self) -> str:
        url = await self.evaluate(page_scripts.LOCATION)
        return url or (self.tab.url or "")

    async def reload(self) -> None:
        await self.tab.reload()
        await self.tab.sleep(2)

    async def close(self) -> None:
        await self.tab.close()

    async def click(self, selector: str) -> bool:
        """Dispatch a real CDP mouse click at the center of `selector`.

        Sends mouseMoved → mousePressed → mouseReleased, which is the full
        sequence React's synthetic event system needs to register a click.
        """
        center = await self.evaluate(page_scripts.ELEMENT_CENTER, {"selector": selector})
        if not center:
            return False
        x, y = center["x"], center["y"]
        await self.tab.send(cdp.input_.dispatch_mouse_event(type_="mouseMoved", x=x, y=y))
        await self.tab.sleep(0.1)
        await self.tab.send(cdp.input_.dispatch_mouse_event(
            type_="mousePressed", x=x, y=y,
            button=cdp.input_.MouseButton.LEFT, click_count=1,
        ))
        await self.tab.sleep(0.05)
        await self.tab.send(cdp.input_.dispatch_mouse_event(
            type_="mouseReleased", x=x, y=y,
            button=cdp.input_.MouseButton.LEFT, click_count=1,
        ))
        return True

    async def type_text(self, text: str) -> None:
        """Type character by character via CDP key events."""
        for char in text:
            await self.tab.send(cdp.input_.dispatch_key_event(
                type_="keyDown", key=char, text=char,
            ))
            await self.tab.sleep(0.005)
            await self.tab.send(cdp.input_.dispatch_key_event(
                type_="keyUp", key=char,
            ))

    async def press_key(self, key: str, shift: bool = False) -> None:
        codes = {"Enter": 13, "Escape": 27, "Backspace": 8}
        modifiers = 8 if shift else 0  # 8 = Shift
        vk = codes.get(key, 0)
        text = "\r" if key == "Enter" and not shift else None
        await self.tab.send(cdp.input_.dispatch_key_event(
            type_="keyDown", key=key, code=key, text=text, modifiers=modifiers,
            windows_virtual_key_code=vk, native_virtual_key_code=vk,
        ))
        await self.tab.send(cdp.input_.dispatch_key_event(
            type_="keyUp", key=key, code=key, modifiers=modifiers,
            windows_virtual_key_code=vk, native_virtual_key_code=vk,
        ))

    async def upload_files(self, paths: list[str], timeout: float = 10.0) -> bool:
        """Attach files to the composer via CDP file chooser interception.

        1. Register a handler for Page.fileChooserOpened
        2. Enable Page.setInterceptFileChooserDialog (suppresses native picker)
        3. Press ⌘U / Ctrl+U ("Add photos & files")
        4. When the chooser opens, set files on its input by backend_node_id
        """
        tab = self.tab
        loop = asyncio.get_running_loop()
        chooser_future: asyncio.Future[bool] = loop.create_future()

        async def _on_file_chooser(event: cdp.page.FileChooserOpened):
            try:
                # Disable interception first so the pending chooser is dismissed
                await tab.send(cdp.page.set_intercept_file_chooser_dialog(enabled=False))
                await tab.send(cdp.dom.set_file_input_files(
                    files=paths,
                    backend_node_id=event.backend_node_id,
                ))
                if not chooser_future.done():
                    chooser_future.set_result(True)
            except Exception as e:
                if not chooser_future.done():
                    chooser_future.set_exception(e)

        modifiers = 4 if sys.platform == "darwin" else 2  # Meta on Mac, Ctrl elsewhere
        try:
            tab.add_handler(cdp.page.FileChooserOpened, _on_file_chooser)
            await tab.send(cdp.page.set_intercept_file_chooser_dialog(enabled=True))
            await tab.send(cdp.input_.dispatch_key_event(
                type_="keyDown", key="u", code="KeyU",
                windows_virtual_key_code=85, native_virtual_key_code=85,
                modifiers=modifiers,
            ))
            await tab.sleep(0.1)
            await tab.send(cdp.input_.dispatch_key_event(
                type_="keyUp", key="u", code="KeyU",
                windows_virtual_key_code=85, native_virtual_key_code=85,
                modifiers=modifiers,
            ))
            try:
                return await asyncio.wait_for(chooser_future, timeout=timeout)
            except asyncio.TimeoutError:
                return False
        finally:
            try:
                await tab.send(cdp.page.set_intercept_file_chooser_dialog(enabled=False))
            except Exception:
                pass
            # Remove the handler to avoid leaking
            handlers = tab.handlers.get(cdp.page.FileChooserOpened, [])
            if _on_file_chooser in handlers:
                handlers.remove(_on_file_chooser)


# ── Browser launch / reuse ────────────────────────────────────────────

def read_devtools_port(profile_dir: Path) -> int | None:
    """Port Chrome recorded for the profile's running instance, if any."""
    marker = Path(profile_dir) / "DevToolsActivePort"
    try:
        first_line = marker.read_text().splitlines()[0].strip()
        return int(first_line)
    except (OSError, IndexError, ValueError):
        return None


async def debug_endpoint_alive(port: int, timeout: float = 1.5) -> bool:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(f"http://{DEBUG_HOST}:{port}/json/version")
            return resp.status_code == 200
    except httpx.HTTPError:
        return False


def find_profile_browser_pid(profile_dir: Path) -> int | None:
    """Top-level browser process running on `profile_dir`."""
    flag = f"--user-data-dir={Path(profile_dir).resolve()}"
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = proc.info["cmdline"] or []
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if flag in cmdline and not any(arg.startswith("--type=") for arg in cmdline):
            return proc.info["pid"]
    return None


async def launch_browser(
    profile_dir: Path = USER_DATA_DIR,
    visible: bool = False,
    log=_quiet,
) -> dict:
    """
    Launch the automation browser on `profile_dir`, or connect to the one
    already running on it.

    Returns:
        dict with browser, pid, port and reused (True when connected to
        an instance this call did not start).
    """
    profile_dir = Path(profile_dir)
    port = read_devtools_port(profile_dir)
    if port and await debug_endpoint_alive(port):
        log(f"[browser] reusing browser on port {port}")
        browser = await uc.start(host=DEBUG_HOST, port=port)
        return {
            "browser": browser,
            "pid": find_profile_browser_pid(profile_dir),
            "port": port,
            "reused": True,
        }

    profile_dir.mkdir(parents=True, exist_ok=True)
    # Clean stale browser locks from crashed sessions
    clean_browser_locks(profile_dir)

    headless = HEADLESS and not visible
    log(f"[browser] launching headless={headless} profile={profile_dir}")
    browser = await uc.start(
        headless=headless,
        user_data_dir=str(profile_dir),
        browser_args=BROWSER_ARGS,
    )
    return {
        "browser": browser,
        "pid": getattr(browser, "_process_pid", None),
        "port": browser.config.port,
        "reused": False,
    }


def _same_page(tab_url: str, url: str) -> bool:
    a, b = urlparse(tab_url or ""), urlparse(url)
    return a.netloc == b.netloc and a.path.rstrip("/") == b.path.rstrip("/")


async def open_page(browser, url: str, fresh: bool = False) -> NodriverPage:
    """Open `url`, reusing a tab already showing it unless `fresh`."""
    if not fresh:
        for tab in browser.tabs:
            if _same_page(tab.url, url):
                await tab.activate()
                return NodriverPage(tab)
        blank = [t for t in browser.tabs if (t.url or "").startswith(("about:blank", "chrome://newtab"))]
        if blank:
            tab = blank[0]
            await tab.get(url)
            return NodriverPage(tab)
    tab = await browser.get(url, new_tab=True)
    return NodriverPage(tab)


async def release_browser(session: dict, log=_quiet) -> None:
    """Drop our CDP connections and leave the browser running.

    The browser is unregistered from nodriver first, otherwise its atexit
    hook stops every browser it started when the worker exits. Killing
    the browser is left to recovery.
    """
    browser = session.get("browser")
    if browser is None:
        return
    uc.util.get_registered_instances().discard(browser)
    for tab in list(getattr(browser, "tabs", None) or []):
        try:
            await tab.aclose()
        except Exception as e:
            log(f"[browser] tab disconnect failed: {e}")
    connection = getattr(browser, "connection", None)
    if connection is not None:
        try:
            await connection.aclose()
        except Exception as e:
            log(f"[browser] disconnect failed: {e}")


async def minimize_window(page: NodriverPage) -> bool:
    """Best-effort: keep the automation window from stealing focus."""
    window_id, _bounds = await page.tab.send(
        cdp.browser.get_window_for_target(page.tab.target.target_id)
    )
    await page.tab.send(cdp.browser.set_window_bounds(
        window_id, cdp.browser.Bounds(window_state=cdp.browser.WindowState.MINIMIZED),
    ))
    return True
