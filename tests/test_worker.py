import asyncio

import pytest

import attachments
from attachments import resolve_attachments
from config import HEARTBEAT_INTERVAL
from errors import should_skip_recovery
from fakes import CONVERSATION_URL, FakeClock, FakePage, assistant, user
from run_state import (
    create_run_config, load_result, load_run_config, load_status, request_cancel, save_run_config,
)
from worker import RunWorker, check_target_url

PROMPT = "What is 2+2?"


class Harness:
    """A RunWorker wired to one FakePage and virtual time."""

    def __init__(self, tmp_path, page=None, **overrides):
        self.clock = FakeClock()
        self.page = page or FakePage()
        self.page.clock = self.clock
        overrides.setdefault("timeout", 120)
        self.config = create_run_config(overrides.pop("prompt", PROMPT), root=tmp_path, **overrides)
        save_run_config(self.config)
        self.run_dir = self.config["run_dir"]
        self.messages = []
        self.launches = 0
        self.opened = []
        self.released = 0
        self.recoveries = []
        self.recover_result = "healthy"
        self.minimize_error = None

    async def launcher(self, profile_dir, visible=False, log=None):
        self.launches += 1
        return {"browser": object(), "pid": None, "port": None, "reused": False}

    async def opener(self, browser, url, fresh=False):
        self.opened.append((url, fresh))
        return self.page

    async def minimizer(self, page):
        if self.minimize_error:
            raise self.minimize_error

    async def releaser(self, session, log):
        self.released += 1

    async def recover(self, error, session, page, config, second_pass=False, **kwargs):
        self.recoveries.append((type(error).__name__, second_pass))
        if should_skip_recovery(error):
            return "skipped"
        return self.recover_result

    def build(self):
        return RunWorker(
            self.config,
            launcher=self.launcher,
            page_opener=self.opener,
            recover=self.recover,
            minimizer=self.minimizer,
            releaser=self.releaser,
            log=self.messages.append,
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    async def run(self):
        return await self.build().run()


@pytest.mark.asyncio
async def test_run_completes_and_records_result(tmp_path):
    h = Harness(tmp_path)
    h.page.replies = [{"text": "4", "after": 3}]

    outcome = await h.run()

    assert outcome == {"state": "completed", "content": "4", "conversation_url": CONVERSATION_URL}
    assert h.page.visited == ["https://chatgpt.com/"]
    assert h.page.sends == 1
    assert load_status(h.run_dir)["state"] == "completed"
    assert load_result(h.run_dir)["content"] == "4"
    saved = load_run_config(h.run_dir)
    assert saved["conversation_url"] == CONVERSATION_URL
    assert saved["last_reply_index"] == 2
    assert saved["focus"] == {"state": "hidden"}
    assert h.released == 1


@pytest.mark.asyncio
async def test_login_wall_needs_user(tmp_path):
    h = Harness(tmp_path)
    h.page.login = True

    outcome = await h.run()

    assert outcome["state"] == "needs_user"
    assert outcome["reason"] == "login"
    status = load_status(h.run_dir)
    assert status["state"] == "needs_user"
    assert status["needs"]["type"] == "login"
    assert h.page.sends == 0
    assert h.released == 1


@pytest.mark.asyncio
async def test_failed_reply_is_resubmitted_once(tmp_path):
    h = Harness(tmp_path)
    h.page.replies = [{"text": "x", "mode": "fail"}, {"text": "second try", "after": 2}]

    outcome = await h.run()

    assert outcome["state"] == "completed"
    assert outcome["content"] == "second try"
    assert h.page.sends == 2
    assert load_run_config(h.run_dir)["last_reply_index"] == 4


@pytest.mark.asyncio
async def test_failed_twice_fails_the_run(tmp_path):
    h = Harness(tmp_path)
    h.page.replies = [{"text": "x", "mode": "fail"}, {"text": "y", "mode": "fail"}]

    outcome = await h.run()

    assert outcome["state"] == "failed"
    assert h.page.sends == 2
    assert h.recoveries == [("ResponseFailedError", False)]
    assert load_result(h.run_dir)["state"] == "failed"
    assert load_status(h.run_dir)["state"] == "failed"


@pytest.mark.asyncio
async def test_cancel_while_waiting(tmp_path):
    h = Harness(tmp_path)
    h.page.replies = [{"text": "never", "mode": "stall"}]
    t0 = h.clock.now

    def cancel_later(page):
        if h.clock.now - t0 >= 10:
            request_cancel(h.run_dir)

    h.page.on_evaluate = cancel_later

    outcome = await h.run()

    assert outcome == {"state": "canceled"}
    assert h.clock.now - t0 < 30
    assert load_status(h.run_dir)["state"] == "canceled"
    assert load_result(h.run_dir)["state"] == "canceled"
    assert h.recoveries == []


@pytest.mark.asyncio
async def test_cancel_before_start_never_launches(tmp_path):
    h = Harness(tmp_path)
    request_cancel(h.run_dir)
    assert (await h.run())["state"] == "canceled"
    assert h.launches == 0


@pytest.mark.asyncio
async def test_foreign_base_url_is_rejected(tmp_path):
    h = Harness(tmp_path, base_url="https://example.com/")
    outcome = await h.run()
    assert outcome["state"] == "failed"
    assert "Only https://chatgpt.com/" in outcome["error"]
    assert h.launches == 0


def test_check_target_url_accepts_conversation_links():
    check_target_url(CONVERSATION_URL, "conversation_url")
    with pytest.raises(ValueError):
        check_target_url("not a url", "base_url")


@pytest.mark.asyncio
async def test_prompt_already_in_conversation_is_not_sent_again(tmp_path):
    page = FakePage(url=CONVERSATION_URL, turns=[user(1, PROMPT), assistant(2, "4")])
    h = Harness(tmp_path, page=page, conversation_url=CONVERSATION_URL)

    outcome = await h.run()

    assert outcome["content"] == "4"
    assert page.sends == 0
    assert page.visited == [CONVERSATION_URL]


@pytest.mark.asyncio
async def test_busy_continued_conversation_fails_without_sending(tmp_path):
    page = FakePage(url=CONVERSATION_URL, turns=[user(1, "earlier"), assistant(2, "...", finished=False)])
    page.generating = True
    h = Harness(tmp_path, page=page, conversation_url=CONVERSATION_URL)

    outcome = await h.run()

    assert outcome["state"] == "failed"
    assert "still generating" in outcome["error"]
    assert page.sends == 0
    assert h.recoveries == [("ConversationBusyError", False)]


@pytest.mark.asyncio
async def test_recovery_retry_is_bounded(tmp_path):
    h = Harness(tmp_path)
    h.page.goto_errors = [RuntimeError("net::ERR_CONNECTION_RESET") for _ in range(3)]
    h.recover_result = "recovered"

    outcome = await h.run()

    assert outcome["state"] == "failed"
    assert outcome["error"] == "Recovery retry limit exceeded"
    assert h.recoveries == [("RuntimeError", False), ("RuntimeError", True)]
    assert h.launches == 2
    assert h.released == 2


@pytest.mark.asyncio
async def test_detached_frame_reopens_page(tmp_path):
    h = Harness(tmp_path)
    h.page.goto_errors = [RuntimeError("Execution context was destroyed")]
    h.page.replies = [{"text": "4", "after": 1}]

    outcome = await h.run()

    assert outcome["state"] == "completed"
    assert h.opened == [("https://chatgpt.com/", False), ("https://chatgpt.com/", True)]
    assert h.recoveries == []


@pytest.mark.asyncio
async def test_stalled_reply_triggers_reload(tmp_path):
    h = Harness(tmp_path, timeout=20)
    h.page.replies = [{"text": "late", "mode": "stall"}]

    def unstick(page):
        page.pending["spec"] = {"text": "late", "after": 0}

    h.page.on_reload = unstick

    outcome = await h.run()

    assert outcome["content"] == "late"
    assert h.page.reloads == 1
    assert h.page.sends == 1


@pytest.mark.asyncio
async def test_minimize_failure_does_not_block(tmp_path):
    h = Harness(tmp_path)
    h.minimize_error = RuntimeError("no window")
    h.page.replies = [{"text": "4", "after": 1}]

    outcome = await h.run()

    assert outcome["state"] == "completed"
    assert load_run_config(h.run_dir)["focus"] == {"state": "visible", "reason": "no window"}


@pytest.mark.asyncio
async def test_overflow_attachment_is_inlined_into_prompt(tmp_path, monkeypatch):
    monkeypatch.setattr(attachments, "MAX_UPLOAD_FILES", 0)
    notes = tmp_path / "notes.txt"
    notes.write_text("remember the milk\n")
    h = Harness(tmp_path, prompt="Summarize [attached: notes.txt]",
                attachments=resolve_attachments([str(notes)]))
    h.page.replies = [{"text": "milk", "after": 1}]

    outcome = await h.run()

    assert outcome["content"] == "milk"
    sent = h.page.turns[0]["text"]
    assert "File: notes.txt" in sent and "remember the milk" in sent
    saved = load_run_config(h.run_dir)
    assert saved["original_prompt"] == "Summarize [attached: notes.txt]"
    assert "remember the milk" in saved["prompt"]


@pytest.mark.asyncio
async def test_overflow_is_inlined_once_across_attempts(tmp_path, monkeypatch):
    monkeypatch.setattr(attachments, "MAX_UPLOAD_FILES", 0)
    notes = tmp_path / "notes.txt"
    notes.write_text("remember the milk\n")
    h = Harness(tmp_path, prompt="Summarize [attached: notes.txt]", max_attempts=2,
                attachments=resolve_attachments([str(notes)]))
    h.page.drop_sends = 2
    h.page.replies = [{"text": "milk", "after": 1}]

    outcome = await h.run()

    assert outcome["content"] == "milk"
    assert h.launches == 2
    sent = [t["text"] for t in h.page.turns if t["role"] == "user"]
    assert len(sent) == 1
    assert sent[0].count("File: notes.txt") == 1
    assert load_run_config(h.run_dir)["prompt"].count("remember the milk") == 1


@pytest.mark.asyncio
async def test_second_attempt_completes_after_first_fails(tmp_path):
    h = Harness(tmp_path, max_attempts=2)
    h.page.goto_errors = [RuntimeError("net::ERR_ABORTED")]
    h.page.replies = [{"text": "4", "after": 1}]

    outcome = await h.run()

    assert outcome["state"] == "completed"
    assert h.launches == 2
    assert h.released == 2
    assert h.recoveries == [("RuntimeError", False)]
    saved = load_run_config(h.run_dir)
    assert saved["attempt"] == 2
    assert saved["last_error"] == "net::ERR_ABORTED"
    assert any("attempt 1 error: net::ERR_ABORTED" in m for m in h.messages)
    assert load_status(h.run_dir)["state"] == "completed"


@pytest.mark.asyncio
async def test_reply_timeout_ends_the_attempt_without_resubmit(tmp_path):
    h = Harness(tmp_path, timeout=20, max_attempts=1)

    outcome = await h.run()

    assert outcome["state"] == "failed"
    assert "Timed out after 20s" in outcome["error"]
    assert h.page.sends == 1
    assert h.page.reloads == 0
    assert h.recoveries == [("ResponseTimeoutError", False)]
    assert load_result(h.run_dir)["state"] == "failed"


@pytest.mark.asyncio
async def test_heartbeat_keeps_the_current_stage(tmp_path):
    h = Harness(tmp_path)
    worker = h.build()
    worker.status("running", "submit", "resubmitting prompt")
    beats = asyncio.create_task(worker._heartbeat())

    await h.clock.sleep(HEARTBEAT_INTERVAL * 2 + 1)
    beats.cancel()

    status = load_status(h.run_dir)
    assert status["stage"] == "submit"
    assert status["message"] == "resubmitting prompt"


@pytest.mark.asyncio
async def test_stage_returns_to_waiting_after_resubmit(tmp_path):
    h = Harness(tmp_path)
    h.page.replies = [{"text": "x", "mode": "fail"}, {"text": "second try", "after": 5}]
    seen = []
    h.page.on_evaluate = lambda page: seen.append((page.sends, load_status(h.run_dir)["stage"]))

    outcome = await h.run()

    assert outcome["content"] == "second try"
    assert [stage for sends, stage in seen if sends == 2][-1] == "waiting"
