import json
import os
import time

import pytest

from run_state import (
    cleanup_runs_root,
    config_path,
    create_run_config,
    is_canceled,
    load_result,
    load_run_config,
    load_status,
    make_run_logger,
    request_cancel,
    result_path,
    save_result,
    save_run_config,
    save_status,
    status_path,
)


def test_config_status_and_result_round_trip(tmp_path):
    config = create_run_config("What is 2+2?", root=tmp_path, allow_kill=True)
    save_run_config(config)
    loaded = load_run_config(config["run_dir"])
    assert loaded["prompt"] == "What is 2+2?"
    assert loaded["original_prompt"] == "What is 2+2?"
    assert loaded["allow_kill"] is True
    assert loaded["attempt"] == 0
    assert len(loaded["run_id"]) == 12

    save_status(config, "needs_user", "login", "log in first", {"type": "login", "details": "x"})
    status = load_status(config["run_dir"])
    assert status["state"] == "needs_user"
    assert status["needs"]["type"] == "login"

    save_result(config, "completed", content="4")
    assert load_result(config["run_dir"])["content"] == "4"
    assert result_path(config["run_dir"]).read_text() == "4"


def test_failed_result_has_no_markdown(tmp_path):
    config = create_run_config("p", root=tmp_path)
    save_result(config, "failed", error="boom")
    result = load_result(config["run_dir"])
    assert result["error"] == "boom"
    assert "content" not in result
    assert not result_path(config["run_dir"]).exists()


def test_atomic_writes_leave_no_temp_files(tmp_path):
    config = create_run_config("p", root=tmp_path)
    save_run_config(config)
    for state in ("starting", "running", "completed"):
        save_status(config, state)
    names = sorted(os.listdir(config["run_dir"]))
    assert names == ["run.json", "status.json"]
    assert json.loads(status_path(config["run_dir"]).read_text())["state"] == "completed"


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_run_config(tmp_path / "nope")


def test_cancel_marker(tmp_path):
    config = create_run_config("p", root=tmp_path)
    assert not is_canceled(config["run_dir"])
    request_cancel(config["run_dir"])
    assert is_canceled(config["run_dir"])


def _aged_run(root, state, age):
    config = create_run_config("p", root=root)
    save_run_config(config)
    save_status(config, state)
    created = time.time() - age
    data = json.loads(config_path(config["run_dir"]).read_text())
    data["created_at"] = time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime(created))
    config_path(config["run_dir"]).write_text(json.dumps(data))
    return config["run_dir"]


def test_cleanup_removes_only_old_finished_runs(tmp_path):
    old_done = _aged_run(tmp_path, "completed", 3 * 86400)
    old_running = _aged_run(tmp_path, "running", 3 * 86400)
    fresh_done = _aged_run(tmp_path, "failed", 60)
    messages = []

    assert cleanup_runs_root(tmp_path, ttl=86400, log=messages.append) == 1
    assert not os.path.exists(old_done)
    assert os.path.exists(old_running)
    assert os.path.exists(fresh_done)
    assert messages


def test_cleanup_on_missing_root(tmp_path):
    assert cleanup_runs_root(tmp_path / "absent") == 0


def test_run_logger_appends_timestamped_lines(tmp_path):
    log = make_run_logger(tmp_path / "run.log")
    log("first")
    log("second")
    lines = (tmp_path / "run.log").read_text().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("[") and lines[0].endswith("] first")
