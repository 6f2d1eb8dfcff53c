import json
import logging
from pathlib import Path

import pytest

from branchlink import observability as obs
from branchlink.config_schema import LoggingConfig

log_action = obs.log_action
log_debug = obs.log_debug
log_warning = obs.log_warning
log_error = obs.log_error
timeit = obs.timeit
LOGGER_NAME = obs.LOGGER_NAME
_get_log_level = obs._get_log_level
_get_log_file_path = obs._get_log_file_path


@pytest.fixture(autouse=True)
def reset_logger():
    """Reset logger state between tests."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    obs._logger_initialized = False
    obs._session_start = None
    obs._overrides.clear()
    yield
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    obs._logger_initialized = False
    obs._session_start = None
    obs._overrides.clear()


def test_log_action_emits_json(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_action("engine.associate_branch", outcome="ok", duration_ms=12.345, ticket="ENG-1")
    data = json.loads(caplog.records[-1].message)
    assert data["action"] == "engine.associate_branch"
    assert data["outcome"] == "ok"
    assert data["duration_ms"] == 12.35
    assert data["ticket"] == "ENG-1"


def test_timeit_success_logs(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with timeit("test.block", ticket="ENG-2"):
        pass
    data = json.loads(caplog.records[-1].message)
    assert data["action"] == "test.block"
    assert data["outcome"] == "ok"
    assert data["ticket"] == "ENG-2"
    assert isinstance(data["duration_ms"], (int, float))


def test_timeit_error_logs_and_reraises(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with pytest.raises(RuntimeError):
        with timeit("test.err", ticket="ENG-3"):
            raise RuntimeError("boom")
    data = json.loads(caplog.records[-1].message)
    assert data["outcome"] == "error"
    assert data["ticket"] == "ENG-3"


def test_timeit_outcome_and_extra_fields(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with timeit("test.result") as info:
        info["outcome"] = "negative"
        info["count"] = 3
    data = json.loads(caplog.records[-1].message)
    assert data["outcome"] == "negative"
    assert data["count"] == 3


def test_log_debug_with_fields(caplog, monkeypatch):
    monkeypatch.setenv("BRANCHLINK_LOG_LEVEL", "DEBUG")
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log_debug("Git operation", repo="backend", branch="main")
    msg = caplog.records[-1].message
    assert msg.startswith("Git operation ")
    assert '"branch":"main"' in msg
    assert '"repo":"backend"' in msg


def test_log_debug_not_emitted_at_info(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_debug("should not appear")
    assert not [r for r in caplog.records if r.levelno == logging.DEBUG]


def test_log_warning_and_error_levels(caplog):
    caplog.set_level(logging.WARNING, logger=LOGGER_NAME)
    log_warning("test warning", kind="git_unavailable")
    assert caplog.records[-1].levelno == logging.WARNING
    assert '"kind":"git_unavailable"' in caplog.records[-1].message
    log_error("test error")
    assert caplog.records[-1].levelno == logging.ERROR
    assert caplog.records[-1].message == "test error"


def test_log_level_from_env(monkeypatch):
    monkeypatch.setenv("BRANCHLINK_LOG_LEVEL", "DEBUG")
    assert _get_log_level() == logging.DEBUG
    monkeypatch.setenv("BRANCHLINK_LOG_LEVEL", "warning")
    assert _get_log_level() == logging.WARNING
    monkeypatch.setenv("BRANCHLINK_LOG_LEVEL", "NOPE")
    assert _get_log_level() == logging.INFO


def test_disable_file_logging(monkeypatch):
    monkeypatch.setenv("BRANCHLINK_LOG_DISABLE_FILE", "1")
    assert _get_log_file_path() is None


def test_custom_log_dir(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("BRANCHLINK_LOG_DISABLE_FILE", raising=False)
    custom_dir = tmp_path / "custom_logs"
    monkeypatch.setenv("BRANCHLINK_LOG_DIR", str(custom_dir))
    path = _get_log_file_path()
    assert path is not None
    assert path.parent == custom_dir
    assert path.name.startswith("branchlink_")
    assert custom_dir.exists()


def test_configure_applies_logging_config(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("BRANCHLINK_LOG_DISABLE_FILE", raising=False)
    monkeypatch.delenv("BRANCHLINK_LOG_LEVEL", raising=False)
    monkeypatch.delenv("BRANCHLINK_LOG_DIR", raising=False)
    logger = obs.configure(LoggingConfig(level="DEBUG", dir=str(tmp_path / "logs")))
    assert logger.level == logging.DEBUG
    file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
    assert len(file_handlers) == 1
    assert Path(file_handlers[0].baseFilename).parent == tmp_path / "logs"


def test_env_wins_over_configure(monkeypatch):
    monkeypatch.setenv("BRANCHLINK_LOG_LEVEL", "ERROR")
    logger = obs.configure(LoggingConfig(level="DEBUG", disable_file=True))
    assert logger.level == logging.ERROR
