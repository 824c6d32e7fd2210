import logging
from pathlib import Path

import pytest
from rich.logging import RichHandler

from sshjobs.errors import HookFailure, KnownHostsFormatError, LockTimeout
from sshjobs.log import configure_logging, level_from_name, level_from_verbosity


def test_level_from_name() -> None:
    assert level_from_name("DEBUG") == logging.DEBUG
    assert level_from_name(" warning ") == logging.WARNING
    with pytest.raises(ValueError, match="Valid levels"):
        level_from_name("loud")


def test_level_from_verbosity() -> None:
    assert level_from_verbosity(0) == logging.WARNING
    assert level_from_verbosity(1) == logging.INFO
    assert level_from_verbosity(5) == logging.DEBUG
    assert level_from_verbosity(1, logging.ERROR) == logging.WARNING


def test_configure_logging_writes_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "sshjobs.log"
    logger = configure_logging(logging.INFO, log_file)
    try:
        assert logger.level == logging.INFO
        assert any(isinstance(h, RichHandler) for h in logger.handlers)
        logging.getLogger("sshjobs.jobs").info("hello %s", "file")
        for handler in logger.handlers:
            handler.flush()
        assert "INFO [sshjobs.jobs] hello file" in log_file.read_text(encoding="utf-8")

        # reconfiguring replaces handlers instead of stacking them
        configure_logging(logging.WARNING)
        assert len(logger.handlers) == 1
    finally:
        configure_logging(logging.WARNING)


def test_error_context() -> None:
    err = LockTimeout("/jobs/a.yaml.lock", 0.5, job="A")
    assert err.to_dict() == {
        "error_type": "LockTimeout",
        "message": "Cannot lock '/jobs/a.yaml.lock' within 0.500s",
        "job": "A",
    }

    hook = HookFailure("after", "notify", 3, "bad\n", job="A")
    assert hook.stage == "after" and hook.exit_status == 3
    assert "after hook 'notify' failed with exit status 3" == str(hook)

    assert KnownHostsFormatError("oops").to_dict() == {"error_type": "KnownHostsFormatError", "message": "oops"}
