import logging
from pathlib import Path

from clusterbed.logging.log import LOG_DIR_ENV, init_logging


def _close(logger):
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


def test_init_logging_writes_full_trace_file(tmp_path: Path):
    logger, run_id, log_path = init_logging(base_dir=tmp_path, name="clusterbed-log-test", cluster="acc")
    try:
        logger.debug("docker create ...")
        for h in logger.handlers:
            h.flush()

        assert log_path.parent == tmp_path
        assert log_path.name.startswith("acc-") and run_id in log_path.name
        text = log_path.read_text()
        assert f"run_id={run_id}" in text
        assert "docker create ..." in text
        assert logger.propagate is False
    finally:
        _close(logger)


def test_init_logging_is_idempotent_and_honours_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv(LOG_DIR_ENV, str(tmp_path / "logs"))
    init_logging(name="clusterbed-log-test")
    logger, _, log_path = init_logging(name="clusterbed-log-test", verbose=True)
    try:
        assert log_path.parent == tmp_path / "logs"
        assert len(logger.handlers) == 2
        console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)][0]
        assert console.level == logging.DEBUG
    finally:
        _close(logger)
