"""Test that closing the logger releases its file handles."""

import tempfile
from pathlib import Path

import pytest

from branchwarden.core.config import Config, RepoConfig
from branchwarden.core.log import (
    ConsoleSink,
    FileSink,
    LogfireSink,
    Logger,
    OTLPSink,
    setup_logger,
)


@pytest.fixture(autouse=True)
def restore_console_logger():
    yield
    setup_logger(
        log_root=Path(tempfile.gettempdir()) / "branchwarden-tests",
        run_name="test",
        console=ConsoleSink(level="debug"),
    )


def file_only(path):
    return Logger(
        console=ConsoleSink(enabled=False),
        file=FileSink(enabled=True, path=str(path)),
        otlp=OTLPSink(enabled=False),
        logfire=LogfireSink(enabled=False),
    )


def test_logger_closes_file_on_context_exit(tmp_path):
    logger = file_only(tmp_path / "run.log")
    logger.setup(log_root=tmp_path, run_name="test")

    assert logger.file._file is not None
    assert not logger.file._file.closed

    with logger:
        logger.info("inside")

    assert logger.file._file.closed


def test_logger_closes_file_on_exception(tmp_path):
    logger = file_only(tmp_path / "boom.log")
    logger.setup(log_root=tmp_path, run_name="test")

    with pytest.raises(RuntimeError), logger:
        raise RuntimeError("boom")

    assert logger.file._file.closed


def test_close_twice_is_harmless(tmp_path):
    logger = file_only(tmp_path / "twice.log")
    logger.setup(log_root=tmp_path, run_name="test")

    logger.close()
    logger.close()

    assert logger.file._file.closed


def test_config_close_cascades_to_sinks(tmp_path):
    config = Config(
        logger=file_only(tmp_path / "cascade.log"),
        repo=RepoConfig(workdir=tmp_path / "checkout"),
        log_root=tmp_path,
    )

    assert config.logger.file._file is not None
    assert not config.logger.file._file.closed

    config.close()

    assert config.logger.file._file.closed


def test_file_written_and_flushed_on_close(tmp_path):
    log_file = tmp_path / "written.log"
    logger = file_only(log_file)
    logger.setup(log_root=tmp_path, run_name="write-test")

    with logger:
        logger.info("test message to file")

    assert "test message to file" in log_file.read_text()
