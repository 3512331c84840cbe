"""Tests for loguru-based logging setup."""

from loguru import logger

from audiobook_tools.config import ToolsConfig


class TestSetupLogging:
    def setup_method(self):
        logger.remove()

    def teardown_method(self):
        logger.remove()

    def test_setup_creates_log_dir(self, tmp_path):
        log_dir = tmp_path / "logs"
        config = ToolsConfig(_env_file=None, log_dir=log_dir)
        config.setup_logging()
        assert log_dir.exists()

    def test_setup_adds_file_sink(self, tmp_path):
        log_dir = tmp_path / "logs"
        config = ToolsConfig(_env_file=None, log_dir=log_dir)
        config.setup_logging()
        logger.bind(stage="test").info("hello from test")
        content = (log_dir / "audiobook-tools.log").read_text()
        assert "hello from test" in content

    def test_stage_context_in_output(self, tmp_path):
        log_dir = tmp_path / "logs"
        config = ToolsConfig(_env_file=None, log_dir=log_dir)
        config.setup_logging()
        logger.bind(stage="scheduler").info("starting jobs")
        content = (log_dir / "audiobook-tools.log").read_text()
        assert "scheduler" in content

    def test_default_stage_empty(self, tmp_path):
        log_dir = tmp_path / "logs"
        config = ToolsConfig(_env_file=None, log_dir=log_dir)
        config.setup_logging()
        logger.info("no stage bound")
        content = (log_dir / "audiobook-tools.log").read_text()
        assert "no stage bound" in content

    def test_file_sink_captures_debug(self, tmp_path):
        log_dir = tmp_path / "logs"
        config = ToolsConfig(_env_file=None, log_dir=log_dir, log_level="WARNING")
        config.setup_logging()
        logger.bind(stage="worker").debug("ffmpeg command")
        content = (log_dir / "audiobook-tools.log").read_text()
        assert "ffmpeg command" in content
