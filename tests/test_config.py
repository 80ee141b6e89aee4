"""
Tests for configuration loading and logging setup
"""

import json
import logging
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from featuregraph.config import Config
from featuregraph.errors import ValidationError
from featuregraph.logging_setup import JSONFormatter, setup_logging

ENV_VARS = (
    'FEATUREGRAPH_CONFIG',
    'FEATUREGRAPH_MAX_CONCURRENCY',
    'FEATUREGRAPH_STOP_ACK_TIMEOUT',
    'FEATUREGRAPH_STOP_RETRIES',
    'FEATUREGRAPH_AUTO_RESUME',
    'FEATUREGRAPH_WORKTREE_DIR',
    'FEATUREGRAPH_LOG_LEVEL',
    'DATABASE_URL',
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestConfig:
    """Defaults, YAML and environment precedence."""

    def test_defaults(self, clean_env):
        config = Config.load()

        assert config.max_concurrency == 3
        assert config.stop_ack_timeout == 30.0
        assert config.stop_retries == 2
        assert config.auto_resume_reconciled is False
        assert config.database_url is None

    def test_yaml_file(self, clean_env):
        path = clean_env / "featuregraph.yaml"
        path.write_text(
            "scheduler:\n"
            "  max_concurrency: 4\n"
            "  auto_resume_reconciled: true\n"
            "  project_concurrency:\n"
            "    big: 8\n"
            "workspace:\n"
            "  worktree_dir: .wt\n"
            "database:\n"
            "  url: postgresql://localhost/fg\n"
        )

        config = Config.load()

        assert config.max_concurrency == 4
        assert config.auto_resume_reconciled is True
        assert config.worktree_dir == ".wt"
        assert config.database_url == "postgresql://localhost/fg"
        assert config.budget_for('big') == 8
        assert config.budget_for('other') == 4

    def test_environment_overrides_yaml(self, clean_env, monkeypatch):
        (clean_env / "featuregraph.yaml").write_text("scheduler:\n  max_concurrency: 4\n")
        monkeypatch.setenv('FEATUREGRAPH_MAX_CONCURRENCY', '7')
        monkeypatch.setenv('FEATUREGRAPH_AUTO_RESUME', 'yes')
        monkeypatch.setenv('DATABASE_URL', 'postgresql://env/fg')

        config = Config.load()

        assert config.max_concurrency == 7
        assert config.auto_resume_reconciled is True
        assert config.database_url == 'postgresql://env/fg'

    def test_env_file(self, clean_env):
        env_file = clean_env / "custom.env"
        env_file.write_text("FEATUREGRAPH_STOP_RETRIES=5\n")

        try:
            config = Config.load(env_file=str(env_file))
        finally:
            # load_dotenv writes straight into os.environ
            os.environ.pop('FEATUREGRAPH_STOP_RETRIES', None)

        assert config.stop_retries == 5

    def test_missing_explicit_file(self, clean_env):
        with pytest.raises(ValidationError, match="not found"):
            Config.load(clean_env / "nope.yaml")

    def test_invalid_yaml(self, clean_env):
        path = clean_env / "bad.yaml"
        path.write_text("scheduler: [unclosed\n")

        with pytest.raises(ValidationError, match="Invalid YAML"):
            Config.load(path)

    def test_non_numeric_yaml_value(self, clean_env):
        path = clean_env / "featuregraph.yaml"
        path.write_text("scheduler:\n  max_concurrency: lots\n")

        with pytest.raises(ValidationError, match="Invalid configuration value"):
            Config.load()

    def test_wrongly_shaped_yaml_values(self, clean_env):
        path = clean_env / "featuregraph.yaml"

        path.write_text("scheduler:\n  stop_ack_timeout: [1, 2]\n")
        with pytest.raises(ValidationError, match="Invalid configuration value"):
            Config.load()

        path.write_text("scheduler: 5\n")
        with pytest.raises(ValidationError, match="Invalid configuration value"):
            Config.load()

        path.write_text("scheduler:\n  project_concurrency:\n    big: many\n")
        with pytest.raises(ValidationError, match="Invalid configuration value"):
            Config.load()

    def test_budget_out_of_range(self, clean_env, monkeypatch):
        monkeypatch.setenv('FEATUREGRAPH_MAX_CONCURRENCY', '50')
        with pytest.raises(ValidationError, match="between"):
            Config.load()

    def test_non_numeric_env(self, clean_env, monkeypatch):
        monkeypatch.setenv('FEATUREGRAPH_STOP_ACK_TIMEOUT', 'soon')
        with pytest.raises(ValidationError):
            Config.load()

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            Config(max_concurrency=0)
        with pytest.raises(ValidationError):
            Config(project_concurrency={'p': 21})
        with pytest.raises(ValidationError):
            Config(stop_ack_timeout=0)
        with pytest.raises(ValidationError):
            Config(log_level="LOUD")


class TestLogging:
    """Root logger configuration."""

    def test_json_formatter_includes_extras(self):
        record = logging.LogRecord(
            name="featuregraph.scheduling.scheduler",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="task-started: %s",
            args=("a",),
            exc_info=None,
        )
        record.project_id = "p1"
        record.feature_id = "a"
        record.event = "task-started"

        payload = json.loads(JSONFormatter().format(record))

        assert payload['msg'] == "task-started: a"
        assert payload['level'] == "INFO"
        assert payload['project_id'] == "p1"
        assert payload['feature_id'] == "a"
        assert payload['event'] == "task-started"

    def test_setup_logging_sets_level(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging("debug", json_format=True)
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
