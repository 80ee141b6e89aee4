"""
Configuration
=============

Loads scheduler configuration from an optional YAML file and the environment.

Precedence (lowest to highest):
1. Defaults on Config
2. YAML file (path argument, FEATUREGRAPH_CONFIG, or ./featuregraph.yaml)
3. Environment variables (a .env file is loaded first via python-dotenv)

Example featuregraph.yaml:

    scheduler:
      max_concurrency: 3
      stop_ack_timeout: 30
      stop_retries: 2
      auto_resume_reconciled: false
      project_concurrency:
        my-project: 5
    workspace:
      worktree_dir: .worktrees
    database:
      url: postgresql://localhost/featuregraph
    logging:
      level: INFO
      json: false
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging
import os

import yaml
from dotenv import load_dotenv

from featuregraph.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "featuregraph.yaml"
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20


def _parse_bool(value: Union[str, bool]) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Config:
    """
    Scheduler configuration.

    Attributes:
        max_concurrency: Global budget of simultaneously running tasks
        project_concurrency: Per-project budget overrides
        stop_ack_timeout: Seconds to wait for a stop acknowledgment
        stop_retries: Extra terminate attempts before a stop is reported failed
        auto_resume_reconciled: Resume features stopped by crash reconciliation
        worktree_dir: Worktree directory relative to each project
        database_url: PostgreSQL URL (None = in-memory repository)
        log_level: Root log level
        log_json: Emit JSON log lines
    """
    max_concurrency: int = 3
    project_concurrency: Dict[str, int] = field(default_factory=dict)
    stop_ack_timeout: float = 30.0
    stop_retries: int = 2
    auto_resume_reconciled: bool = False
    worktree_dir: str = ".worktrees"
    database_url: Optional[str] = None
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        budgets = {'max_concurrency': self.max_concurrency}
        budgets.update({f"project_concurrency[{k}]": v for k, v in self.project_concurrency.items()})
        for name, value in budgets.items():
            if not isinstance(value, int) or not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
                raise ValidationError(
                    f"{name} must be an integer between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, got {value!r}"
                )
        if self.stop_ack_timeout <= 0:
            raise ValidationError(f"stop_ack_timeout must be positive, got {self.stop_ack_timeout}")
        if self.stop_retries < 0:
            raise ValidationError(f"stop_retries cannot be negative, got {self.stop_retries}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValidationError(f"Unknown log level: {self.log_level}")

    def budget_for(self, project_id: str) -> int:
        """Effective concurrency budget for a project."""
        return self.project_concurrency.get(project_id, self.max_concurrency)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Config":
        """
        Build a Config from the parsed YAML mapping.

        Raises:
            ValidationError: If a section is not a mapping or a value has the wrong type
        """
        try:
            scheduler = raw.get('scheduler') or {}
            workspace = raw.get('workspace') or {}
            database = raw.get('database') or {}
            log = raw.get('logging') or {}

            values = dict(
                max_concurrency=int(scheduler.get('max_concurrency', 3)),
                project_concurrency={
                    str(k): int(v) for k, v in (scheduler.get('project_concurrency') or {}).items()
                },
                stop_ack_timeout=float(scheduler.get('stop_ack_timeout', 30.0)),
                stop_retries=int(scheduler.get('stop_retries', 2)),
                auto_resume_reconciled=_parse_bool(scheduler.get('auto_resume_reconciled', False)),
                worktree_dir=str(workspace.get('worktree_dir', '.worktrees')),
                database_url=database.get('url'),
                log_level=str(log.get('level', 'INFO')),
                log_json=_parse_bool(log.get('json', False)),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid configuration value: {e}") from e

        return cls(**values)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None, env_file: Optional[str] = None) -> "Config":
        """
        Load configuration from YAML and environment.

        Args:
            path: YAML file; missing default file is fine, missing explicit file is not
            env_file: Optional .env file for python-dotenv

        Raises:
            ValidationError: If the file is unreadable or values are invalid
        """
        load_dotenv(env_file)

        explicit = path or os.getenv('FEATUREGRAPH_CONFIG')
        config_path = Path(explicit) if explicit else Path(DEFAULT_CONFIG_FILE)

        raw: Dict[str, Any] = {}
        if config_path.exists():
            try:
                raw = yaml.safe_load(config_path.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise ValidationError(f"Invalid YAML in {config_path}: {e}") from e
            if not isinstance(raw, dict):
                raise ValidationError(f"Config root must be a mapping: {config_path}")
            logger.info(f"Loaded configuration from {config_path}")
        elif explicit:
            raise ValidationError(f"Config file not found: {config_path}")

        config = cls.from_dict(raw)

        env = os.environ
        try:
            if 'FEATUREGRAPH_MAX_CONCURRENCY' in env:
                config.max_concurrency = int(env['FEATUREGRAPH_MAX_CONCURRENCY'])
            if 'FEATUREGRAPH_STOP_ACK_TIMEOUT' in env:
                config.stop_ack_timeout = float(env['FEATUREGRAPH_STOP_ACK_TIMEOUT'])
            if 'FEATUREGRAPH_STOP_RETRIES' in env:
                config.stop_retries = int(env['FEATUREGRAPH_STOP_RETRIES'])
        except ValueError as e:
            raise ValidationError(f"Invalid numeric environment setting: {e}") from e
        if 'FEATUREGRAPH_AUTO_RESUME' in env:
            config.auto_resume_reconciled = _parse_bool(env['FEATUREGRAPH_AUTO_RESUME'])
        if 'FEATUREGRAPH_WORKTREE_DIR' in env:
            config.worktree_dir = env['FEATUREGRAPH_WORKTREE_DIR']
        if 'FEATUREGRAPH_LOG_LEVEL' in env:
            config.log_level = env['FEATUREGRAPH_LOG_LEVEL']
        if 'DATABASE_URL' in env:
            config.database_url = env['DATABASE_URL']

        config.validate()
        return config
