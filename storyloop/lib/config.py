"""
Configuration loaders for storyloop.

Run options come from <ops_dir>/storyloop.env (parsed safely, never
sourced) with STORYLOOP_* environment variables taking precedence.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import envparse
from .errors import ConfigError
from storyloop.runner.models import DEFAULT_MAX_ITERATIONS, BudgetConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "storyloop.env"
ENV_PREFIX = "STORYLOOP_"

POLICY_FAIL_RUN = "fail_run"
POLICY_SKIP_STORY = "skip_story"
FATAL_STORY_POLICIES = (POLICY_FAIL_RUN, POLICY_SKIP_STORY)

DEFAULT_ITERATION_TIMEOUT = 1800
DEFAULT_MAX_STORY_ATTEMPTS = 3
DEFAULT_SCM_ATTEMPTS = 3
DEFAULT_SCM_BACKOFF_BASE = 1.0


@dataclass
class RunOptions:
    """Knobs shared by every run started from one ops directory."""
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_cost_usd: Optional[float] = None
    max_wall_clock_seconds: Optional[float] = None
    iteration_timeout: float = DEFAULT_ITERATION_TIMEOUT  # Seconds per agent iteration
    max_story_attempts: int = DEFAULT_MAX_STORY_ATTEMPTS  # Retryable failures before fatal
    fatal_story_policy: str = POLICY_FAIL_RUN
    scm_attempts: int = DEFAULT_SCM_ATTEMPTS  # Total tries per git/gh call
    scm_backoff_base: float = DEFAULT_SCM_BACKOFF_BASE  # Seconds; doubles per retry
    merge_on_complete: bool = False
    base_branch: str = "main"
    repo_path: Optional[Path] = None

    def budget(self) -> BudgetConfig:
        return BudgetConfig(
            max_iterations=self.max_iterations,
            max_cost_usd=self.max_cost_usd,
            max_wall_clock_seconds=self.max_wall_clock_seconds,
        )


def _int(env: dict, key: str, default: int, minimum: int = 1) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer (got '{raw}')") from e
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum} (got {value})")
    return value


def _float(env: dict, key: str, default: Optional[float], minimum: float = 0.0,
           positive: bool = False) -> Optional[float]:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number (got '{raw}')") from e
    if positive and value <= 0:
        raise ConfigError(f"{key} must be > 0 (got {value})")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum} (got {value})")
    return value


def _bool(env: dict, key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def parse_run_options(env: dict) -> RunOptions:
    """Build RunOptions from a KEY=value dict.

    Raises:
        ConfigError: On malformed or out-of-range values
    """
    policy = env.get("FATAL_STORY_POLICY", POLICY_FAIL_RUN).strip().lower() or POLICY_FAIL_RUN
    if policy not in FATAL_STORY_POLICIES:
        logger.warning(
            f"Unknown FATAL_STORY_POLICY '{policy}', falling back to '{POLICY_FAIL_RUN}'"
        )
        policy = POLICY_FAIL_RUN

    repo = env.get("REPO_PATH")
    return RunOptions(
        max_iterations=_int(env, "MAX_ITERATIONS", DEFAULT_MAX_ITERATIONS),
        max_cost_usd=_float(env, "MAX_COST_USD", None),
        max_wall_clock_seconds=_float(env, "MAX_WALL_CLOCK_SECONDS", None),
        iteration_timeout=_float(env, "ITERATION_TIMEOUT", DEFAULT_ITERATION_TIMEOUT, positive=True),
        max_story_attempts=_int(env, "MAX_STORY_ATTEMPTS", DEFAULT_MAX_STORY_ATTEMPTS),
        fatal_story_policy=policy,
        scm_attempts=_int(env, "SCM_ATTEMPTS", DEFAULT_SCM_ATTEMPTS),
        scm_backoff_base=_float(env, "SCM_BACKOFF_BASE", DEFAULT_SCM_BACKOFF_BASE),
        merge_on_complete=_bool(env, "MERGE_ON_COMPLETE", False),
        base_branch=env.get("BASE_BRANCH", "main") or "main",
        repo_path=Path(repo) if repo else None,
    )


def load_run_options(ops_dir: Optional[Path], environ: dict | None = None) -> RunOptions:
    """Load storyloop.env from ops_dir (if present) and apply STORYLOOP_* overrides.

    Raises:
        ConfigError: If the file is malformed or a value is invalid
    """
    env: dict = {}
    if ops_dir is not None:
        config_path = Path(ops_dir) / CONFIG_FILENAME
        if config_path.exists():
            try:
                env.update(envparse.load_env(str(config_path)))
            except ValueError as e:
                raise ConfigError(f"{config_path}: {e}") from e

    try:
        env.update(envparse.env_overrides(ENV_PREFIX, os.environ if environ is None else environ))
    except ValueError as e:
        raise ConfigError(str(e)) from e

    return parse_run_options(env)


def default_ops_dir() -> Path:
    """Ops directory: $STORYLOOP_OPS_DIR or ./.storyloop"""
    return Path(os.environ.get("STORYLOOP_OPS_DIR", ".storyloop")).resolve()
