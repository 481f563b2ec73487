"""
Agent command configuration.

<ops_dir>/agents.yaml picks the command that runs the coding agent for an
iteration, plus any extra environment it should see:

    agent:
      command: claude -p --output-format stream-json --verbose --model sonnet
      env:
        DISABLE_TELEMETRY: "1"

Two placeholders are understood in the command:

- {repo}: path of the repository the agent works in
- {prompt}: the story prompt as a single argument. Without it the prompt
  is written to the agent's stdin.

Whatever the command runs must print Claude stream-json on stdout, since
that is what ClaudeExecutor parses.
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from storyloop.lib.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "agents.yaml"

DEFAULT_AGENT_COMMAND = "claude -p --output-format stream-json --verbose --dangerously-skip-permissions"

PROMPT_VAR = "{prompt}"
REPO_VAR = "{repo}"
KNOWN_VARIABLES = {"prompt", "repo"}


@dataclass
class AgentsConfig:
    """Agent command from agents.yaml."""
    command: str = DEFAULT_AGENT_COMMAND
    env: dict[str, str] = field(default_factory=dict)   # Added to the agent's environment

    @property
    def binary(self) -> str:
        parts = shlex.split(self.command)
        return parts[0] if parts else ""

    @property
    def prompt_on_stdin(self) -> bool:
        return PROMPT_VAR not in self.command


def _check_variables(command: str, source: Path) -> None:
    unknown = sorted(set(re.findall(r"\{(\w+)\}", command)) - KNOWN_VARIABLES)
    if unknown:
        raise ConfigError(f"{source}: unknown placeholders in agent command: {unknown}")


def load_agents_config(config_dir: Optional[Path]) -> AgentsConfig:
    """Read agents.yaml from config_dir.

    A missing or unparseable file gives the default Claude command. A file
    that parses but names unknown placeholders raises ConfigError.
    """
    if config_dir is None:
        return AgentsConfig()

    config_path = Path(config_dir) / CONFIG_FILENAME
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"[CONFIG] Failed to parse {config_path}, using default agent: {e}")
        return AgentsConfig()

    agent = data.get("agent") if isinstance(data, dict) else None
    if not isinstance(agent, dict):
        if data:
            logger.warning(f"[CONFIG] {config_path} has no 'agent' mapping, using default agent")
        return AgentsConfig()

    command = str(agent.get("command") or DEFAULT_AGENT_COMMAND)
    _check_variables(command, config_path)

    env = agent.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"{config_path}: agent.env must be a mapping")

    return AgentsConfig(command=command, env={str(k): str(v) for k, v in env.items()})


def build_agent_argv(config: AgentsConfig, repo: Path, prompt: str) -> list[str]:
    """Split the command into argv and fill in placeholders.

    Substitution happens after shlex.split so quotes and newlines in the
    prompt reach the agent untouched.

    Example:
        >>> build_agent_argv(AgentsConfig(command="agent -C {repo} {prompt}"), Path("/src"), "do it")
        ['agent', '-C', '/src', 'do it']
    """
    return [
        arg.replace(REPO_VAR, str(repo)).replace(PROMPT_VAR, prompt)
        for arg in shlex.split(config.command)
    ]


def check_binary_available(binary: str) -> bool:
    """Check if a binary is available in PATH."""
    return shutil.which(binary) is not None
