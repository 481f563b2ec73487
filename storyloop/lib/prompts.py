"""
Prompt templates for the agent.

Templates live in storyloop/prompts/<name>.md and use str.format fields
such as {story_id}; literal braces are doubled. <!-- ... --> blocks are
notes for whoever edits the template and never reach the agent.
"""

import logging
import re
import string
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

_NOTE_BLOCK = re.compile(r"<!--.*?-->\s*", re.DOTALL)


class PromptError(Exception):
    """Template missing, or rendered without all of its fields."""


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Template text with editor notes removed. Cached per name."""
    path = PROMPTS_DIR / f"{name}.md"
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise PromptError(f"Prompt template '{name}' not found at {path}") from None
    logger.debug(f"[PROMPT] Loaded {path.name}")
    return _NOTE_BLOCK.sub("", text).lstrip()


def template_fields(name: str) -> set[str]:
    """Field names the template expects."""
    return {field for _, field, _, _ in string.Formatter().parse(load_prompt(name)) if field}


def render_prompt(name: str, **values) -> str:
    """Fill a template. Every field must be supplied; extra values are ignored."""
    missing = sorted(template_fields(name) - values.keys())
    if missing:
        raise PromptError(f"Missing required variable(s) {missing} for prompt '{name}'")
    return load_prompt(name).format(**values)


def build_section(content: str | None, header: str, empty_msg: str | None = None) -> str:
    """Markdown section under header, or "" when there is nothing to show."""
    body = content or empty_msg
    if body is None:
        return ""
    return f"{header}\n\n{body}\n"


def bullet_list(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def clear_cache() -> None:
    load_prompt.cache_clear()
