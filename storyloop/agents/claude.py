"""
Claude agent integration for storyloop.

Claude is the agent executor: it implements one story per iteration on the
run branch. The CLI runs in stream-json mode, so stdout carries one JSON
object per line which we translate into executor messages as they arrive:

  {"type": "assistant", "message": {"content": [{"type": "text", ...},
                                                 {"type": "tool_use", ...}]}}
  {"type": "result", "is_error": false, "result": "...", "total_cost_usd": 0.12, ...}
"""

import json
import logging
import os
import re
import subprocess
import threading
from pathlib import Path
from typing import Iterator, Optional

from storyloop.agents.executor import (
    ExecutorError,
    ExecutorMessage,
    FatalExecutorError,
    StoryContext,
    TextChunk,
    ToolInvocation,
    Verdict,
)
from storyloop.lib.agents_config import AgentsConfig, build_agent_argv
from storyloop.lib.prompts import bullet_list, build_section, render_prompt

logger = logging.getLogger(__name__)

COMPLETE_MARKER = "STORY_COMPLETE"
BLOCKED_MARKER = "STORY_BLOCKED:"

CREDENTIAL_ENV = "CLAUDE_CODE_OAUTH_TOKEN"

# CLI error text that means no retry can succeed
AUTH_ERROR_PATTERN = re.compile(
    r"authentication_error"
    r"|invalid api key"
    r"|please run /login"
    r"|oauth token (?:has expired|is invalid|revoked)"
    r"|\b(?:http|api error:?|status(?: code)?:?) 401\b",
    re.IGNORECASE,
)

# Result subtypes for limits the CLI hit on its own; always worth another attempt
LIMIT_SUBTYPE_PREFIX = "error_max"

TOOL_DETAIL_KEYS = ("command", "file_path", "path", "pattern", "url", "description", "query")
MAX_TOOL_DETAIL = 200


def _looks_like_auth_error(text: str) -> bool:
    return AUTH_ERROR_PATTERN.search(text) is not None


def summarize_tool_input(tool_input) -> str:
    """Short human-readable detail for a tool_use block."""
    if isinstance(tool_input, dict):
        for key in TOOL_DETAIL_KEYS:
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                return value[:MAX_TOOL_DETAIL]
        detail = json.dumps(tool_input, sort_keys=True)
    else:
        detail = str(tool_input)
    return detail[:MAX_TOOL_DETAIL]


def parse_result_verdict(data: dict) -> Verdict:
    """Turn the final {"type": "result"} message into a Verdict."""
    usage = data.get("usage") or {}
    tokens = int(usage.get("input_tokens", 0) or 0) + int(usage.get("output_tokens", 0) or 0)
    cost = float(data.get("total_cost_usd", data.get("cost_usd", 0.0)) or 0.0)
    text = data.get("result") or ""

    subtype = data.get("subtype") or "success"
    if data.get("is_error") or subtype != "success":
        reason = text or subtype or "agent reported an error"
        fatal = not subtype.startswith(LIMIT_SUBTYPE_PREFIX) and _looks_like_auth_error(reason)
        return Verdict(success=False, reason=reason, fatal=fatal, cost=cost, tokens=tokens)

    tail = text.strip().splitlines()[-3:] if text.strip() else []
    for line in reversed(tail):
        stripped = line.strip()
        if stripped.startswith(BLOCKED_MARKER):
            reason = stripped[len(BLOCKED_MARKER):].strip() or "agent cannot proceed"
            return Verdict(success=False, reason=reason, fatal=True, cost=cost, tokens=tokens)
        if stripped == COMPLETE_MARKER or stripped.endswith(COMPLETE_MARKER):
            return Verdict(success=True, cost=cost, tokens=tokens)

    summary = tail[-1].strip() if tail else "agent finished without confirming the story"
    return Verdict(success=False, reason=summary, cost=cost, tokens=tokens)


def parse_stream_line(line: str) -> list[ExecutorMessage]:
    """
    Translate one stream-json line into executor messages.

    Lines we don't care about (system init, tool results) yield nothing.

    Raises:
        ExecutorError: If the line is not valid JSON
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ExecutorError(f"Invalid JSON from agent: {e} (line: {line[:100]})") from e

    kind = data.get("type")
    if kind == "assistant":
        messages: list[ExecutorMessage] = []
        for block in (data.get("message") or {}).get("content") or []:
            if block.get("type") == "text" and block.get("text"):
                messages.append(TextChunk(text=block["text"]))
            elif block.get("type") == "tool_use":
                messages.append(ToolInvocation(
                    tool=block.get("name", "unknown"),
                    detail=summarize_tool_input(block.get("input")),
                ))
        return messages
    if kind == "result":
        return [parse_result_verdict(data)]
    return []


class ClaudeExecutor:
    """Runs the Claude CLI once per iteration and streams its output."""

    def __init__(self, repo_path: Path, config: AgentsConfig | None = None):
        self.repo_path = Path(repo_path)
        self.config = config or AgentsConfig()
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def build_prompt(self, context: StoryContext) -> str:
        """Build the story prompt for Claude."""
        completed = bullet_list(context.completed_stories) if context.completed_stories else None
        return render_prompt(
            "story",
            project=context.project or self.repo_path.name,
            story_id=context.story_id,
            title=context.title,
            epic=context.epic,
            attempt=context.attempt,
            max_attempts=context.max_attempts,
            branch=context.branch,
            description_section=build_section(context.description, "## Description"),
            criteria_section=build_section(
                bullet_list(context.acceptance_criteria), "## Acceptance criteria",
                empty_msg="No explicit criteria. Use the title and description.",
            ),
            completed_section=build_section(completed, "## Already implemented in this run"),
            previous_error_section=build_section(
                context.previous_error, "## Previous attempt failed"
            ),
            system_section=f"{context.system_prompt}\n\n" if context.system_prompt else "",
            complete_marker=COMPLETE_MARKER,
            blocked_marker=BLOCKED_MARKER,
        )

    def _build_env(self, credential: Optional[str]) -> dict:
        # Remove ANTHROPIC_API_KEY so Claude uses the OAuth credential instead
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}
        env.update(self.config.env)
        if credential:
            env[CREDENTIAL_ENV] = credential
        return env

    def execute(self, context: StoryContext, credential: Optional[str]) -> Iterator[ExecutorMessage]:
        """
        Run Claude for one story and yield messages as they stream in.

        Raises:
            FatalExecutorError: Agent binary missing or credential rejected
            ExecutorError: Crash, non-zero exit without a verdict, bad output
        """
        prompt = self.build_prompt(context)
        argv = build_agent_argv(self.config, self.repo_path, prompt)

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(self.repo_path),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=self._build_env(credential),
            )
        except FileNotFoundError as e:
            raise FatalExecutorError(f"Agent command not found: {argv[0]}") from e
        except OSError as e:
            raise ExecutorError(f"Failed to start agent: {e}") from e

        with self._lock:
            self._proc = proc

        stderr_chunks: list[str] = []
        stderr_reader = threading.Thread(
            target=lambda: stderr_chunks.append(proc.stderr.read()),
            name=f"claude-stderr-{context.run_id}",
            daemon=True,
        )
        stderr_reader.start()

        verdict: Optional[Verdict] = None
        try:
            try:
                if self.config.prompt_on_stdin:
                    proc.stdin.write(prompt)
                proc.stdin.close()
            except BrokenPipeError:
                logger.warning(f"[AGENT] {context.run_id}: agent closed stdin early")

            for line in proc.stdout:
                if not line.strip():
                    continue
                for message in parse_stream_line(line):
                    if isinstance(message, Verdict):
                        verdict = message
                    else:
                        yield message
            returncode = proc.wait()
        finally:
            with self._lock:
                self._proc = None
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        stderr_reader.join(timeout=5)
        stderr = "".join(stderr_chunks).strip()

        if verdict is not None:
            yield verdict
            return

        if returncode < 0:
            raise ExecutorError(f"Agent terminated by signal {-returncode}")
        if stderr and _looks_like_auth_error(stderr):
            raise FatalExecutorError(f"Agent rejected credential: {stderr[:300]}")
        raise ExecutorError(
            f"Agent exited with code {returncode} without a result"
            + (f": {stderr[:300]}" if stderr else "")
        )

    def abort(self) -> None:
        """Kill the in-flight agent process, if any."""
        with self._lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            logger.warning(f"[AGENT] Killing agent process pid={proc.pid}")
            proc.kill()
