"""
Branch and pull request lifecycle for a run.

One integration branch per run, created lazily before the first
iteration, and at most one open pull request. The first successful story
pushes the branch and opens the PR; later successes only push. Provider
calls go through Prefect tasks so transient failures are retried with
exponential backoff; anything that still fails becomes a BranchError,
which is fatal to the run.

All state (branch name, PR number and URL) lives on the Run so it is
captured by checkpoints.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from prefect.tasks import exponential_backoff

from storyloop.lib.config import DEFAULT_SCM_ATTEMPTS, DEFAULT_SCM_BACKOFF_BASE
from storyloop.lib.errors import BranchError
from storyloop.lib.github import BranchRef, ScmError, ScmProvider
from storyloop.git.branch import unique_branch_name
from storyloop.runner.events import BranchCreated, EventBus, PrCreated, PrMerged
from storyloop.runner.models import Run, Story
from storyloop.workflow.tasks import (
    task_branch_exists,
    task_create_branch,
    task_merge_pull_request,
    task_open_pull_request,
    task_push,
)

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "storyloop"


@dataclass
class PullRequestUpdate:
    """What on_story_success did to the run's pull request."""
    pr_created: bool
    pr_number: Optional[int]


def build_pr_body(run: Run) -> str:
    lines = []
    if run.backlog.description:
        lines += [run.backlog.description, ""]
    lines.append("## Stories")
    lines.append("")
    for story in run.backlog.stories:
        mark = "x" if story.passes else " "
        lines.append(f"- [{mark}] {story.id}: {story.title}")
    lines += ["", f"Run: `{run.id}`"]
    return "\n".join(lines)


class BranchManager:

    def __init__(
        self,
        provider: ScmProvider,
        bus: EventBus,
        base_branch: str = "main",
        scm_attempts: int = DEFAULT_SCM_ATTEMPTS,
        scm_backoff_base: float = DEFAULT_SCM_BACKOFF_BASE,
        merge_on_complete: bool = False,
    ):
        self.provider = provider
        self.bus = bus
        self.base_branch = base_branch
        self.merge_on_complete = merge_on_complete
        retries = max(scm_attempts - 1, 0)
        self._task_options = dict(
            retries=retries,
            retry_delay_seconds=exponential_backoff(backoff_factor=scm_backoff_base)(retries) if retries else 0,
        )

    def _call(self, scm_task, action: str, *args):
        """Run a provider task with the configured retry policy.

        Raises:
            BranchError: Permanent failure or retries exhausted
        """
        try:
            return scm_task.with_options(**self._task_options)(self.provider, *args)
        except ScmError as e:
            kind = "transient, retries exhausted" if e.transient else "permanent"
            logger.error(f"[SCM] {action} failed ({kind}): {e}")
            raise BranchError(f"{action} failed: {e}") from e

    def _ref(self, run: Run) -> BranchRef:
        return BranchRef(name=run.branch_name, base=self.base_branch)

    def ensure_run_branch(self, run: Run, iteration: Optional[int] = None) -> BranchRef:
        """Return the run branch, creating it on first use.

        The backlog's branchName is used when free; otherwise -2, -3, ...
        is appended until a free name is found.
        """
        if run.branch_name:
            return self._ref(run)

        requested = run.backlog.branch_name or f"{DEFAULT_BRANCH_PREFIX}/{run.id}"
        try:
            name = unique_branch_name(
                requested,
                lambda candidate: self._call(task_branch_exists, f"check branch {candidate}", candidate),
            )
        except ValueError as e:
            raise BranchError(str(e)) from e

        ref = self._call(task_create_branch, f"create branch {name}", name, self.base_branch)
        run.branch_name = ref.name
        run.touch()
        if ref.name != requested:
            logger.info(f"[SCM] {run.id}: branch {requested} taken, using {ref.name}")
        self.bus.publish(run.id, BranchCreated(branch=ref.name), iteration=iteration)
        return ref

    def on_story_success(self, run: Run, story: Story, iteration: Optional[int] = None) -> PullRequestUpdate:
        """Push the story's work; open the run PR if this is the first success."""
        ref = self._ref(run)
        self._call(task_push, f"push {ref.name}", ref)

        if run.pr_number is not None:
            logger.info(f"[SCM] {run.id}: pushed {story.id} to PR #{run.pr_number}")
            return PullRequestUpdate(pr_created=False, pr_number=run.pr_number)

        title = f"{run.backlog.project or run.project_id}: {ref.name}"
        number, url = self._call(
            task_open_pull_request, f"open PR for {ref.name}", ref, title, build_pr_body(run)
        )
        run.pr_number = number
        run.pr_url = url
        run.touch()
        self.bus.publish(run.id, PrCreated(pr_number=number, pr_url=url), iteration=iteration)
        return PullRequestUpdate(pr_created=True, pr_number=number)

    def finish(self, run: Run) -> bool:
        """Merge the run PR if configured to. Returns True if merged."""
        if not self.merge_on_complete or run.pr_number is None:
            return False
        self._call(task_merge_pull_request, f"merge PR #{run.pr_number}", run.pr_number)
        self.bus.publish(run.id, PrMerged(pr_number=run.pr_number))
        return True
