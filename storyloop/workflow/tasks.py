"""Prefect task wrappers for source-control calls.

Wraps provider calls with @task decorators to get:
- Automatic retry with exponential backoff for transient ScmErrors
- Structured logging
- Observability (when connected to Prefect server)

Permanent errors (auth, permissions) are not retried; the retry condition
inspects the raised ScmError's transient flag.

Default retry settings are overridden per run with .with_options() from
storyloop.runner.branches.
"""

from typing import TYPE_CHECKING

from prefect import task
from prefect.cache_policies import NONE
from prefect.tasks import exponential_backoff

from storyloop.lib.github import BranchRef, ScmError

if TYPE_CHECKING:
    from storyloop.lib.github import ScmProvider


def retry_if_transient(task, task_run, state) -> bool:
    """Retry only ScmErrors flagged transient."""
    try:
        state.result()
    except ScmError as exc:
        return exc.transient
    except Exception:
        return False
    return False


SCM_TASK_OPTIONS = dict(
    retries=2,
    retry_delay_seconds=exponential_backoff(backoff_factor=1),
    retry_condition_fn=retry_if_transient,
    cache_policy=NONE,  # Providers hold live subprocess state
)


@task(name="scm_branch_exists", description="Check whether a branch name is taken", **SCM_TASK_OPTIONS)
def task_branch_exists(provider: "ScmProvider", name: str) -> bool:
    return provider.branch_exists(name)


@task(name="scm_create_branch", description="Create the run branch", **SCM_TASK_OPTIONS)
def task_create_branch(provider: "ScmProvider", name: str, base: str) -> BranchRef:
    return provider.create_branch(name, base)


@task(name="scm_push", description="Push the run branch", **SCM_TASK_OPTIONS)
def task_push(provider: "ScmProvider", ref: BranchRef) -> None:
    """Push with Prefect retry handling.

    Retries handle transient network failures; a rejected credential fails at once.
    """
    provider.push(ref)


@task(name="scm_open_pr", description="Open the run pull request", **SCM_TASK_OPTIONS)
def task_open_pull_request(provider: "ScmProvider", ref: BranchRef, title: str, body: str) -> tuple[int, str]:
    return provider.open_pull_request(ref, title, body)


@task(name="scm_merge_pr", description="Merge the run pull request", **SCM_TASK_OPTIONS)
def task_merge_pull_request(provider: "ScmProvider", number: int) -> None:
    provider.merge_pull_request(number)
