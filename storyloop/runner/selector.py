"""Story selection: pick the next story to work on."""

from typing import Optional

from storyloop.runner.models import Backlog, Story


def eligible(story: Story) -> bool:
    """A story is eligible until it passes or is blocked by a fatal failure."""
    return not story.passes and not story.blocked


def select_next(backlog: Backlog) -> Optional[Story]:
    """
    Return the eligible story with the lowest priority value.

    Ties go to the story that appears first in the backlog. Returns None
    when nothing is eligible, which is the run-completion signal.
    """
    best: Optional[Story] = None
    for story in backlog.stories:
        if not eligible(story):
            continue
        # Strict < keeps the earliest story on ties
        if best is None or story.priority < best.priority:
            best = story
    return best
