"""Tests for the prompts module."""

import pytest

from storyloop.lib.prompts import (
    PromptError,
    build_section,
    bullet_list,
    clear_cache,
    load_prompt,
    render_prompt,
    template_fields,
)


def story_vars(**overrides):
    values = dict(
        project="acme",
        story_id="US-001",
        title="Login form",
        epic="Auth",
        attempt=1,
        max_attempts=3,
        branch="feature/login",
        description_section="",
        criteria_section="",
        completed_section="",
        previous_error_section="",
        system_section="",
        complete_marker="STORY_COMPLETE",
        blocked_marker="STORY_BLOCKED:",
    )
    values.update(overrides)
    return values


class TestLoadPrompt:
    """Tests for load_prompt function."""

    def test_load_existing_prompt(self):
        clear_cache()
        content = load_prompt("story")
        assert "{story_id}" in content
        assert "CRITICAL:" in content

    def test_html_comments_stripped(self):
        clear_cache()
        content = load_prompt("story")
        assert "<!--" not in content
        assert "-->" not in content

    def test_load_nonexistent_prompt_raises(self):
        clear_cache()
        with pytest.raises(PromptError) as exc_info:
            load_prompt("nonexistent_prompt_xyz")
        assert "not found" in str(exc_info.value)

    def test_caching_works(self):
        clear_cache()
        assert load_prompt("story") is load_prompt("story")

    def test_template_fields(self):
        clear_cache()
        assert template_fields("story") == set(story_vars())


class TestRenderPrompt:
    """Tests for render_prompt function."""

    def test_render_with_variables(self):
        clear_cache()
        result = render_prompt("story", **story_vars())
        assert "Story US-001: Login form" in result
        assert "`feature/login`" in result
        assert "Attempt: 1 of 3" in result
        assert "STORY_COMPLETE" in result

    def test_system_section_comes_first(self):
        clear_cache()
        result = render_prompt("story", **story_vars(system_section="Always use tabs.\n\n"))
        assert result.startswith("Always use tabs.")

    def test_render_missing_variable_raises(self):
        clear_cache()
        with pytest.raises(PromptError) as exc_info:
            render_prompt("story", story_id="US-001")
        assert "Missing required variable" in str(exc_info.value)
        assert "title" in str(exc_info.value)
        assert "story_id" not in str(exc_info.value)

    def test_extra_values_ignored(self):
        clear_cache()
        assert "US-001" in render_prompt("story", unused="x", **story_vars())


class TestBuildSection:
    """Tests for build_section function."""

    def test_with_content(self):
        assert build_section("Hello world", "## Title") == "## Title\n\nHello world\n"

    def test_with_none_and_empty_msg(self):
        assert build_section(None, "## Title", "Nothing here") == "## Title\n\nNothing here\n"

    def test_with_none_and_no_empty_msg(self):
        assert build_section(None, "## Title") == ""


class TestBulletList:

    def test_items(self):
        assert bullet_list(["a", "b"]) == "- a\n- b"

    def test_empty(self):
        assert bullet_list([]) == ""
