"""Unit tests for ``tempo.timeboxing.splitter`` and the duration model.

Covers:
- ``round_to_nearest_block`` rounding and minimum clamp
- Splitting a 130-minute task into two 65-minute parts with a long break
- Duration conservation and the uninterrupted-work cap
- Idempotence on an already valid layout
- Targeted tightening of the offending block only
"""

from __future__ import annotations

import pytest

from tempo.timeboxing.constants import DURATION_RULES, round_to_nearest_block
from tempo.timeboxing.models import ProposedStory, ProposedTask, TimeBoxType
from tempo.timeboxing.splitter import (
    SplitViolation,
    break_minutes,
    recalculate_story_duration,
    split_for_retry,
)

# ── Helpers ──────────────────────────────────────────────────────────────


def _story(title: str, *durations: int, **kwargs) -> ProposedStory:
    return ProposedStory(
        title=title,
        tasks=[
            ProposedTask(id=f"{title}-{i}", title=f"{title} task {i}", duration=d)
            for i, d in enumerate(durations)
        ],
        **kwargs,
    )


def _work_runs(story: ProposedStory) -> list[int]:
    runs, run = [], 0
    for task in story.tasks:
        run += task.duration
        if task.break_after is not None:
            runs.append(run)
            run = 0
    runs.append(run)
    return runs


def _break_total(story: ProposedStory) -> int:
    return sum(break_minutes(t.break_after) for t in story.tasks)


# ── Duration model ───────────────────────────────────────────────────────


class TestRoundToNearestBlock:
    @pytest.mark.parametrize(
        ("minutes", "expected"),
        [(0, 5), (2, 5), (7, 5), (7.5, 10), (8, 10), (44, 45), (130, 130)],
    )
    def test_rounds_to_block(self, minutes: float, expected: int) -> None:
        assert round_to_nearest_block(minutes) == expected

    def test_total_validity(self) -> None:
        assert DURATION_RULES.is_valid_total(5)
        assert not DURATION_RULES.is_valid_total(0)
        assert not DURATION_RULES.is_valid_total(42)


# ── Splitting ────────────────────────────────────────────────────────────


class TestSplitLongTasks:
    def test_130_minutes_becomes_two_parts_with_long_break(self) -> None:
        [story] = split_for_retry([_story("Report", 130)])

        assert [t.duration for t in story.tasks] == [65, 65]
        assert all(t.duration % DURATION_RULES.block_size == 0 for t in story.tasks)
        assert sum(t.duration for t in story.tasks) == 130
        assert story.tasks[0].break_after is TimeBoxType.LONG_BREAK
        assert story.tasks[1].break_after is None
        assert story.tasks[0].title == "Report task 0 (Part 1 of 2)"
        assert story.tasks[1].title == "Report task 0 (Part 2 of 2)"
        assert {t.original_title for t in story.tasks} == {"Report task 0"}
        assert story.estimated_duration == 130 + DURATION_RULES.long_break

    def test_uneven_split_puts_remainder_first(self) -> None:
        [story] = split_for_retry([_story("Big", 200)])
        assert [t.duration for t in story.tasks] == [70, 65, 65]

    def test_parts_keep_task_id(self) -> None:
        [story] = split_for_retry([_story("Big", 180)])
        assert {t.id for t in story.tasks} == {"Big-0"}

    def test_input_is_not_mutated(self) -> None:
        original = _story("Report", 130)
        split_for_retry([original])
        assert len(original.tasks) == 1
        assert original.tasks[0].duration == 130


class TestBreakInsertion:
    def test_forces_break_when_run_exceeds_cap(self) -> None:
        [story] = split_for_retry([_story("Run", 50, 50, 50)])
        assert story.tasks[0].break_after is TimeBoxType.LONG_BREAK
        assert story.tasks[1].break_after is TimeBoxType.LONG_BREAK
        assert max(_work_runs(story)) <= DURATION_RULES.max_work_without_break

    def test_existing_break_resets_counter(self) -> None:
        story = ProposedStory(
            title="Paced",
            tasks=[
                ProposedTask(title="a", duration=60, break_after=TimeBoxType.SHORT_BREAK),
                ProposedTask(title="b", duration=60),
            ],
        )
        [result] = split_for_retry([story])
        assert result.tasks[0].break_after is TimeBoxType.SHORT_BREAK
        assert result.tasks[1].break_after is None

    def test_exactly_at_cap_needs_no_break(self) -> None:
        [story] = split_for_retry([_story("Edge", 45, 45)])
        assert all(t.break_after is None for t in story.tasks)

    @pytest.mark.parametrize(
        "durations",
        [(130,), (95, 95), (30, 30, 30, 30), (180, 5, 90), (25, 70, 15, 60)],
    )
    def test_conservation_and_cap(self, durations: tuple[int, ...]) -> None:
        [story] = split_for_retry([_story("Mixed", *durations)])
        work = sum(t.duration for t in story.tasks)
        assert work == sum(durations)
        assert story.estimated_duration == work + _break_total(story)
        assert max(_work_runs(story)) <= DURATION_RULES.max_work_without_break


class TestIdempotence:
    def test_valid_layout_is_unchanged(self) -> None:
        stories = [_story("A", 25, 25), _story("B", 45)]
        once = split_for_retry(stories)
        twice = split_for_retry(once)
        assert twice == once
        assert [t.duration for t in once[0].tasks] == [25, 25]

    def test_split_output_is_a_fixed_point(self) -> None:
        once = split_for_retry([_story("Long", 130, 60, 40)])
        assert split_for_retry(once) == once


class TestTargetedTightening:
    def test_only_offending_block_is_tightened(self) -> None:
        stories = [_story("A", 80), _story("B", 80)]
        result = split_for_retry(stories, SplitViolation(block="A"))

        assert result[0].max_task_duration == 45
        assert [t.duration for t in result[0].tasks] == [40, 40]
        assert result[1].max_task_duration is None
        assert [t.duration for t in result[1].tasks] == [80]

    def test_repeated_violations_converge(self) -> None:
        stories = [_story("A", 60)]
        for _ in range(6):
            stories = split_for_retry(stories, SplitViolation(block="A"))
        assert stories[0].max_task_duration == DURATION_RULES.min_duration
        assert all(t.duration == 5 for t in stories[0].tasks)
        assert sum(t.duration for t in stories[0].tasks) == 60

    def test_resplit_renumbers_parts_instead_of_nesting(self) -> None:
        once = split_for_retry([_story("Report", 130)])
        [story] = split_for_retry(once, SplitViolation(block="Report"))

        assert [t.duration for t in story.tasks] == [45, 45, 40]
        assert [t.title for t in story.tasks] == [
            "Report task 0 (Part 1 of 3)",
            "Report task 0 (Part 2 of 3)",
            "Report task 0 (Part 3 of 3)",
        ]
        assert {t.original_title for t in story.tasks} == {"Report task 0"}

    def test_matches_original_story_title(self) -> None:
        story = _story("Renamed", 80, original_title="Original")
        [result] = split_for_retry([story], SplitViolation(block="Original"))
        assert result.max_task_duration == 45


def test_recalculate_story_duration_counts_breaks() -> None:
    tasks = [
        ProposedTask(title="a", duration=25, break_after=TimeBoxType.SHORT_BREAK),
        ProposedTask(title="b", duration=25, break_after=TimeBoxType.LONG_BREAK),
        ProposedTask(title="c", duration=10),
    ]
    assert recalculate_story_duration(tasks) == 25 + 5 + 25 + 15 + 10
