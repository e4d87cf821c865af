"""
Tests for readstorm.core.prefetch (reader prefetch planner + policy)

Run: pytest tests/test_prefetch.py -v
"""

import pytest

from readstorm.core.models import ChapterEntity, ChapterStatus, ReaderAutoDownloadPlan
from readstorm.core.prefetch import ReaderAutoDownloadPlanner, ReaderAutoPrefetchPolicy

DONE = ChapterStatus.DONE
PENDING = ChapterStatus.PENDING


class FakeRepository:
    def __init__(self, statuses):
        self.chapters = [
            ChapterEntity(book_id="b", index_no=i, title=f"第{i + 1}章", status=s)
            for i, s in enumerate(statuses)
        ]

    def get_chapters(self, book_id):
        return list(self.chapters)


def plan_for(statuses, anchor, batch=10, watermark=3):
    return ReaderAutoDownloadPlanner(FakeRepository(statuses)).build_plan("b", anchor, batch, watermark)


# ─── Planner ───────────────────────────────────────────────────────────────

class TestPlanner:
    def test_done_through_end_needs_no_window(self):
        plan = plan_for([DONE] * 10, anchor=5, watermark=3)
        assert plan.should_queue_window is False
        assert plan.consecutive_done_after_anchor == 5
        assert plan.has_gap is False
        assert plan.first_gap_index == -1

    def test_anchor_pending_queues_window(self):
        statuses = [DONE] * 10
        statuses[5] = PENDING
        plan = plan_for(statuses, anchor=5)
        assert plan.should_queue_window is True
        assert plan.window_start_index == 5
        assert plan.window_take_count == 5
        assert plan.first_gap_index == 5

    def test_below_watermark(self):
        statuses = [DONE] * 7 + [PENDING] * 3
        plan = plan_for(statuses, anchor=5, watermark=3)
        assert plan.consecutive_done_after_anchor == 2
        assert plan.should_queue_window is True

    def test_gap_before_anchor(self):
        statuses = [DONE, ChapterStatus.FAILED, DONE, DONE, DONE, DONE]
        plan = plan_for(statuses, anchor=2, watermark=2)
        assert plan.should_queue_window is False
        assert plan.has_gap and plan.first_gap_index == 1

    def test_anchor_clamped(self):
        plan = plan_for([PENDING] * 4, anchor=99)
        assert plan.window_start_index == 3
        assert plan.window_take_count == 1
        assert plan_for([PENDING] * 4, anchor=-3).window_start_index == 0

    def test_sizes_floored_at_one(self):
        plan = plan_for([PENDING] * 4, anchor=0, batch=0, watermark=0)
        assert plan.window_take_count == 1

    def test_empty_book_is_noop(self):
        assert plan_for([], anchor=3) == ReaderAutoDownloadPlan()


# ─── Policy ────────────────────────────────────────────────────────────────

class TestPolicy:
    @pytest.mark.parametrize("trigger", ["jump", "JUMP", "force-current", " Force-Current "])
    def test_priority_triggers_override(self, trigger):
        plan = ReaderAutoDownloadPlan(should_queue_window=False, window_take_count=3)
        assert ReaderAutoPrefetchPolicy.should_queue_window(plan, trigger) is True

    def test_other_trigger_follows_plan(self):
        plan = ReaderAutoDownloadPlan(should_queue_window=False, window_take_count=3)
        assert ReaderAutoPrefetchPolicy.should_queue_window(plan, "open") is False
        plan = ReaderAutoDownloadPlan(should_queue_window=True, window_take_count=3)
        assert ReaderAutoPrefetchPolicy.should_queue_window(plan, "open") is True

    def test_empty_window_never_queued(self):
        plan = ReaderAutoDownloadPlan(should_queue_window=True, window_take_count=0)
        assert ReaderAutoPrefetchPolicy.should_queue_window(plan, "jump") is False
