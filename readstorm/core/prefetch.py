"""
阅读器自动预取

规划器根据当前阅读位置 (锚点章节) 和章节下载状态给出下载窗口;
策略层决定本次触发是否真的下发窗口任务。
"""

from .models import ChapterStatus, ReaderAutoDownloadPlan

# 用户跳章 / 当前章强制兜底: 只要窗口非空就下发
PRIORITY_TRIGGERS = frozenset({"jump", "force-current"})


class ReaderAutoDownloadPlanner:

    def __init__(self, repository):
        self.repository = repository

    def build_plan(self, book_id: str, anchor_chapter_index: int,
                   batch_size: int, low_watermark: int) -> ReaderAutoDownloadPlan:
        chapters = self.repository.get_chapters(book_id)
        if not chapters:
            return ReaderAutoDownloadPlan()

        count = len(chapters)
        anchor = min(max(anchor_chapter_index, 0), count - 1)
        batch = max(1, batch_size)
        watermark = max(1, low_watermark)

        consecutive_done = 0
        for chapter in chapters[anchor:]:
            if chapter.status != ChapterStatus.DONE:
                break
            consecutive_done += 1

        anchor_done = chapters[anchor].status == ChapterStatus.DONE
        should_queue = not anchor_done or consecutive_done < watermark

        # Pending / Failed / Downloading 都视为缺口
        gaps = [c.index_no for c in chapters if c.status != ChapterStatus.DONE]
        first_gap = min(gaps) if gaps else -1

        take = min(batch, count - anchor)
        return ReaderAutoDownloadPlan(
            should_queue_window=should_queue,
            window_start_index=anchor,
            window_take_count=max(0, take),
            consecutive_done_after_anchor=consecutive_done,
            has_gap=first_gap >= 0,
            first_gap_index=first_gap,
        )


class ReaderAutoPrefetchPolicy:

    @staticmethod
    def should_queue_window(plan: ReaderAutoDownloadPlan, trigger: str) -> bool:
        if plan.window_take_count <= 0:
            return False
        if (trigger or "").strip().lower() in PRIORITY_TRIGGERS:
            return True
        return plan.should_queue_window
