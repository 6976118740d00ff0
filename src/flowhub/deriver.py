"""Summary: Derives task drafts from classified items.

Importance: Maps one item to zero, one, or several work items.
Alternatives: Create exactly one task per message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flowhub.classifier import GENERIC_TITLES, SKIP_PATTERNS, WORK_PATTERNS, extract_title
from flowhub.models import SKIP, ClassificationResult, RawItem, TaskDraft


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskDeriver:
    """Summary: Turns classification results into task drafts.

    Importance: Keeps skip handling, title cleanup, and multi-task tagging in one place.
    Alternatives: Let the conversion endpoint build tasks inline.
    """

    def derive(
        self,
        item: RawItem,
        classifications: list[ClassificationResult],
        is_priority_person: bool = False,
    ) -> list[TaskDraft]:
        """Summary: Build drafts for every actionable classification.

        Importance: Multi-deadline items become a tagged group of N drafts.
        Alternatives: Merge every deadline into one task description.
        """

        if not is_priority_person and _is_system_item(item):
            logger.debug("Item %s matches a system pattern; no task", item.external_id)
            return []
        actionable = [result for result in classifications if result.priority != SKIP]
        total = len(actionable)
        drafts: list[TaskDraft] = []
        for index, result in enumerate(actionable):
            title = result.title.strip()
            if not title or title.lower() in GENERIC_TITLES:
                title = extract_title(item.subject, item.body, item.source_app)
            metadata = {
                "source_item_id": item.external_id,
                "is_priority_person": is_priority_person,
                "classification_source": result.source,
            }
            if total > 1:
                metadata.update({"multi_task": True, "task_index": index + 1, "total_tasks": total})
            drafts.append(
                TaskDraft(
                    title=title,
                    description=result.description,
                    priority=result.priority,
                    estimated_minutes=result.estimated_minutes,
                    due_at=result.due_at,
                    metadata=metadata,
                )
            )
        return drafts


def _is_system_item(item: RawItem) -> bool:
    text = f"{item.subject} {item.body}"
    if any(pattern.search(text) for pattern in WORK_PATTERNS):
        return False
    return any(pattern.search(text) for pattern in SKIP_PATTERNS)
