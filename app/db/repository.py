from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import select, update, and_, or_, func, literal_column
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from app.db.models import (
    Screenshot,
    ScreenshotContent,
    ScreenshotEmbedding,
    ProcessingTask,
    SearchHistory,
    ProcessingStatus,
    utcnow,
)

DEFAULT_MAX_ATTEMPTS = 3

OUTSTANDING = (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value)

_ENGLISH = literal_column("'english'::regconfig")


# ---------------------------------------------------------------------------
# Screenshots & content
# ---------------------------------------------------------------------------

async def get_screenshot(session: AsyncSession, screenshot_id: str) -> Optional[Screenshot]:
    result = await session.execute(select(Screenshot).where(Screenshot.id == screenshot_id))
    return result.scalar_one_or_none()


async def get_user_screenshot(
    session: AsyncSession, screenshot_id: str, user_id: str, with_tasks: bool = False
) -> Optional[Screenshot]:
    stmt = select(Screenshot).where(Screenshot.id == screenshot_id, Screenshot.user_id == user_id)
    if with_tasks:
        stmt = stmt.options(selectinload(Screenshot.tasks))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_recent_screenshots(session: AsyncSession, user_id: str, limit: int = 10) -> List[Screenshot]:
    stmt = (
        select(Screenshot)
        .where(Screenshot.user_id == user_id)
        .options(selectinload(Screenshot.tasks))
        .order_by(Screenshot.created_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_content(session: AsyncSession, screenshot_id: str) -> Optional[ScreenshotContent]:
    result = await session.execute(
        select(ScreenshotContent).where(ScreenshotContent.screenshot_id == screenshot_id)
    )
    return result.scalar_one_or_none()


async def ensure_content(session: AsyncSession, screenshot_id: str) -> ScreenshotContent:
    """Return the content row for a screenshot, creating an empty one if missing."""
    content = await get_content(session, screenshot_id)
    if content is None:
        content = ScreenshotContent(screenshot_id=screenshot_id, processing_cost=0.0)
        session.add(content)
        await session.flush()
    return content


async def record_ocr_text(session: AsyncSession, screenshot_id: str, ocr_text: str) -> None:
    content = await ensure_content(session, screenshot_id)
    content.ocr_text = ocr_text
    content.ocr_completed_at = utcnow()
    await session.commit()


async def save_vision_result(
    session: AsyncSession,
    screenshot_id: str,
    description: str,
    colors: List[str],
    detected_elements: Dict[str, Any],
    cost: float,
) -> None:
    content = await ensure_content(session, screenshot_id)
    content.visual_description = description
    content.dominant_colors = colors
    content.detected_elements = detected_elements
    content.vision_completed_at = utcnow()
    content.processing_cost = cost
    await session.commit()


async def upsert_embeddings(
    session: AsyncSession,
    screenshot_id: str,
    text_embedding: Optional[List[float]],
    visual_embedding: Optional[List[float]],
    combined_embedding: List[float],
) -> None:
    stmt = pg_insert(ScreenshotEmbedding).values(
        screenshot_id=screenshot_id,
        text_embedding=text_embedding,
        visual_embedding=visual_embedding,
        combined_embedding=combined_embedding,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ScreenshotEmbedding.screenshot_id],
        set_={
            "text_embedding": stmt.excluded.text_embedding,
            "visual_embedding": stmt.excluded.visual_embedding,
            "combined_embedding": stmt.excluded.combined_embedding,
        },
    )
    await session.execute(stmt)
    await session.commit()


async def mark_screenshot_processing(session: AsyncSession, screenshot_id: str) -> None:
    await session.execute(
        update(Screenshot)
        .where(Screenshot.id == screenshot_id)
        .values(processing_status=ProcessingStatus.PROCESSING.value, error_message=None)
    )
    await session.commit()


async def mark_screenshot_completed(session: AsyncSession, screenshot_id: str) -> None:
    await session.execute(
        update(Screenshot)
        .where(Screenshot.id == screenshot_id)
        .values(processing_status=ProcessingStatus.COMPLETED.value, processed_at=utcnow())
    )
    await session.commit()


async def mark_screenshot_failed(session: AsyncSession, screenshot_id: str, message: str) -> None:
    await session.execute(
        update(Screenshot)
        .where(Screenshot.id == screenshot_id)
        .values(processing_status=ProcessingStatus.FAILED.value, error_message=message)
    )
    await session.commit()


# ---------------------------------------------------------------------------
# Processing queue
# ---------------------------------------------------------------------------

async def enqueue_tasks(
    session: AsyncSession, screenshot_id: str, tasks: Sequence[Tuple[str, int]]
) -> List[ProcessingTask]:
    """Insert pending tasks, skipping task types that are already outstanding."""
    result = await session.execute(
        select(ProcessingTask.task_type).where(
            ProcessingTask.screenshot_id == screenshot_id,
            ProcessingTask.status.in_(OUTSTANDING),
        )
    )
    outstanding = set(result.scalars().all())

    now = utcnow()
    rows = []
    for offset, (task_type, priority) in enumerate(tasks):
        if task_type in outstanding:
            continue
        rows.append(ProcessingTask(
            screenshot_id=screenshot_id,
            task_type=task_type,
            priority=priority,
            attempts=0,
            max_attempts=DEFAULT_MAX_ATTEMPTS,
            status=ProcessingStatus.PENDING.value,
            scheduled_at=now,
            created_at=now + timedelta(microseconds=offset),
        ))
    session.add_all(rows)
    await session.commit()
    return rows


async def claim_next_task(
    session: AsyncSession, screenshot_id: str, lease_seconds: int
) -> Optional[ProcessingTask]:
    """
    Atomically move the next runnable task for a screenshot to `processing`.

    Claims are serialised per screenshot by locking the screenshot row. Nothing
    is claimed while another task of the same screenshot holds a live lease.
    A `processing` task whose lease has expired is claimable again.
    """
    now = utcnow()
    cutoff = now - timedelta(seconds=lease_seconds)

    locked = await session.execute(
        select(Screenshot.id).where(Screenshot.id == screenshot_id).with_for_update(skip_locked=True)
    )
    if locked.first() is None:
        # Another worker is claiming for this screenshot
        await session.commit()
        return None

    busy = await session.execute(
        select(ProcessingTask.id).where(
            ProcessingTask.screenshot_id == screenshot_id,
            ProcessingTask.status == ProcessingStatus.PROCESSING.value,
            ProcessingTask.started_at >= cutoff,
        ).limit(1)
    )
    if busy.first() is not None:
        await session.commit()
        return None

    stmt = (
        select(ProcessingTask)
        .where(
            ProcessingTask.screenshot_id == screenshot_id,
            or_(
                ProcessingTask.status == ProcessingStatus.PENDING.value,
                and_(
                    ProcessingTask.status == ProcessingStatus.PROCESSING.value,
                    or_(ProcessingTask.started_at.is_(None), ProcessingTask.started_at < cutoff),
                ),
            ),
        )
        .order_by(ProcessingTask.priority.desc(), ProcessingTask.created_at, ProcessingTask.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    task = (await session.execute(stmt)).scalar_one_or_none()
    if task is None:
        await session.commit()
        return None

    task.status = ProcessingStatus.PROCESSING.value
    task.attempts = (task.attempts or 0) + 1
    task.started_at = now
    task.completed_at = None
    task.error_message = None
    await session.commit()
    return task


async def complete_task(session: AsyncSession, task_id: str, note: Optional[str] = None) -> None:
    await session.execute(
        update(ProcessingTask)
        .where(ProcessingTask.id == task_id)
        .values(status=ProcessingStatus.COMPLETED.value, completed_at=utcnow(), error_message=note)
    )
    await session.commit()


async def fail_task(session: AsyncSession, task_id: str, message: str) -> None:
    await session.execute(
        update(ProcessingTask)
        .where(ProcessingTask.id == task_id)
        .values(status=ProcessingStatus.FAILED.value, completed_at=utcnow(), error_message=message)
    )
    await session.commit()


async def complete_tasks_of_type(
    session: AsyncSession, screenshot_id: str, task_type: str, note: Optional[str] = None
) -> None:
    await session.execute(
        update(ProcessingTask)
        .where(
            ProcessingTask.screenshot_id == screenshot_id,
            ProcessingTask.task_type == task_type,
            ProcessingTask.status != ProcessingStatus.COMPLETED.value,
        )
        .values(status=ProcessingStatus.COMPLETED.value, completed_at=utcnow(), error_message=note)
    )
    await session.commit()


async def fail_tasks_of_type(session: AsyncSession, screenshot_id: str, task_type: str, message: str) -> None:
    await session.execute(
        update(ProcessingTask)
        .where(
            ProcessingTask.screenshot_id == screenshot_id,
            ProcessingTask.task_type == task_type,
            ProcessingTask.status != ProcessingStatus.COMPLETED.value,
        )
        .values(status=ProcessingStatus.FAILED.value, completed_at=utcnow(), error_message=message)
    )
    await session.commit()


async def outstanding_statuses(session: AsyncSession, screenshot_id: str) -> List[str]:
    result = await session.execute(
        select(ProcessingTask.status).where(
            ProcessingTask.screenshot_id == screenshot_id,
            ProcessingTask.status.in_(OUTSTANDING),
        )
    )
    return list(result.scalars().all())


async def list_tasks(session: AsyncSession, screenshot_id: str) -> List[ProcessingTask]:
    result = await session.execute(
        select(ProcessingTask)
        .where(ProcessingTask.screenshot_id == screenshot_id)
        .order_by(ProcessingTask.created_at)
    )
    return list(result.scalars().all())


async def reset_tasks_for_retry(session: AsyncSession, screenshot_id: str) -> int:
    result = await session.execute(
        update(ProcessingTask)
        .where(
            ProcessingTask.screenshot_id == screenshot_id,
            ProcessingTask.status.in_(
                (ProcessingStatus.FAILED.value, ProcessingStatus.PROCESSING.value)
            ),
        )
        .values(
            status=ProcessingStatus.PENDING.value,
            attempts=0,
            error_message=None,
            started_at=None,
            completed_at=None,
        )
    )
    await session.commit()
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _owned_with_content(user_id: str):
    return (
        select(Screenshot)
        .join(ScreenshotContent, ScreenshotContent.screenshot_id == Screenshot.id)
        .where(Screenshot.user_id == user_id)
    )


async def full_text_search(session: AsyncSession, user_id: str, query: str, limit: int) -> List[Screenshot]:
    document = func.to_tsvector(_ENGLISH, func.coalesce(ScreenshotContent.ocr_text, ""))
    ts_query = func.websearch_to_tsquery(_ENGLISH, query)
    stmt = _owned_with_content(user_id).where(document.op("@@")(ts_query)).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def pattern_search(session: AsyncSession, user_id: str, query: str, limit: int) -> List[Screenshot]:
    pattern = f"%{_escape_like(query)}%"
    stmt = (
        _owned_with_content(user_id)
        .where(ScreenshotContent.visual_description.ilike(pattern, escape="\\"))
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def element_candidates(session: AsyncSession, user_id: str, cap: int) -> List[Screenshot]:
    stmt = (
        _owned_with_content(user_id)
        .where(ScreenshotContent.detected_elements.is_not(None))
        .limit(cap)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def vector_neighbor_search(
    session: AsyncSession,
    user_id: str,
    embedding: List[float],
    threshold: float,
    count: int,
) -> List[Tuple[Screenshot, float]]:
    """Nearest screenshots by cosine similarity of their combined embedding."""
    distance = ScreenshotEmbedding.combined_embedding.cosine_distance(embedding)
    similarity = (1 - distance).label("similarity")
    stmt = (
        select(Screenshot, similarity)
        .join(ScreenshotEmbedding, ScreenshotEmbedding.screenshot_id == Screenshot.id)
        .where(
            Screenshot.user_id == user_id,
            ScreenshotEmbedding.combined_embedding.is_not(None),
            (1 - distance) > threshold,
        )
        .order_by(distance)
        .limit(count)
    )
    result = await session.execute(stmt)
    return [(row[0], float(row[1])) for row in result.all()]


async def create_search_record(session: AsyncSession, user_id: str, query: str, search_type: str) -> SearchHistory:
    record = SearchHistory(user_id=user_id, query=query, search_type=search_type, result_count=0)
    session.add(record)
    await session.commit()
    return record


async def update_search_record(
    session: AsyncSession, record_id: str, results: List[Dict[str, Any]], result_count: int
) -> None:
    await session.execute(
        update(SearchHistory)
        .where(SearchHistory.id == record_id)
        .values(results=results, result_count=result_count)
    )
    await session.commit()


async def recent_queries(session: AsyncSession, user_id: str, limit: int = 10) -> List[str]:
    result = await session.execute(
        select(SearchHistory.query)
        .where(SearchHistory.user_id == user_id)
        .order_by(SearchHistory.searched_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def ocr_text_sample(session: AsyncSession, user_id: str, limit: int = 50) -> List[str]:
    result = await session.execute(
        select(ScreenshotContent.ocr_text)
        .join(Screenshot, Screenshot.id == ScreenshotContent.screenshot_id)
        .where(Screenshot.user_id == user_id, ScreenshotContent.ocr_text.is_not(None))
        .limit(limit)
    )
    return [text for text in result.scalars().all() if text]
