"""
Screenshot processing pipeline.

Each screenshot owns a small queue of tasks (`vision`, then `embeddings`).
`drive_next` claims one task, runs it through its adapter and settles the
screenshot status. The Celery worker chains drives until the queue is empty.
"""
import os
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple
from prometheus_client import Counter
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.schemas import DetectedElements, VisionResult
from app.db import repository
from app.db.models import Screenshot, ScreenshotContent, ProcessingStatus, TaskType
from app.services.embeddings import embeddings_service, truncate
from app.services.errors import AdapterError, InvalidInputError, NotFoundError, PipelineError, StoreError
from app.services.storage import storage_service
from app.services.vision import vision_service, to_data_uri, VISION_COST_ESTIMATE
from app.utils.logger import logger

VISION_PRIORITY = 5
EMBEDDINGS_PRIORITY = 3

# Vision first: the embeddings step consumes the visual description
INITIAL_TASKS: List[Tuple[str, int]] = [
    (TaskType.VISION.value, VISION_PRIORITY),
    (TaskType.EMBEDDINGS.value, EMBEDDINGS_PRIORITY),
]

SIGNED_URL_TTL = 60
PIPELINE_THROTTLE_SECONDS = float(os.getenv("PIPELINE_THROTTLE_SECONDS", "1.0"))
PIPELINE_LEASE_SECONDS = int(os.getenv("PIPELINE_LEASE_SECONDS", "300"))

EMBEDDINGS_UNAVAILABLE_NOTE = "Embeddings model not available"
NOTHING_TO_EMBED = "No content available for embedding generation"

PIPELINE_TASKS = Counter(
    "screenshot_pipeline_tasks_total",
    "Processing tasks by type and final status",
    ["task_type", "status"]
)


class DriveOutcome(str, Enum):
    IDLE = "idle"
    CONTINUE = "continue"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class EmbeddingOutcome:
    has_embeddings: bool
    note: Optional[str] = None


def detected_elements_of(content: ScreenshotContent) -> Optional[DetectedElements]:
    if not content.detected_elements:
        return None
    try:
        return DetectedElements.model_validate(content.detected_elements)
    except ValidationError:
        logger.warning("Ignoring malformed detected_elements", extra={"screenshot_id": content.screenshot_id})
        return None


def build_embedding_inputs(content: ScreenshotContent) -> Tuple[Optional[str], Optional[str], str]:
    """
    Texts for the (text, visual, combined) vectors, each truncated.

    Raises:
        InvalidInputError: if the content has no text fields at all.
    """
    parts = []
    if content.ocr_text:
        parts.append(f"OCR Text: {content.ocr_text}")
    if content.visual_description:
        parts.append(f"Visual Description: {content.visual_description}")

    elements = detected_elements_of(content)
    if elements is not None:
        if elements.ui_elements:
            parts.append(f"UI Elements: {', '.join(elements.ui_elements)}")
        if elements.text_snippets:
            parts.append(f"Text Snippets: {', '.join(elements.text_snippets)}")
        if elements.context:
            parts.append(f"Context: {elements.context}")

    if not parts:
        raise InvalidInputError(NOTHING_TO_EMBED)

    text = truncate(content.ocr_text) if content.ocr_text else None
    visual = truncate(content.visual_description) if content.visual_description else None
    return text, visual, truncate("\n\n".join(parts))


class PipelineService:
    def __init__(self, vision=None, embeddings=None, storage=None):
        self.vision = vision or vision_service
        self.embeddings = embeddings or embeddings_service
        self.storage = storage or storage_service

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def run_vision_step(self, session: AsyncSession, screenshot: Screenshot) -> VisionResult:
        url = await self.storage.create_signed_url(screenshot.file_path, SIGNED_URL_TTL)
        image = await self.storage.download(url)
        logger.info("Analyzing image (%s bytes)", len(image), extra={"screenshot_id": screenshot.id})

        result = await self.vision.analyze(to_data_uri(image, screenshot.mime_type))
        await repository.save_vision_result(
            session,
            screenshot.id,
            description=result.description,
            colors=result.colors,
            detected_elements=result.detected_elements().model_dump(),
            cost=VISION_COST_ESTIMATE,
        )
        return result

    async def run_embeddings_step(self, session: AsyncSession, screenshot_id: str) -> EmbeddingOutcome:
        content = await repository.get_content(session, screenshot_id)
        if content is None:
            raise NotFoundError("Screenshot content not found")

        text, visual, combined = build_embedding_inputs(content)

        available = await asyncio.to_thread(self.embeddings.is_available)
        if not available:
            logger.warning("Embedding model unavailable, skipping embeddings", extra={"screenshot_id": screenshot_id})
            return EmbeddingOutcome(has_embeddings=False, note=EMBEDDINGS_UNAVAILABLE_NOTE)

        inputs = [combined] + [t for t in (text, visual) if t]
        vectors = await asyncio.to_thread(self.embeddings.generate, inputs)
        if len(vectors) != len(inputs):
            raise AdapterError("Embedding generation failed")

        remaining = iter(vectors[1:])
        text_vector = next(remaining) if text else None
        visual_vector = next(remaining) if visual else None

        await repository.upsert_embeddings(
            session,
            screenshot_id,
            text_embedding=text_vector,
            visual_embedding=visual_vector,
            combined_embedding=vectors[0],
        )
        return EmbeddingOutcome(has_embeddings=True)

    async def _dispatch(self, session: AsyncSession, screenshot: Screenshot, task_type: str) -> Optional[str]:
        """Run the step for `task_type`; returns a completion note, if any."""
        try:
            if task_type == TaskType.VISION.value:
                await self.run_vision_step(session, screenshot)
                return None
            if task_type == TaskType.EMBEDDINGS.value:
                outcome = await self.run_embeddings_step(session, screenshot.id)
                return outcome.note
        except SQLAlchemyError as e:
            raise StoreError(f"Store failure: {e}") from e
        raise InvalidInputError(f"Unknown task type: {task_type}")

    # ------------------------------------------------------------------
    # Queue driving
    # ------------------------------------------------------------------

    async def start(self, session: AsyncSession, screenshot: Screenshot, ocr_text: Optional[str] = None) -> None:
        """Store client-side OCR text, queue the initial tasks and flag the screenshot."""
        if ocr_text:
            await repository.record_ocr_text(session, screenshot.id, ocr_text)
        else:
            await repository.ensure_content(session, screenshot.id)

        await repository.enqueue_tasks(session, screenshot.id, INITIAL_TASKS)
        await repository.mark_screenshot_processing(session, screenshot.id)
        logger.info("Queued processing tasks", extra={"screenshot_id": screenshot.id})

    async def drive_next(self, session: AsyncSession, screenshot_id: str, user_id: str) -> DriveOutcome:
        screenshot = await repository.get_user_screenshot(session, screenshot_id, user_id)
        if screenshot is None:
            logger.warning("Drive requested for unknown screenshot", extra={"screenshot_id": screenshot_id})
            return DriveOutcome.IDLE

        task = await repository.claim_next_task(session, screenshot_id, PIPELINE_LEASE_SECONDS)
        if task is None:
            outstanding = await repository.outstanding_statuses(session, screenshot_id)
            if not outstanding:
                await repository.mark_screenshot_completed(session, screenshot_id)
                return DriveOutcome.COMPLETED
            return DriveOutcome.IDLE

        extra = {"screenshot_id": screenshot_id, "task_id": task.id, "task_type": task.task_type}

        if task.attempts > task.max_attempts:
            message = f"Task {task.task_type} exceeded max attempts ({task.max_attempts})"
            logger.error(message, extra=extra)
            await self._record_failure(session, screenshot_id, task.id, task.task_type, message)
            return DriveOutcome.FAILED

        logger.info("Running task (attempt %s)", task.attempts, extra=extra)
        try:
            note = await self._dispatch(session, screenshot, task.task_type)
            await repository.complete_task(session, task.id, note)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error("Task failed: %s", message, extra=extra, exc_info=not isinstance(e, PipelineError))
            await self._record_failure(session, screenshot_id, task.id, task.task_type, message)
            return DriveOutcome.FAILED

        PIPELINE_TASKS.labels(task_type=task.task_type, status="completed").inc()
        return await self.settle(session, screenshot_id)

    async def settle(self, session: AsyncSession, screenshot_id: str) -> DriveOutcome:
        outstanding = await repository.outstanding_statuses(session, screenshot_id)
        if not outstanding:
            await repository.mark_screenshot_completed(session, screenshot_id)
            logger.info("All tasks completed", extra={"screenshot_id": screenshot_id})
            return DriveOutcome.COMPLETED
        if ProcessingStatus.PENDING.value in outstanding:
            return DriveOutcome.CONTINUE
        return DriveOutcome.IDLE

    async def _record_failure(
        self, session: AsyncSession, screenshot_id: str, task_id: str, task_type: str, message: str
    ) -> None:
        await session.rollback()
        await repository.fail_task(session, task_id, message)
        await repository.mark_screenshot_failed(session, screenshot_id, message)
        PIPELINE_TASKS.labels(task_type=task_type, status="failed").inc()

    async def retry(self, session: AsyncSession, screenshot_id: str) -> int:
        """Put failed and stuck tasks back to pending; the caller schedules a drive."""
        await repository.mark_screenshot_processing(session, screenshot_id)
        reset = await repository.reset_tasks_for_retry(session, screenshot_id)
        logger.info("Reset %s task(s) for retry", reset, extra={"screenshot_id": screenshot_id})
        return reset

    async def record_screenshot_failure(self, session: AsyncSession, screenshot_id: str, message: str) -> None:
        await session.rollback()
        await repository.mark_screenshot_failed(session, screenshot_id, message)

    # ------------------------------------------------------------------
    # Synchronous reruns (analyze / embeddings endpoints)
    # ------------------------------------------------------------------

    async def analyze(self, session: AsyncSession, screenshot: Screenshot) -> VisionResult:
        task_type = TaskType.VISION.value
        try:
            result = await self.run_vision_step(session, screenshot)
        except Exception as e:
            await self._record_type_failure(session, screenshot.id, task_type, e)
            if isinstance(e, SQLAlchemyError):
                raise StoreError(f"Store failure: {e}") from e
            raise
        await repository.complete_tasks_of_type(session, screenshot.id, task_type)
        return result

    async def embed(self, session: AsyncSession, screenshot: Screenshot) -> EmbeddingOutcome:
        task_type = TaskType.EMBEDDINGS.value
        try:
            outcome = await self.run_embeddings_step(session, screenshot.id)
        except (InvalidInputError, NotFoundError):
            raise
        except Exception as e:
            await self._record_type_failure(session, screenshot.id, task_type, e)
            if isinstance(e, SQLAlchemyError):
                raise StoreError(f"Store failure: {e}") from e
            raise

        await repository.complete_tasks_of_type(session, screenshot.id, task_type, outcome.note)
        outstanding = await repository.outstanding_statuses(session, screenshot.id)
        if not outstanding:
            await repository.mark_screenshot_completed(session, screenshot.id)
        return outcome

    async def _record_type_failure(
        self, session: AsyncSession, screenshot_id: str, task_type: str, error: Exception
    ) -> None:
        message = str(error) or error.__class__.__name__
        logger.error("%s step failed: %s", task_type, message, extra={"screenshot_id": screenshot_id})
        try:
            await session.rollback()
            await repository.fail_tasks_of_type(session, screenshot_id, task_type, message)
        except SQLAlchemyError as e:
            logger.error("Could not record %s failure: %s", task_type, e, extra={"screenshot_id": screenshot_id})


pipeline = PipelineService()
