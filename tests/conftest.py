import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional
from unittest.mock import AsyncMock
import pytest

OUTSTANDING = ("pending", "processing")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FakeRepository:
    """In-memory stand-in for app.db.repository, covering the pipeline's calls."""

    def __init__(self):
        self.screenshots: Dict[str, SimpleNamespace] = {}
        self.contents: Dict[str, SimpleNamespace] = {}
        self.embeddings: Dict[str, dict] = {}
        self.tasks: List[SimpleNamespace] = []
        self._ids = itertools.count(1)

    # -- fixtures helpers ---------------------------------------------------

    def add_screenshot(self, screenshot_id="shot-1", user_id="user-1", **overrides) -> SimpleNamespace:
        values = dict(
            id=screenshot_id,
            user_id=user_id,
            filename="screen.png",
            file_path=f"{user_id}/screen.png",
            file_size=1024,
            mime_type="image/png",
            width=800,
            height=600,
            uploaded_at=utcnow(),
            processed_at=None,
            processing_status="pending",
            error_message=None,
            created_at=utcnow(),
            content=None,
        )
        values.update(overrides)
        screenshot = SimpleNamespace(**values)
        self.screenshots[screenshot_id] = screenshot
        return screenshot

    def add_content(self, screenshot_id="shot-1", **fields) -> SimpleNamespace:
        values = dict(
            screenshot_id=screenshot_id,
            ocr_text=None,
            visual_description=None,
            dominant_colors=None,
            detected_elements=None,
            processing_cost=0.0,
        )
        values.update(fields)
        content = SimpleNamespace(**values)
        self.contents[screenshot_id] = content
        if screenshot_id in self.screenshots:
            self.screenshots[screenshot_id].content = content
        return content

    def tasks_for(self, screenshot_id: str) -> List[SimpleNamespace]:
        return [t for t in self.tasks if t.screenshot_id == screenshot_id]

    def task(self, screenshot_id: str, task_type: str) -> SimpleNamespace:
        return next(t for t in self.tasks_for(screenshot_id) if t.task_type == task_type)

    # -- repository API -----------------------------------------------------

    async def get_screenshot(self, session, screenshot_id):
        return self.screenshots.get(screenshot_id)

    async def get_user_screenshot(self, session, screenshot_id, user_id, with_tasks=False):
        screenshot = self.screenshots.get(screenshot_id)
        if screenshot is None or screenshot.user_id != user_id:
            return None
        return screenshot

    async def get_content(self, session, screenshot_id):
        return self.contents.get(screenshot_id)

    async def ensure_content(self, session, screenshot_id):
        return self.contents.get(screenshot_id) or self.add_content(screenshot_id)

    async def record_ocr_text(self, session, screenshot_id, ocr_text):
        content = await self.ensure_content(session, screenshot_id)
        content.ocr_text = ocr_text

    async def save_vision_result(self, session, screenshot_id, description, colors, detected_elements, cost):
        content = await self.ensure_content(session, screenshot_id)
        content.visual_description = description
        content.dominant_colors = colors
        content.detected_elements = detected_elements
        content.processing_cost = cost

    async def upsert_embeddings(self, session, screenshot_id, text_embedding, visual_embedding, combined_embedding):
        self.embeddings[screenshot_id] = {
            "text": text_embedding,
            "visual": visual_embedding,
            "combined": combined_embedding,
        }

    async def mark_screenshot_processing(self, session, screenshot_id):
        screenshot = self.screenshots[screenshot_id]
        screenshot.processing_status = "processing"
        screenshot.error_message = None

    async def mark_screenshot_completed(self, session, screenshot_id):
        screenshot = self.screenshots[screenshot_id]
        screenshot.processing_status = "completed"
        screenshot.processed_at = utcnow()

    async def mark_screenshot_failed(self, session, screenshot_id, message):
        screenshot = self.screenshots[screenshot_id]
        screenshot.processing_status = "failed"
        screenshot.error_message = message

    async def enqueue_tasks(self, session, screenshot_id, tasks, max_attempts=3):
        outstanding = {t.task_type for t in self.tasks_for(screenshot_id) if t.status in OUTSTANDING}
        for task_type, priority in tasks:
            if task_type in outstanding:
                continue
            self.tasks.append(SimpleNamespace(
                id=f"task-{next(self._ids)}",
                screenshot_id=screenshot_id,
                task_type=task_type,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts,
                status="pending",
                error_message=None,
                started_at=None,
                completed_at=None,
                created_at=utcnow(),
            ))

    async def claim_next_task(self, session, screenshot_id, lease_seconds):
        now = utcnow()
        expiry = now - timedelta(seconds=lease_seconds)
        tasks = self.tasks_for(screenshot_id)
        if any(t.status == "processing" and t.started_at > expiry for t in tasks):
            return None
        candidates = [
            t for t in tasks
            if t.status == "pending" or (t.status == "processing" and t.started_at <= expiry)
        ]
        if not candidates:
            return None
        task = sorted(candidates, key=lambda t: -t.priority)[0]
        task.status = "processing"
        task.attempts += 1
        task.started_at = now
        return task

    def _find(self, task_id):
        return next(t for t in self.tasks if t.id == task_id)

    async def complete_task(self, session, task_id, note=None):
        task = self._find(task_id)
        task.status = "completed"
        task.completed_at = utcnow()
        task.error_message = note

    async def fail_task(self, session, task_id, message):
        task = self._find(task_id)
        task.status = "failed"
        task.completed_at = utcnow()
        task.error_message = message

    async def complete_tasks_of_type(self, session, screenshot_id, task_type, note=None):
        for task in self.tasks_for(screenshot_id):
            if task.task_type == task_type and task.status != "completed":
                task.status = "completed"
                task.error_message = note

    async def fail_tasks_of_type(self, session, screenshot_id, task_type, message):
        for task in self.tasks_for(screenshot_id):
            if task.task_type == task_type and task.status != "completed":
                task.status = "failed"
                task.error_message = message

    async def outstanding_statuses(self, session, screenshot_id):
        return [t.status for t in self.tasks_for(screenshot_id) if t.status in OUTSTANDING]

    async def reset_tasks_for_retry(self, session, screenshot_id):
        reset = 0
        for task in self.tasks_for(screenshot_id):
            if task.status in ("failed", "processing"):
                task.status = "pending"
                task.attempts = 0
                task.error_message = None
                task.started_at = None
                task.completed_at = None
                reset += 1
        return reset


@pytest.fixture
def fake_repo():
    return FakeRepository()


@pytest.fixture
def session():
    return AsyncMock()


@pytest.fixture
def sample_vision_json():
    return """Here is the analysis:
{
  "description": "A login form with an error banner",
  "elements": ["Sign in button", "Email field"],
  "colors": ["white", "red"],
  "text_snippets": ["Invalid password"],
  "context": "Authentication page"
}"""
