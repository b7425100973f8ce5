import pytest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch, MagicMock, AsyncMock
from fastapi import FastAPI
from fastapi.testclient import TestClient
from app.api.deps import get_current_user
from app.api.handlers import install_error_handlers
from app.api.routes import router
from app.api.schemas import VisionResult
from app.db.database import get_db
from app.services.errors import AdapterError, InvalidInputError
from app.services.pipeline import EmbeddingOutcome
from app.services.search import SearchHit

app = FastAPI()
install_error_handlers(app)
app.include_router(router)


async def override_user():
    return "user-1"


async def override_db():
    yield MagicMock()


app.dependency_overrides[get_current_user] = override_user
app.dependency_overrides[get_db] = override_db

client = TestClient(app)


def make_screenshot(screenshot_id="shot-1", user_id="user-1", status="pending", **extra):
    values = dict(
        id=screenshot_id,
        user_id=user_id,
        filename="screen.png",
        file_path=f"{user_id}/screen.png",
        file_size=1024,
        mime_type="image/png",
        width=800,
        height=600,
        uploaded_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        processed_at=None,
        processing_status=status,
        error_message=None,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        content=None,
        tasks=[],
    )
    values.update(extra)
    return SimpleNamespace(**values)


@pytest.fixture
def repo():
    with patch("app.api.routes.repository") as mock_repo:
        mock_repo.get_user_screenshot = AsyncMock(return_value=make_screenshot())
        mock_repo.get_screenshot = AsyncMock(return_value=make_screenshot())
        mock_repo.get_content = AsyncMock(return_value=SimpleNamespace(screenshot_id="shot-1"))
        mock_repo.list_recent_screenshots = AsyncMock(return_value=[])
        yield mock_repo


@pytest.fixture
def pipeline():
    with patch("app.api.routes.pipeline") as mock_pipeline:
        mock_pipeline.start = AsyncMock()
        mock_pipeline.retry = AsyncMock(return_value=1)
        mock_pipeline.analyze = AsyncMock()
        mock_pipeline.embed = AsyncMock()
        mock_pipeline.record_screenshot_failure = AsyncMock()
        yield mock_pipeline


@pytest.fixture
def schedule():
    with patch("app.api.routes.schedule_drive") as mock_schedule:
        yield mock_schedule


class TestProcessEndpoint:
    """Test POST /process"""

    def test_process_queues_and_schedules(self, repo, pipeline, schedule):
        response = client.post("/process", json={"screenshotId": "shot-1", "ocrText": "Invalid password"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Screenshot queued for processing",
            "screenshotId": "shot-1",
        }
        assert pipeline.start.await_args.args[2] == "Invalid password"
        schedule.assert_called_once_with("shot-1", "user-1")

    def test_process_missing_id_is_400(self, repo, pipeline, schedule):
        response = client.post("/process", json={})
        assert response.status_code == 400
        assert "screenshotId" in response.json()["error"]

    def test_process_unknown_screenshot_is_404(self, repo, pipeline, schedule):
        repo.get_user_screenshot.return_value = None
        response = client.post("/process", json={"screenshotId": "nope"})
        assert response.status_code == 404
        assert response.json() == {"error": "Screenshot not found"}
        schedule.assert_not_called()

    def test_broker_failure_records_screenshot_failure(self, repo, pipeline, schedule):
        schedule.side_effect = ConnectionError("broker down")
        response = client.post("/process", json={"screenshotId": "shot-1"})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to process screenshot"}
        pipeline.record_screenshot_failure.assert_awaited_once()


class TestAuth:
    def test_missing_token_is_401(self):
        bare = FastAPI()
        install_error_handlers(bare)
        bare.include_router(router)
        response = TestClient(bare).post("/process", json={"screenshotId": "shot-1"})
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    @patch("app.api.deps.auth_service")
    def test_rejected_token_is_401(self, mock_auth):
        mock_auth.get_user_id = AsyncMock(return_value=None)
        bare = FastAPI()
        install_error_handlers(bare)
        bare.include_router(router)
        response = TestClient(bare).get("/status", headers={"Authorization": "Bearer bad"})
        assert response.status_code == 401
        mock_auth.get_user_id.assert_awaited_once_with("bad")


class TestAnalyzeEndpoint:
    def test_analyze_returns_vision_result(self, repo, pipeline):
        pipeline.analyze.return_value = VisionResult(
            description="A login form", elements=["Sign in"], colors=["white"], text_snippets=[], context="Auth"
        )
        response = client.post("/analyze", json={"screenshotId": "shot-1"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["description"] == "A login form"
        assert body["data"]["elements"] == ["Sign in"]

    def test_adapter_failure_is_500(self, repo, pipeline):
        pipeline.analyze.side_effect = AdapterError("Vision model error (status 502)")
        response = client.post("/analyze", json={"screenshotId": "shot-1"})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to analyze screenshot"}


class TestEmbeddingsEndpoint:
    def test_generated(self, repo, pipeline):
        pipeline.embed.return_value = EmbeddingOutcome(has_embeddings=True)
        response = client.post("/embeddings", json={"screenshotId": "shot-1"})
        assert response.status_code == 200
        assert response.json()["hasEmbeddings"] is True

    def test_model_unavailable(self, repo, pipeline):
        pipeline.embed.return_value = EmbeddingOutcome(has_embeddings=False, note="Embeddings model not available")
        response = client.post("/embeddings", json={"screenshotId": "shot-1"})
        assert response.status_code == 200
        assert response.json()["hasEmbeddings"] is False

    def test_missing_content_is_404(self, repo, pipeline):
        repo.get_content.return_value = None
        response = client.post("/embeddings", json={"screenshotId": "shot-1"})
        assert response.status_code == 404

    def test_other_owner_is_403(self, repo, pipeline):
        repo.get_screenshot.return_value = make_screenshot(user_id="someone-else")
        response = client.post("/embeddings", json={"screenshotId": "shot-1"})
        assert response.status_code == 403
        pipeline.embed.assert_not_called()

    def test_nothing_to_embed_is_400(self, repo, pipeline):
        pipeline.embed.side_effect = InvalidInputError("No content available for embedding generation")
        response = client.post("/embeddings", json={"screenshotId": "shot-1"})
        assert response.status_code == 400
        assert response.json() == {"error": "No content available for embedding generation"}


class TestRetryEndpoint:
    def test_retry_resets_and_schedules(self, repo, pipeline, schedule):
        response = client.post("/retry", json={"screenshotId": "shot-1"})
        assert response.status_code == 200
        assert response.json()["screenshotId"] == "shot-1"
        pipeline.retry.assert_awaited_once()
        schedule.assert_called_once_with("shot-1", "user-1")

    def test_retry_unknown_is_404(self, repo, pipeline, schedule):
        repo.get_user_screenshot.return_value = None
        response = client.post("/retry", json={"screenshotId": "shot-1"})
        assert response.status_code == 404


class TestSearchEndpoint:
    """Test POST /search and GET /search"""

    @patch("fastapi_limiter.depends.RateLimiter.__call__", new_callable=AsyncMock)
    @patch("app.api.routes.search_service")
    def test_search_returns_results(self, mock_search, mock_limiter):
        screenshot = make_screenshot(content=SimpleNamespace(
            screenshot_id="shot-1",
            ocr_text="Error message: timeout",
            visual_description="Dialog",
            dominant_colors=["red"],
            detected_elements={"ui_elements": ["OK"], "text_snippets": [], "context": ""},
            processing_cost=0.003,
            ocr_completed_at=None,
            vision_completed_at=None,
        ))
        mock_search.search = AsyncMock(return_value=[
            SearchHit(screenshot, 0.8, "hybrid", "...Error message: timeout...")
        ])

        response = client.post("/search", json={"query": "error message"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["searchType"] == "hybrid"
        assert body["count"] == 1
        result = body["results"][0]
        assert result["confidence"] == 0.8
        assert result["match_type"] == "hybrid"
        assert result["content"]["detected_elements"]["ui_elements"] == ["OK"]
        assert mock_search.search.await_args.args[3] == 5

    @patch("fastapi_limiter.depends.RateLimiter.__call__", new_callable=AsyncMock)
    def test_blank_query_is_400(self, mock_limiter):
        response = client.post("/search", json={"query": "   "})
        assert response.status_code == 400
        assert "Query is required" in response.json()["error"]

    @patch("fastapi_limiter.depends.RateLimiter.__call__", new_callable=AsyncMock)
    def test_unknown_search_type_is_400(self, mock_limiter):
        response = client.post("/search", json={"query": "x", "searchType": "audio"})
        assert response.status_code == 400

    @patch("fastapi_limiter.depends.RateLimiter.__call__", new_callable=AsyncMock)
    @patch("app.api.routes.search_service")
    def test_search_failure_is_500(self, mock_search, mock_limiter):
        mock_search.search = AsyncMock(side_effect=Exception("db down"))
        response = client.post("/search", json={"query": "x"})
        assert response.status_code == 500
        assert response.json() == {"error": "Search failed"}

    @patch("app.api.routes.search_service")
    def test_suggestions(self, mock_search):
        mock_search.suggestions = AsyncMock(return_value=["login error", "invoice"])
        response = client.get("/search")
        assert response.status_code == 200
        assert response.json() == {"suggestions": ["login error", "invoice"]}

    @patch("app.api.routes.search_service")
    def test_suggestions_error_returns_empty(self, mock_search):
        mock_search.suggestions = AsyncMock(side_effect=Exception("db down"))
        response = client.get("/search")
        assert response.status_code == 200
        assert response.json() == {"suggestions": []}


class TestStatusEndpoint:
    def test_single_screenshot_with_tasks(self, repo):
        task = SimpleNamespace(
            id="task-1", task_type="vision", status="failed", priority=5, attempts=1, max_attempts=3,
            error_message="Failed to get image URL", scheduled_at=None, started_at=None, completed_at=None,
        )
        repo.get_user_screenshot.return_value = make_screenshot(status="failed", tasks=[task])

        response = client.get("/status", params={"id": "shot-1"})

        assert response.status_code == 200
        body = response.json()["screenshot"]
        assert body["processing_status"] == "failed"
        assert body["tasks"][0]["error_message"] == "Failed to get image URL"

    def test_summary(self, repo):
        repo.list_recent_screenshots.return_value = [
            make_screenshot("a", status="completed"),
            make_screenshot("b", status="processing"),
            make_screenshot("c", status="completed"),
        ]

        response = client.get("/status")

        body = response.json()
        assert len(body["screenshots"]) == 3
        assert body["summary"] == {"total": 3, "pending": 0, "processing": 1, "completed": 2, "failed": 0}

    def test_unknown_is_404(self, repo):
        repo.get_user_screenshot.return_value = None
        response = client.get("/status", params={"id": "nope"})
        assert response.status_code == 404
