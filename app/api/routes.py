import os
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.deps import get_current_user
from app.api.schemas import (
    ProcessRequest,
    ProcessResponse,
    ScreenshotRequest,
    AnalyzeResponse,
    EmbeddingsResponse,
    RetryResponse,
    SearchRequest,
    SearchResponse,
    SearchResultOut,
    ScreenshotOut,
    ContentOut,
    SuggestionsResponse,
    ScreenshotStatus,
    StatusResponse,
)
from app.db import repository
from app.db.database import get_db
from app.db.models import Screenshot, ProcessingStatus
from app.services.errors import InvalidInputError, NotFoundError
from app.services.pipeline import pipeline
from app.services.search import search_service
from app.worker import schedule_drive
from app.utils.logger import logger

SEARCH_RATE_LIMIT = int(os.getenv("SEARCH_RATE_LIMIT", "30"))

router = APIRouter()


def _http_error(e: Exception, detail: str) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidInputError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=detail)


async def _owned_screenshot(session: AsyncSession, screenshot_id: str, user_id: str) -> Screenshot:
    screenshot = await repository.get_user_screenshot(session, screenshot_id, user_id)
    if screenshot is None:
        raise HTTPException(status_code=404, detail="Screenshot not found")
    return screenshot


@router.post("/process", response_model=ProcessResponse)
async def process_endpoint(
    request: ProcessRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    screenshot = await _owned_screenshot(session, request.screenshotId, user_id)
    screenshot_id = screenshot.id

    try:
        await pipeline.start(session, screenshot, request.ocrText)
        schedule_drive(screenshot_id, user_id)
    except Exception as e:
        logger.error("Process endpoint error: %s", e, extra={"screenshot_id": screenshot_id})
        try:
            await pipeline.record_screenshot_failure(session, screenshot_id, "Failed to start processing")
        except Exception as record_error:
            logger.error("Could not record process failure: %s", record_error, extra={"screenshot_id": screenshot_id})
        raise HTTPException(status_code=500, detail="Failed to process screenshot")

    return ProcessResponse(
        success=True,
        message="Screenshot queued for processing",
        screenshotId=screenshot_id,
    )


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_endpoint(
    request: ScreenshotRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    screenshot = await _owned_screenshot(session, request.screenshotId, user_id)
    screenshot_id = screenshot.id

    try:
        result = await pipeline.analyze(session, screenshot)
    except Exception as e:
        logger.error("Analyze endpoint error: %s", e, extra={"screenshot_id": screenshot_id})
        raise _http_error(e, "Failed to analyze screenshot")

    return AnalyzeResponse(success=True, message="Visual analysis completed", data=result)


@router.post("/embeddings", response_model=EmbeddingsResponse)
async def embeddings_endpoint(
    request: ScreenshotRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    content = await repository.get_content(session, request.screenshotId)
    if content is None:
        raise HTTPException(status_code=404, detail="Screenshot content not found")

    screenshot = await repository.get_screenshot(session, request.screenshotId)
    if screenshot is None or screenshot.user_id != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    screenshot_id = screenshot.id

    try:
        outcome = await pipeline.embed(session, screenshot)
    except Exception as e:
        logger.error("Embeddings endpoint error: %s", e, extra={"screenshot_id": screenshot_id})
        raise _http_error(e, "Failed to generate embeddings")

    message = (
        "Embeddings generated successfully"
        if outcome.has_embeddings
        else "Embeddings skipped - model not available"
    )
    return EmbeddingsResponse(success=True, message=message, hasEmbeddings=outcome.has_embeddings)


@router.post("/retry", response_model=RetryResponse)
async def retry_endpoint(
    request: ScreenshotRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    screenshot = await _owned_screenshot(session, request.screenshotId, user_id)
    screenshot_id = screenshot.id

    try:
        await pipeline.retry(session, screenshot_id)
        schedule_drive(screenshot_id, user_id)
    except Exception as e:
        logger.error("Retry endpoint error: %s", e, extra={"screenshot_id": screenshot_id})
        raise HTTPException(status_code=500, detail="Failed to retry processing")

    return RetryResponse(success=True, message="Processing restarted", screenshotId=screenshot_id)


@router.post(
    "/search",
    response_model=SearchResponse,
    dependencies=[Depends(RateLimiter(times=SEARCH_RATE_LIMIT, seconds=60))],
)
async def search_endpoint(request: SearchRequest, user_id: str = Depends(get_current_user)):
    try:
        hits = await search_service.search(user_id, request.query.strip(), request.searchType, request.limit)
    except Exception as e:
        logger.error("Search endpoint error: %s", e, extra={"search_type": request.searchType.value})
        raise HTTPException(status_code=500, detail="Search failed")

    results = [
        SearchResultOut(
            screenshot=ScreenshotOut.model_validate(hit.screenshot),
            content=ContentOut.model_validate(hit.content) if hit.content is not None else None,
            confidence=hit.confidence,
            match_type=hit.match_type,
            highlighted_text=hit.highlighted_text,
        )
        for hit in hits
    ]
    return SearchResponse(
        success=True,
        query=request.query,
        searchType=request.searchType,
        results=results,
        count=len(results),
    )


@router.get("/search", response_model=SuggestionsResponse)
async def suggestions_endpoint(user_id: str = Depends(get_current_user)):
    try:
        suggestions = await search_service.suggestions(user_id)
    except Exception as e:
        logger.error("Suggestions error: %s", e)
        return SuggestionsResponse(suggestions=[])
    return SuggestionsResponse(suggestions=suggestions)


@router.get("/status", response_model=StatusResponse)
async def status_endpoint(
    id: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    if id:
        screenshot = await repository.get_user_screenshot(session, id, user_id, with_tasks=True)
        if screenshot is None:
            raise HTTPException(status_code=404, detail="Screenshot not found")
        return StatusResponse(screenshot=ScreenshotStatus.model_validate(screenshot))

    screenshots = await repository.list_recent_screenshots(session, user_id)
    summary = {"total": len(screenshots)}
    for status in ProcessingStatus:
        summary[status.value] = sum(1 for s in screenshots if s.processing_status == status.value)

    return StatusResponse(
        screenshots=[ScreenshotStatus.model_validate(s) for s in screenshots],
        summary=summary,
    )
