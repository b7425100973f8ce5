from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, ConfigDict, Field, field_validator
from app.db.models import SearchType

class DetectedElements(BaseModel):
    ui_elements: List[str] = []
    text_snippets: List[str] = []
    context: str = ""

    def flatten(self) -> str:
        """Lower-cased text of every element, snippet and the context."""
        parts = list(self.ui_elements) + list(self.text_snippets) + [self.context]
        return " ".join(p for p in parts if p).lower()

class VisionResult(BaseModel):
    description: str
    elements: List[str] = []
    colors: List[str] = []
    text_snippets: List[str] = []
    context: str = ""

    def detected_elements(self) -> DetectedElements:
        return DetectedElements(
            ui_elements=self.elements,
            text_snippets=self.text_snippets,
            context=self.context,
        )

class ProcessRequest(BaseModel):
    screenshotId: str = Field(..., min_length=1)
    ocrText: Optional[str] = None

class ScreenshotRequest(BaseModel):
    screenshotId: str = Field(..., min_length=1)

class SearchRequest(BaseModel):
    query: str
    searchType: SearchType = SearchType.HYBRID
    limit: int = Field(5, ge=1, le=50)

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Query is required")
        return value

class ProcessResponse(BaseModel):
    success: bool
    message: str
    screenshotId: str

class AnalyzeResponse(BaseModel):
    success: bool
    message: str
    data: VisionResult

class EmbeddingsResponse(BaseModel):
    success: bool
    message: str
    hasEmbeddings: bool

class RetryResponse(BaseModel):
    success: bool
    message: str
    screenshotId: str

class ScreenshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    filename: str
    file_path: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processing_status: str
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

class ContentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    screenshot_id: str
    ocr_text: Optional[str] = None
    visual_description: Optional[str] = None
    dominant_colors: Optional[List[str]] = None
    detected_elements: Optional[DetectedElements] = None
    processing_cost: Optional[float] = 0.0
    ocr_completed_at: Optional[datetime] = None
    vision_completed_at: Optional[datetime] = None

class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    task_type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class SearchResultOut(BaseModel):
    screenshot: ScreenshotOut
    content: Optional[ContentOut] = None
    confidence: float
    match_type: str
    highlighted_text: Optional[str] = None

class SearchResponse(BaseModel):
    success: bool
    query: str
    searchType: SearchType
    results: List[SearchResultOut] = []
    count: int

class SuggestionsResponse(BaseModel):
    suggestions: List[str] = []

class ScreenshotStatus(ScreenshotOut):
    content: Optional[ContentOut] = None
    tasks: List[TaskOut] = []

class StatusResponse(BaseModel):
    screenshot: Optional[ScreenshotStatus] = None
    screenshots: Optional[List[ScreenshotStatus]] = None
    summary: Optional[Dict[str, int]] = None
