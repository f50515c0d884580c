"""
FastAPI web application for the rank drop analyzer
"""
from fastapi import FastAPI, HTTPException, Depends, Body, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, HttpUrl, field_validator
from typing import List, Dict, Any, Optional
import logging
from datetime import datetime
import uvicorn

from app import AnalyzerApp
from errors import AnalysisError, DataUnavailable, PipelineTimeout, StepContractError
from models import NotificationSettings

logger = logging.getLogger(__name__)


# Pydantic models for API requests
class AnalyzeRequest(BaseModel):
    site_url: str
    page_url: str
    article_title: Optional[str] = None
    selected_keywords: Optional[List[str]] = None
    max_keywords: int = Field(5, ge=1, le=20)
    locale: Optional[str] = None
    skip_llm: bool = False
    use_browser_render: bool = False
    custom_excluded_domains: List[str] = Field(default_factory=list)


class RankDropRequest(BaseModel):
    site_url: str
    page_url: str
    comparison_days: int = Field(7, ge=1)
    drop_threshold: float = 2.0
    keyword_drop_threshold: int = Field(10, ge=1)


class TryAnalysisRequest(BaseModel):
    article_url: HttpUrl
    keywords: List[str]
    locale: Optional[str] = None

    @field_validator('keywords')
    @classmethod
    def keywords_must_not_be_empty(cls, v):
        v = [keyword.strip() for keyword in v if keyword and keyword.strip()]
        if not v:
            raise ValueError('Keywords list cannot be empty')
        return v


class ScrapeRequest(BaseModel):
    url: HttpUrl
    use_browser_render: bool = False


class NotificationCheckRequest(BaseModel):
    site_url: str
    page_url: str
    article_title: Optional[str] = None
    is_fixed: bool = False
    fixed_at: Optional[datetime] = None
    last_notified_at: Optional[datetime] = None
    drop_threshold: float = 2.0
    keyword_drop_threshold: int = 10
    comparison_days: int = 7
    consecutive_drop_days: int = 3
    min_impressions: int = 100
    notification_cooldown_days: int = 7


# Response models
class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime


# Initialize FastAPI app
app = FastAPI(
    title="Rank Drop Analyzer API",
    description="Detects ranking drops and explains them with competitor analysis",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global analyzer app instance
analyzer_app = None


@app.on_event("startup")
async def startup_event():
    """Initialize the analyzer app on startup"""
    global analyzer_app
    try:
        analyzer_app = AnalyzerApp()
        logger.info("Rank Drop Analyzer API started successfully")
    except Exception as e:
        logger.error(f"Failed to initialize analyzer app: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown"""
    global analyzer_app
    if analyzer_app:
        await analyzer_app.close()
        analyzer_app = None
        logger.info("Rank Drop Analyzer API shut down successfully")


def get_analyzer_app():
    """Dependency to get the analyzer app instance"""
    if analyzer_app is None:
        raise HTTPException(status_code=500, detail="Analyzer app not initialized")
    return analyzer_app


def error_status(exc: AnalysisError) -> int:
    if isinstance(exc, DataUnavailable):
        return 422
    if isinstance(exc, PipelineTimeout):
        return 504
    if isinstance(exc, StepContractError):
        return 400
    return 500


def _ok(message: str, data: Dict[str, Any]) -> APIResponse:
    return APIResponse(success=True, message=message, data=data, timestamp=datetime.now())


# API Endpoints

@app.get("/", response_model=Dict[str, str])
async def root():
    """Root endpoint"""
    return {
        "message": "Rank Drop Analyzer API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", response_model=APIResponse)
async def health_check(app: AnalyzerApp = Depends(get_analyzer_app)):
    """Health check endpoint"""
    return _ok("healthy", app.get_system_status())


@app.post("/pipeline/step1", response_model=APIResponse)
async def run_step1(payload: Dict[str, Any] = Body(...), app: AnalyzerApp = Depends(get_analyzer_app)):
    """Keyword selection; the response is the input of step 2"""
    result = await app.step1(payload)
    return _ok(f"Selected {len(result.prioritized_keywords)} keywords", result.model_dump(mode="json"))


@app.post("/pipeline/step2", response_model=APIResponse)
async def run_step2(payload: Dict[str, Any] = Body(...), app: AnalyzerApp = Depends(get_analyzer_app)):
    """Competitor lookup for the keywords chosen in step 1"""
    result = await app.step2(payload)
    return _ok(f"Found {len(result.unique_competitor_urls)} competitor URLs", result.model_dump(mode="json"))


@app.post("/pipeline/step3", response_model=APIResponse)
async def run_step3(payload: Dict[str, Any] = Body(...), app: AnalyzerApp = Depends(get_analyzer_app)):
    """Scraping and content comparison"""
    result = await app.step3(payload)
    message = "Analysis completed" if result.own_article else "Analysis completed without the own article"
    return _ok(message, result.model_dump(mode="json"))


@app.post("/analyze", response_model=APIResponse)
async def analyze(request: AnalyzeRequest, app: AnalyzerApp = Depends(get_analyzer_app)):
    """Run all three steps in one request"""
    logger.info(f"Analyzing {request.page_url} on {request.site_url}")
    result = await app.analyze(
        {
            "site_url": request.site_url,
            "page_url": request.page_url,
            "article_title": request.article_title,
            "selected_keywords": request.selected_keywords,
            "max_keywords": request.max_keywords,
        },
        step2_options={"locale": request.locale, "custom_excluded_domains": request.custom_excluded_domains},
        step3_options={
            "locale": request.locale,
            "skip_llm": request.skip_llm,
            "use_browser_render": request.use_browser_render,
        },
    )
    return _ok("Analysis completed", result.model_dump(mode="json"))


@app.post("/rank-drop", response_model=APIResponse)
async def rank_drop(request: RankDropRequest, app: AnalyzerApp = Depends(get_analyzer_app)):
    """Compare the baseline window with the current window for one page"""
    result = await app.rank_drop(
        request.site_url, request.page_url,
        comparison_days=request.comparison_days,
        drop_threshold=request.drop_threshold,
        keyword_drop_threshold=request.keyword_drop_threshold,
    )
    message = "Rank drop detected" if result["has_drop"] else "No rank drop"
    return _ok(message, result)


@app.post("/try-analysis", response_model=APIResponse)
async def try_analysis(request: TryAnalysisRequest, app: AnalyzerApp = Depends(get_analyzer_app)):
    """Quick own-rank check for up to five keywords"""
    result = await app.try_analysis(str(request.article_url), request.keywords, request.locale)
    return _ok(f"Checked {len(result['keywords'])} keywords", result)


@app.post("/scrape", response_model=APIResponse)
async def scrape(request: ScrapeRequest, app: AnalyzerApp = Depends(get_analyzer_app)):
    """Extract content and AI search signals from one page"""
    result = await app.scrape(str(request.url), request.use_browser_render)
    return _ok("Page scraped", result)


@app.post("/notifications/check", response_model=APIResponse)
async def check_notification(request: NotificationCheckRequest, app: AnalyzerApp = Depends(get_analyzer_app)):
    """Decide whether a rank drop warrants notifying the owner"""
    settings = NotificationSettings(
        drop_threshold=request.drop_threshold,
        keyword_drop_threshold=request.keyword_drop_threshold,
        comparison_days=request.comparison_days,
        consecutive_drop_days=request.consecutive_drop_days,
        min_impressions=request.min_impressions,
        notification_cooldown_days=request.notification_cooldown_days,
    )
    result = await app.check_notification(
        request.site_url, request.page_url, settings,
        request.is_fixed, request.fixed_at, request.last_notified_at, request.article_title,
    )
    return _ok(result["reason"], result)


@app.exception_handler(AnalysisError)
async def analysis_exception_handler(request: Request, exc: AnalysisError):
    """Map pipeline errors onto HTTP status codes"""
    status_code = error_status(exc)
    log = logger.error if status_code == 500 else logger.warning
    log(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    content = {
        "success": False,
        "message": exc.message,
        "error": exc.to_dict(),
        "timestamp": datetime.now().isoformat()
    }
    if isinstance(exc, PipelineTimeout):
        content["retry_from_step"] = exc.retry_from_step
    return JSONResponse(status_code=status_code, content=content)


# Custom exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "timestamp": datetime.now().isoformat()
        }
    )


if __name__ == "__main__":
    # Run the FastAPI app
    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
