"""
Typed errors raised by the analysis pipeline
"""
from typing import Any, Dict, Optional


class AnalysisError(Exception):
    """Base class for all pipeline errors.

    ``stage`` names the pipeline stage that failed and ``context`` carries the
    inputs needed to decide whether a retry makes sense.
    """

    def __init__(self, message: str, stage: str = "", context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "context": self.context,
        }


class DataUnavailable(AnalysisError):
    """Search performance data is missing or could not be fetched"""


class ProviderError(AnalysisError):
    """Transient failure of an external provider; safe to retry"""

    retryable = True


class ProviderBlocked(ProviderError):
    """Provider answered with a CAPTCHA or anti-bot page"""

    retryable = False


class SearchUnavailable(AnalysisError):
    """Every configured search provider failed for a keyword"""


class ScrapeFailed(AnalysisError):
    """A single article could not be fetched or yielded no text"""

    def __init__(self, url: str, reason: str = ""):
        super().__init__(f"Failed to scrape {url}: {reason}", stage="scrape", context={"url": url})
        self.url = url
        self.reason = reason


class SemanticAnalysisUnavailable(AnalysisError):
    """LLM call failed, timed out or returned nothing usable"""


class PipelineTimeout(AnalysisError):
    """Raised before the execution deadline so the caller can resume later"""

    def __init__(self, stage: str, last_completed_step: int, remaining: float = 0.0):
        super().__init__(
            f"Time budget nearly exhausted during {stage}; retry from step {last_completed_step + 1}",
            stage=stage,
            context={"last_completed_step": last_completed_step, "remaining_seconds": round(remaining, 2)},
        )
        self.last_completed_step = last_completed_step
        self.retry_from_step = last_completed_step + 1


class StepContractError(AnalysisError):
    """A step was invoked with a payload that does not match its contract"""

    def __init__(self, step: str, detail: str):
        super().__init__(f"Invalid input for {step}: {detail}", stage=step)
        self.step = step
        self.detail = detail
