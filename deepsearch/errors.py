from typing import Optional


class DeepSearchError(Exception):
    """Base class for deep search failures."""


class InvalidQueryError(DeepSearchError):
    pass


class ProviderUnavailableError(DeepSearchError):
    pass


class PlanCreationError(DeepSearchError):
    pass


class PlanNotFoundError(DeepSearchError):
    pass


class PlanAlreadyRunningError(DeepSearchError):
    pass


class StepExecutionError(DeepSearchError):
    """Raised inside the worker loop; recorded on the step, never propagated."""


class SummaryGenerationError(DeepSearchError):
    """Raised by the summarizer; converted into a fallback summary string."""


class GenerationError(DeepSearchError):
    """Structured generation returned nothing usable."""


class CompletionError(DeepSearchError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
