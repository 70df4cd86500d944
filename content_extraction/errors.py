"""Exceptions raised across the extraction pipeline"""

from typing import List, Sequence


class ExtractionError(Exception):
    """Base class for content extraction errors"""
    pass


class RuleLoadError(ExtractionError):
    """A single catalog entry could not be parsed"""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Invalid rule '{key}': {reason}")
        self.key = key
        self.reason = reason


class RuleLoadFatal(ExtractionError):
    """No catalog produced a usable rule set"""
    pass


class NetworkError(ExtractionError):
    """Timeout, bad status or connection failure"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(ExtractionError):
    """Malformed HTML or JSON inside a purification strategy"""
    pass


class RenderTimeout(ExtractionError):
    """Headless rendering exceeded its time budget"""

    def __init__(self, url: str, timeout: float):
        super().__init__(f"Rendering {url} exceeded {timeout}s")
        self.url = url
        self.timeout = timeout


class TotalExtractionFailure(ExtractionError):
    """Every strategy of the fallback chain was exhausted"""

    def __init__(self, url: str, reasons: Sequence[str]):
        self.url = url
        self.reasons: List[str] = list(reasons)
        detail = "; ".join(self.reasons) if self.reasons else "no strategy applied"
        super().__init__(f"All content extraction methods failed for {url}: {detail}")
