"""
Full-content extraction for paywalled and bot-blocked articles
Fallback chain: direct fetch + purifier → readability → archive mirror → headless rendering

The orchestrator lives in ``content_extraction.web_extractor``; it is not
imported here because the rule modules depend on ``content_extraction.errors``.
"""

from .errors import (
    ExtractionError,
    NetworkError,
    ParseError,
    RenderTimeout,
    RuleLoadError,
    RuleLoadFatal,
    TotalExtractionFailure,
)

__all__ = [
    'ExtractionError',
    'NetworkError',
    'ParseError',
    'RenderTimeout',
    'RuleLoadError',
    'RuleLoadFatal',
    'TotalExtractionFailure',
]
