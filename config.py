"""
Configuration for the full-content extraction service
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from a .env file
load_dotenv()

PACKAGE_ROOT = Path(__file__).resolve().parent


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Service settings read from the environment"""

    def __init__(self):
        # Logging
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
        self.STRUCTURED_LOGGING = _env_bool('STRUCTURED_LOGGING', 'false')
        self.DEBUG_MODE = _env_bool('DEBUG_MODE', 'false')

        # Rule catalogs
        self.RULES_BASE_PATH = os.getenv(
            'RULES_BASE_PATH', str(PACKAGE_ROOT / 'bypass' / 'sites.json')
        )
        data_dir = Path(os.getenv('DATA_DIR', './data'))
        self.RULES_OVERRIDE_PATH = os.getenv('RULES_OVERRIDE_PATH', str(data_dir / 'sites_updated.json'))
        self.RULES_VERSION_PATH = os.getenv('RULES_VERSION_PATH', str(data_dir / 'rules_version.txt'))
        self.RULES_UPDATE_URL = os.getenv(
            'RULES_UPDATE_URL',
            'https://gitflic.ru/project/magnolia1234/bpc_updates/blob/raw?file=sites_updated.json',
        )
        self.RULES_SYNC_INTERVAL_H = int(os.getenv('RULES_SYNC_INTERVAL_H', '24'))
        self.RULES_SYNC_ATTEMPTS = int(os.getenv('RULES_SYNC_ATTEMPTS', '3'))

        # Fetching and extraction heuristics
        self.HTTP_TIMEOUT_S = float(os.getenv('HTTP_TIMEOUT_S', '15'))
        self.MIN_ARTICLE_CHARS = int(os.getenv('MIN_ARTICLE_CHARS', '200'))
        self.ARCHIVE_MIRROR = os.getenv('ARCHIVE_MIRROR', 'archive.is')
        self.FALLBACK_WITHOUT_RULE = _env_bool('FALLBACK_WITHOUT_RULE', 'false')
        self.WEBVIEW_FIRST_DOMAINS = tuple(
            d.strip() for d in os.getenv('WEBVIEW_FIRST_DOMAINS', 'bloomberg.com,wsj.com').split(',')
            if d.strip()
        )

        # Headless rendering
        self.RENDER_SETTLE_DELAY_S = float(os.getenv('RENDER_SETTLE_DELAY_S', '5'))
        self.RENDER_TIMEOUT_S = float(os.getenv('RENDER_TIMEOUT_S', '15'))
        self.WEBVIEW_FIRST_TIMEOUT_S = float(os.getenv('WEBVIEW_FIRST_TIMEOUT_S', '20'))
        self.REDIRECT_TIMEOUT_S = float(os.getenv('REDIRECT_TIMEOUT_S', '10'))

        # Bulk prefetch
        self.PREFETCH_CONCURRENCY = int(os.getenv('PREFETCH_CONCURRENCY', '2'))
        self.PREFETCH_LIMIT = int(os.getenv('PREFETCH_LIMIT', '30'))

        # Full-content cache
        self.WEB_CACHE_PATH = os.getenv('WEB_CACHE_PATH', str(data_dir / 'full_content_cache.db'))
        self.WEB_CACHE_TTL_H = int(os.getenv('WEB_CACHE_TTL_H', '72'))

        self._validate_config()

    def _validate_config(self):
        """Reject settings the extraction chain cannot work with"""
        if self.MIN_ARTICLE_CHARS <= 0:
            raise ValueError("MIN_ARTICLE_CHARS must be greater than 0")

        if self.PREFETCH_CONCURRENCY <= 0:
            raise ValueError("PREFETCH_CONCURRENCY must be greater than 0")

        for name in ('HTTP_TIMEOUT_S', 'RENDER_TIMEOUT_S', 'WEBVIEW_FIRST_TIMEOUT_S', 'REDIRECT_TIMEOUT_S'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than 0")

        if self.RENDER_SETTLE_DELAY_S < 0:
            raise ValueError("RENDER_SETTLE_DELAY_S must not be negative")

    def __str__(self) -> str:
        return f"""Configuration:
- Log Level: {self.LOG_LEVEL}
- Base rules: {self.RULES_BASE_PATH}
- Override rules: {self.RULES_OVERRIDE_PATH}
- Min article chars: {self.MIN_ARTICLE_CHARS}
- Render settle delay: {self.RENDER_SETTLE_DELAY_S}s
- Archive mirror: {self.ARCHIVE_MIRROR}
- Prefetch concurrency: {self.PREFETCH_CONCURRENCY}"""


# Global configuration instance
config = Config()
