"""
Background full-content prefetch for batches of feed articles
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from bypass.rule_store import RuleStore
from config import config
from content_extraction.cache import FullContentCache
from content_extraction.web_extractor import ExtractionOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedArticle:
    url: str
    title: Optional[str] = None


@dataclass
class PrefetchReport:
    candidates: int = 0
    skipped_cached: int = 0
    fetched: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)


class Prefetcher:
    """Extracts bypassable articles ahead of time, bounded by a semaphore"""

    def __init__(self, orchestrator: ExtractionOrchestrator, cache: FullContentCache,
                 rule_store: RuleStore = None, concurrency: int = None):
        self.orchestrator = orchestrator
        self.cache = cache
        self.rule_store = rule_store or orchestrator.rule_store
        self._semaphore = asyncio.Semaphore(concurrency or config.PREFETCH_CONCURRENCY)

    async def prefetch(self, articles: Iterable[FeedArticle], limit: int = None) -> PrefetchReport:
        limit = config.PREFETCH_LIMIT if limit is None else limit
        report = PrefetchReport()

        await self.rule_store.ensure_loaded()
        pending = []
        for article in articles:
            if len(pending) + report.skipped_cached >= limit:
                break
            if not self.rule_store.is_bypassable(article.url):
                continue
            if self.cache.contains(article.url):
                report.skipped_cached += 1
                continue
            pending.append(article)

        report.candidates = len(pending) + report.skipped_cached
        if not pending:
            return report

        logger.info(f"Prefetching full content for {len(pending)} articles")
        await asyncio.gather(*(self._prefetch_one(article, report) for article in pending))
        logger.info(
            f"Prefetch finished: {report.fetched} fetched, {report.failed} failed, "
            f"{report.skipped_cached} already cached"
        )
        return report

    async def _prefetch_one(self, article: FeedArticle, report: PrefetchReport):
        async with self._semaphore:
            try:
                result = await self.orchestrator.run(article.url, article.title)
            except Exception as e:
                report.failed += 1
                report.failures.append(f"{article.url}: {e}")
                logger.warning(f"Prefetch failed for {article.url}: {e}")
                return

        if not result.is_success:
            report.failed += 1
            report.failures.append(f"{article.url}: {'; '.join(result.reasons)}")
            logger.info(f"No full content for {article.url}")
            return

        try:
            self.cache.put(article.url, result.content, result.strategy)
        except Exception as e:
            report.failed += 1
            report.failures.append(f"{article.url}: cache write failed: {e}")
            logger.warning(f"Could not cache full content for {article.url}: {e}")
            return
        report.fetched += 1
