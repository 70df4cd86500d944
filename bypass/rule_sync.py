"""
Periodic sync of the override rule catalog from the remote repository
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from bypass.rule_store import RuleStore
from config import config
from utils.network import BROWSER_USER_AGENT, NetworkSession, get_session
from utils.retry import AttemptTimeout, RetryPolicy, run_with_retries

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "bypass_rule_sync"


def _retry_network_errors(error: BaseException) -> bool:
    return isinstance(error, (httpx.HTTPError, AttemptTimeout, asyncio.TimeoutError, OSError))


class RuleUpdateService:
    """Downloads the override catalog and applies it when its content changed"""

    def __init__(self, rule_store: RuleStore, session: NetworkSession = None,
                 update_url: str = None, version_path: str = None,
                 retry_policy: RetryPolicy = None):
        self.rule_store = rule_store
        self.session = session or get_session()
        self.update_url = update_url or config.RULES_UPDATE_URL
        self.version_path = Path(version_path or config.RULES_VERSION_PATH)
        self.retry_policy = retry_policy or RetryPolicy(
            attempts=config.RULES_SYNC_ATTEMPTS,
            timeout_per_attempt=config.HTTP_TIMEOUT_S,
            should_retry=_retry_network_errors,
            on_retry=lambda attempt, error: logger.info(f"Rule sync attempt {attempt} failed: {error!r}"),
        )

    def _current_hash(self) -> Optional[str]:
        try:
            return self.version_path.read_text(encoding='utf-8').strip() or None
        except FileNotFoundError:
            return None

    def _write_hash(self, digest: str):
        self.version_path.parent.mkdir(parents=True, exist_ok=True)
        self.version_path.write_text(digest, encoding='utf-8')

    async def _download(self) -> bytes:
        response = await self.session.get(self.update_url, headers={'User-Agent': BROWSER_USER_AGENT})
        if not response.is_success:
            raise httpx.HTTPStatusError(
                f"Rule update returned HTTP {response.status_code}",
                request=httpx.Request("GET", self.update_url),
                response=httpx.Response(response.status_code),
            )
        return response.content

    async def check_and_update(self) -> bool:
        """
        Fetch the remote catalog and apply it if it differs from the last one.

        Returns True when a new catalog was saved. Every failure leaves the
        current override in place and returns False.
        """
        logger.info("Checking for bypass rule updates")
        result = await run_with_retries(self.retry_policy, self._download)
        if not result.is_success:
            logger.warning(f"Rule update failed, keeping current version: {result.final_error!r}")
            return False

        body = result.value
        if not body.strip():
            logger.warning("Rule update returned an empty body")
            return False

        try:
            payload = json.loads(body)
        except ValueError as e:
            logger.warning(f"Rule update is not valid JSON: {e}")
            return False
        if not isinstance(payload, dict):
            logger.warning("Rule update is not a JSON object, ignoring")
            return False

        digest = hashlib.sha256(body).hexdigest()
        if digest == self._current_hash():
            logger.info("Bypass rules are already up to date")
            return False

        try:
            await self.rule_store.save_override(body)
            self._write_hash(digest)
        except OSError as e:
            logger.error(f"Could not persist rule update: {e}")
            return False

        logger.info(f"Bypass rules updated ({len(payload)} entries)")
        return True


class RuleSyncScheduler:
    """Runs RuleUpdateService.check_and_update on a fixed interval"""

    def __init__(self, service: RuleUpdateService, interval_hours: int = None):
        self.service = service
        self.interval_hours = interval_hours or config.RULES_SYNC_INTERVAL_H
        self.scheduler = AsyncIOScheduler()

    def start(self, run_immediately: bool = True):
        """Start the scheduler; must be called with a running event loop"""
        job_options = {}
        if run_immediately:
            job_options['next_run_time'] = datetime.now()

        self.scheduler.add_job(
            self.service.check_and_update,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_options,
        )
        self.scheduler.start()
        logger.info(f"Rule sync scheduled every {self.interval_hours}h")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Rule sync scheduler stopped")
