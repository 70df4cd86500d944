"""SQLite cache of extracted full-content fragments"""

import hashlib
import logging
import os
import sqlite3
import time
from dataclasses import dataclass
from typing import Optional

from config import config

logger = logging.getLogger(__name__)


@dataclass
class CachedContent:
    url: str
    content: str
    strategy: Optional[str]
    fetched_at: int


class FullContentCache:
    """Full-content fragments keyed by URL hash, expiring after a TTL"""

    def __init__(self, db_path: str = None, ttl_hours: int = None):
        self.db_path = db_path or config.WEB_CACHE_PATH
        self.ttl_hours = config.WEB_CACHE_TTL_H if ttl_hours is None else ttl_hours
        self._init_db()

    def _init_db(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS full_content_cache (
                    url_hash TEXT PRIMARY KEY,
                    url TEXT,
                    fetched_at INTEGER,
                    strategy TEXT,
                    content TEXT
                )
            """)
            conn.commit()

    @staticmethod
    def _url_hash(url: str) -> str:
        return hashlib.sha256(url.encode('utf-8')).hexdigest()

    def get(self, url: str) -> Optional[CachedContent]:
        """Cached entry for ``url`` unless it has expired"""
        cutoff = int(time.time()) - self.ttl_hours * 3600
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM full_content_cache WHERE url_hash = ? AND fetched_at > ?",
                (self._url_hash(url), cutoff),
            ).fetchone()

        if row is None:
            return None
        return CachedContent(
            url=row['url'],
            content=row['content'],
            strategy=row['strategy'],
            fetched_at=row['fetched_at'],
        )

    def contains(self, url: str) -> bool:
        return self.get(url) is not None

    def put(self, url: str, content: str, strategy: str = None):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO full_content_cache
                (url_hash, url, fetched_at, strategy, content)
                VALUES (?, ?, ?, ?, ?)
            """, (self._url_hash(url), url, int(time.time()), strategy, content))
            conn.commit()
        logger.debug(f"Cached full content for {url} ({len(content)} chars)")

    def purge_expired(self) -> int:
        """Delete expired rows and return how many were removed"""
        cutoff = int(time.time()) - self.ttl_hours * 3600
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM full_content_cache WHERE fetched_at <= ?", (cutoff,))
            conn.commit()
            return cursor.rowcount
