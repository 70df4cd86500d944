"""
Rule catalog loading, merging and domain resolution.

The base catalog ships with the package; an override catalog (written by the
remote sync or a local save) is merged over it key by key. Each load builds a
fresh DomainIndex and publishes it with a single reference assignment, so
resolvers only ever see a complete index.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
from urllib.parse import urlparse

from bypass.site_rule import SiteRule, parse_site_rule
from config import config
from content_extraction.errors import RuleLoadError, RuleLoadFatal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainIndex:
    """Immutable lookup tables produced by one catalog load"""
    by_domain: Mapping[str, SiteRule] = field(default_factory=lambda: MappingProxyType({}))
    by_name: Mapping[str, SiteRule] = field(default_factory=lambda: MappingProxyType({}))

    def __len__(self) -> int:
        return len(self.by_domain)


def host_of(url: str) -> Optional[str]:
    """Lowercased hostname without a leading ``www.``; None if unparseable"""
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def build_index(rules: Mapping[str, SiteRule]) -> DomainIndex:
    """Expand groups, apply exceptions and drop settings/disabled entries"""
    by_domain: Dict[str, SiteRule] = {}
    by_name: Dict[str, SiteRule] = {}

    for name, rule in rules.items():
        if rule.is_settings_entry or rule.is_disabled or not rule.domain:
            continue

        if rule.is_group:
            for member in rule.group:
                member = member.lower()
                exception = rule.exception_for(member)
                if exception is not None:
                    if exception.is_disabled:
                        continue
                    by_domain[member] = exception
                else:
                    by_domain[member] = rule
            by_name[name] = rule
        elif not rule.domain.startswith("#"):
            by_domain[rule.domain.lower()] = rule
            by_name[name] = rule

    return DomainIndex(
        by_domain=MappingProxyType(by_domain),
        by_name=MappingProxyType(by_name),
    )


class RuleStore:
    """Owns the merged rule set and the published DomainIndex"""

    def __init__(self, base_path: str = None, override_path: str = None):
        self.base_path = Path(base_path or config.RULES_BASE_PATH)
        self.override_path = Path(override_path or config.RULES_OVERRIDE_PATH)

        self._index = DomainIndex()
        self._loaded = False
        self._load_lock = asyncio.Lock()

        self.warnings: List[str] = []
        self.last_error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def index(self) -> DomainIndex:
        return self._index

    async def ensure_loaded(self):
        """Load once; concurrent callers wait for the same in-flight load"""
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            await self._load_locked()

    async def load(self):
        """Reload both catalogs and publish a new index"""
        async with self._load_lock:
            await self._load_locked()

    async def _load_locked(self):
        try:
            rules, warnings, error = await asyncio.to_thread(self._read_catalogs)
        except RuleLoadFatal as e:
            self.last_error = str(e)
            logger.error(f"Rule catalog load failed, keeping previous index: {e}")
            return

        index = build_index(rules)
        self.warnings = warnings
        self.last_error = error
        self._index = index
        self._loaded = True
        logger.info(f"Loaded {len(rules)} rules covering {len(index)} domains")

    def _read_catalogs(self) -> Tuple[Dict[str, SiteRule], List[str], Optional[str]]:
        warnings: List[str] = []
        error: Optional[str] = None

        base_raw = None
        try:
            base_raw = self._read_json_object(self.base_path)
        except (OSError, ValueError) as e:
            error = f"Base catalog {self.base_path} unusable: {e}"
            logger.error(error)

        override_raw = None
        if self.override_path.exists():
            try:
                override_raw = self._read_json_object(self.override_path)
            except (OSError, ValueError) as e:
                error = f"Override catalog {self.override_path} unusable, using base only: {e}"
                logger.warning(error)

        if base_raw is None and override_raw is None:
            raise RuleLoadFatal(error or "No rule catalog available")

        merged: Dict[str, Any] = dict(base_raw or {})
        merged.update(override_raw or {})

        rules: Dict[str, SiteRule] = {}
        for key, entry in merged.items():
            try:
                rules[key] = parse_site_rule(key, entry)
            except RuleLoadError as e:
                warnings.append(str(e))
                logger.warning(f"Skipping rule: {e}")

        return rules, warnings, error

    @staticmethod
    def _read_json_object(path: Path) -> Dict[str, Any]:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("catalog root is not a JSON object")
        return data

    def resolve(self, url: str) -> Optional[SiteRule]:
        """Exact host match first, else the longest matching domain suffix"""
        host = host_of(url)
        if host is None:
            return None

        by_domain = self._index.by_domain
        rule = by_domain.get(host)
        if rule is not None:
            return rule

        best_domain = None
        for domain in by_domain:
            if host.endswith("." + domain):
                if best_domain is None or len(domain) > len(best_domain):
                    best_domain = domain
        return by_domain[best_domain] if best_domain is not None else None

    def is_bypassable(self, url: str) -> bool:
        return self.resolve(url) is not None

    def list_bypassable_sites(self) -> List[Tuple[str, str]]:
        """(rule name, domain) pairs sorted by name"""
        sites = []
        for name, rule in self._index.by_name.items():
            for domain in rule.member_domains():
                if self._index.by_domain.get(domain.lower()) is not None:
                    sites.append((name, domain))
        return sorted(sites, key=lambda item: (item[0].lower(), item[1]))

    def bypassable_domains(self) -> Set[str]:
        return set(self._index.by_domain)

    async def save_override(self, data: bytes):
        """Persist a new override catalog atomically, then reload"""
        await asyncio.to_thread(self._write_override, data)
        await self.load()

    def _write_override(self, data: bytes):
        self.override_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.override_path.parent, suffix='.tmp')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, self.override_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
