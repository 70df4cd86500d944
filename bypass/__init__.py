"""
Site bypass rules: catalog, domain resolution and request shaping
"""

from typing import List, Optional, Tuple

from .rule_store import RuleStore
from .site_rule import SiteRule

_default_store: Optional[RuleStore] = None


def get_rule_store() -> RuleStore:
    """Process-wide rule store, created on first use"""
    global _default_store
    if _default_store is None:
        _default_store = RuleStore()
    return _default_store


async def resolve_rule(url: str) -> Optional[SiteRule]:
    store = get_rule_store()
    await store.ensure_loaded()
    return store.resolve(url)


async def is_bypassable(url: str) -> bool:
    store = get_rule_store()
    await store.ensure_loaded()
    return store.is_bypassable(url)


async def list_bypassable_sites() -> List[Tuple[str, str]]:
    store = get_rule_store()
    await store.ensure_loaded()
    return store.list_bypassable_sites()


__all__ = [
    'RuleStore',
    'SiteRule',
    'get_rule_store',
    'resolve_rule',
    'is_bypassable',
    'list_bypassable_sites',
]
