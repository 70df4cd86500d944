"""
Site rule model and catalog entry parsing
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from content_extraction.errors import RuleLoadError

logger = logging.getLogger(__name__)

GROUP_MARKER = "###"
OPTIONS_PREFIX = "#options_"

USER_AGENTS = ("googlebot", "bingbot", "facebookbot", "custom")
REFERERS = ("google", "facebook", "twitter", "custom")

REMOVE_ELEMENT = "remove-element"
REMOVE_ATTRIBUTE = "remove-attribute"
SET_ATTRIBUTE = "set-attribute"


@dataclass(frozen=True)
class DomOperation:
    """One declarative DOM edit: selector plus action"""
    selector: str
    action: str
    attribute: Optional[str] = None
    value: str = ""


@dataclass(frozen=True)
class SiteRule:
    key: str = ""
    domain: Optional[str] = None
    group: Tuple[str, ...] = ()
    allow_cookies: bool = False
    remove_cookies: bool = False
    remove_cookies_select_hold: Optional[Tuple[str, ...]] = None
    remove_cookies_select_drop: Optional[Tuple[str, ...]] = None
    useragent: Optional[str] = None
    useragent_custom: Optional[str] = None
    referer: Optional[str] = None
    referer_custom: Optional[str] = None
    random_ip: Optional[str] = None
    block_regex: Optional[str] = None
    block_js: bool = False
    block_js_ext: bool = False
    block_js_inline: Optional[str] = None
    ld_json: Optional[str] = None
    ld_json_next: Optional[str] = None
    ld_json_source: Optional[str] = None
    ld_json_url: Optional[str] = None
    ld_archive_is: Optional[str] = None
    ld_och_to_unlock: Optional[str] = None
    cs_clear_lclstrg: bool = False
    cs_code: Tuple[DomOperation, ...] = ()
    cs_dompurify: bool = False
    cs_block: bool = False
    amp_unhide: bool = False
    amp_redirect: Optional[str] = None
    add_ext_link: Optional[str] = None
    add_ext_link_type: Optional[str] = None
    exception: Tuple["SiteRule", ...] = ()
    nofix: bool = False
    headers_custom: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def is_group(self) -> bool:
        return bool(self.domain and self.domain.startswith(GROUP_MARKER) and self.group)

    @property
    def is_settings_entry(self) -> bool:
        return self.domain == GROUP_MARKER or bool(self.domain and self.domain.startswith(OPTIONS_PREFIX))

    @property
    def is_disabled(self) -> bool:
        return self.nofix

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self.headers_custom)

    def covers(self, domain: str) -> bool:
        """True if this rule names ``domain`` directly or in its group, ignoring case"""
        domain = domain.lower()
        return (self.domain or "").lower() == domain or domain in {g.lower() for g in self.group}

    def exception_for(self, domain: str) -> Optional["SiteRule"]:
        for exception in self.exception:
            if exception.covers(domain):
                return exception
        return None

    def member_domains(self) -> Iterator[str]:
        if self.is_group:
            yield from self.group
        elif self.domain and not self.domain.startswith("#"):
            yield self.domain


def _optional_str(data: Mapping[str, Any], name: str) -> Optional[str]:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, (str, int, float)):
        raise ValueError(f"'{name}' must be a string")
    value = str(value)
    return value or None


def _flag(data: Mapping[str, Any], name: str) -> bool:
    value = data.get(name)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        return value.strip() not in ("", "0", "false")
    raise ValueError(f"'{name}' must be a number")


def _str_list(data: Mapping[str, Any], name: str) -> Optional[Tuple[str, ...]]:
    value = data.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ValueError(f"'{name}' must be a list")
    return tuple(str(item) for item in value)


def parse_dom_operations(raw: Any) -> Tuple[DomOperation, ...]:
    """Normalize ``cs_code`` (object or array) into ordered DOM operations"""
    if raw is None:
        return ()
    if isinstance(raw, dict):
        entries = [raw]
    elif isinstance(raw, list):
        entries = raw
    else:
        raise ValueError("'cs_code' must be an object or an array")

    operations = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        selector = entry.get("cond")
        if not isinstance(selector, str) or not selector:
            continue
        if _flag(entry, "rm_elem"):
            operations.append(DomOperation(selector, REMOVE_ELEMENT))
        if entry.get("rm_attr"):
            operations.append(DomOperation(selector, REMOVE_ATTRIBUTE, attribute=str(entry["rm_attr"])))
        if entry.get("set_attr"):
            operations.append(DomOperation(
                selector, SET_ATTRIBUTE,
                attribute=str(entry["set_attr"]),
                value=str(entry.get("set_val") or ""),
            ))
    return tuple(operations)


def parse_site_rule(key: str, data: Any) -> SiteRule:
    """
    Build a SiteRule from one catalog entry.

    Raises:
        RuleLoadError: if the entry is not an object or a field has the wrong shape
    """
    if not isinstance(data, dict):
        raise RuleLoadError(key, "entry is not an object")

    try:
        headers = data.get("headers_custom") or {}
        if not isinstance(headers, dict):
            raise ValueError("'headers_custom' must be an object")

        exceptions = data.get("exception") or []
        if isinstance(exceptions, dict):
            exceptions = [exceptions]
        if not isinstance(exceptions, list):
            raise ValueError("'exception' must be an array")

        return SiteRule(
            key=key,
            domain=_optional_str(data, "domain"),
            group=_str_list(data, "group") or (),
            allow_cookies=_flag(data, "allow_cookies"),
            remove_cookies=_flag(data, "remove_cookies"),
            remove_cookies_select_hold=_str_list(data, "remove_cookies_select_hold"),
            remove_cookies_select_drop=_str_list(data, "remove_cookies_select_drop"),
            useragent=_optional_str(data, "useragent"),
            useragent_custom=_optional_str(data, "useragent_custom"),
            referer=_optional_str(data, "referer"),
            referer_custom=_optional_str(data, "referer_custom"),
            random_ip=_optional_str(data, "random_ip"),
            block_regex=_optional_str(data, "block_regex"),
            block_js=_flag(data, "block_js"),
            block_js_ext=_flag(data, "block_js_ext"),
            block_js_inline=_optional_str(data, "block_js_inline"),
            ld_json=_optional_str(data, "ld_json"),
            ld_json_next=_optional_str(data, "ld_json_next"),
            ld_json_source=_optional_str(data, "ld_json_source"),
            ld_json_url=_optional_str(data, "ld_json_url"),
            ld_archive_is=_optional_str(data, "ld_archive_is"),
            ld_och_to_unlock=_optional_str(data, "ld_och_to_unlock"),
            cs_clear_lclstrg=_flag(data, "cs_clear_lclstrg"),
            cs_code=parse_dom_operations(data.get("cs_code")),
            cs_dompurify=_flag(data, "cs_dompurify"),
            cs_block=_flag(data, "cs_block"),
            amp_unhide=_flag(data, "amp_unhide"),
            amp_redirect=_optional_str(data, "amp_redirect"),
            add_ext_link=_optional_str(data, "add_ext_link"),
            add_ext_link_type=_optional_str(data, "add_ext_link_type"),
            exception=tuple(
                parse_site_rule(f"{key}/exception[{i}]", item) for i, item in enumerate(exceptions)
            ),
            nofix=_flag(data, "nofix"),
            headers_custom=tuple((str(k), str(v)) for k, v in headers.items()),
        )
    except RuleLoadError:
        raise
    except (ValueError, TypeError) as e:
        raise RuleLoadError(key, str(e)) from e
