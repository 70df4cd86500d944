"""
Rule-driven shaping of outgoing request headers and cookies
"""

import random
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional

from bypass.site_rule import SiteRule

UA_GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
UA_BINGBOT = "Mozilla/5.0 (compatible; bingbot/2.0; +http://www.bing.com/bingbot.htm)"
UA_FACEBOOKBOT = "facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)"

GOOGLEBOT_FORWARDED_FOR = "66.249.66.1"

REFERER_URLS = {
    "google": "https://www.google.com/",
    "facebook": "https://www.facebook.com/",
    "twitter": "https://t.co/",
}

_BOT_USER_AGENTS = {
    "googlebot": UA_GOOGLEBOT,
    "bingbot": UA_BINGBOT,
    "facebookbot": UA_FACEBOOKBOT,
}


@dataclass(frozen=True)
class OutgoingRequest:
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)

    def to_headers(self) -> Dict[str, str]:
        """Headers with the cookie mapping folded into a Cookie header"""
        headers = {k: v for k, v in self.headers.items() if k.lower() != "cookie"}
        if self.cookies:
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in self.cookies.items())
        return headers


def user_agent_for(rule: Optional[SiteRule]) -> Optional[str]:
    """User agent a rule asks for, or None to keep the client default"""
    if rule is None:
        return None
    if rule.useragent in _BOT_USER_AGENTS:
        return _BOT_USER_AGENTS[rule.useragent]
    return rule.useragent_custom


def referer_for(rule: Optional[SiteRule]) -> Optional[str]:
    if rule is None:
        return None
    if rule.useragent == "googlebot":
        return REFERER_URLS["google"]
    if rule.referer in REFERER_URLS:
        return REFERER_URLS[rule.referer]
    return rule.referer_custom


def random_forwarded_ip(strategy: str, rng: random.Random) -> str:
    if strategy == "eu":
        return f"185.185.{rng.randint(0, 255)}.{rng.randint(0, 255)}"
    return f"{rng.randint(1, 223)}.{rng.randint(0, 255)}.{rng.randint(0, 255)}.{rng.randint(1, 254)}"


def shape_cookies(cookies: Mapping[str, str], rule: SiteRule) -> Dict[str, str]:
    """Apply the rule's cookie policy: select lists > allow > remove > clear"""
    if rule.remove_cookies_select_drop is not None:
        drop = set(rule.remove_cookies_select_drop)
        return {name: value for name, value in cookies.items() if name not in drop}
    if rule.remove_cookies_select_hold is not None:
        hold = set(rule.remove_cookies_select_hold)
        return {name: value for name, value in cookies.items() if name in hold}
    if rule.allow_cookies:
        return dict(cookies)
    return {}


def shape(request: OutgoingRequest, rule: Optional[SiteRule],
          rng: Optional[random.Random] = None) -> OutgoingRequest:
    """
    Return a copy of ``request`` adjusted for ``rule``.

    Order is fixed: user agent, referer, cookies, custom headers, forwarded IP.
    A googlebot user agent brings its own referer and forwarded-for address, and
    the rule's referer setting is then ignored. The input request is not modified.
    """
    if rule is None:
        return request

    headers = dict(request.headers)

    user_agent = user_agent_for(rule)
    if user_agent:
        headers["User-Agent"] = user_agent
    if rule.useragent == "googlebot":
        headers["X-Forwarded-For"] = GOOGLEBOT_FORWARDED_FOR

    referer = referer_for(rule)
    if referer:
        headers["Referer"] = referer

    cookies = shape_cookies(request.cookies, rule)

    for name, value in rule.headers_custom:
        headers[name] = value

    if rule.random_ip:
        headers["X-Forwarded-For"] = random_forwarded_ip(rule.random_ip, rng or random.Random())

    return replace(request, headers=headers, cookies=cookies)
