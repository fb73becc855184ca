"""
robots.txt compliance backed by the per-host cache (HostStore).

Per host: uncached -> fetch /robots.txt -> cached (rules | absent) -> expires after
ROBOTS_CACHE_HOURS -> uncached. A failed or non-2xx fetch caches "absent", which
allows everything.
"""

import re
from datetime import datetime, timezone
from functools import lru_cache
from urllib.parse import urlsplit

import requests

from crawler.core import USER_AGENT, ROBOTS_TIMEOUT, ROBOTS_CACHE_HOURS, setup_logger
from crawler.models import HostRecord, RobotsRule

logger = setup_logger("crawler.robots")


def agent_token(user_agent: str) -> str:
    """'CategoryCrawler/1.0 (+url)' -> 'categorycrawler'"""
    return user_agent.split("/", 1)[0].split()[0].strip().lower() if user_agent.strip() else "*"


def parse_robots_txt(content: str):
    """
    Parse robots.txt into (crawl_delay, allow_rules, disallow_rules).
    Consecutive User-agent lines form one group; the rules that follow apply to all of them.
    """
    crawl_delay = {}
    allow, disallow = [], []
    group_agents = []
    collecting_agents = False

    for line in content.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        directive, value = line.split(":", 1)
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if not collecting_agents:
                group_agents = []
                collecting_agents = True
            group_agents.append(value.lower())
            continue

        collecting_agents = False
        if not group_agents:
            continue

        if directive == "disallow" and value:
            disallow.extend(RobotsRule(agent, value) for agent in group_agents)
        elif directive == "allow" and value:
            allow.extend(RobotsRule(agent, value) for agent in group_agents)
        elif directive == "crawl-delay":
            try:
                delay = float(value)
            except ValueError:
                continue
            for agent in group_agents:
                crawl_delay[agent] = delay

    return crawl_delay, allow, disallow


@lru_cache(maxsize=4096)
def _pattern_regex(pattern: str):
    anchored = pattern.endswith("$")
    if anchored:
        pattern = pattern[:-1]
    regex = re.escape(pattern).replace(r"\*", ".*")
    return re.compile("^" + regex + ("$" if anchored else ""))


def matches_pattern(path: str, pattern: str) -> bool:
    """robots.txt pattern match: '*' is any run of characters, trailing '$' anchors the end."""
    return bool(_pattern_regex(pattern).match(path))


def _longest_match(path, rules, agent):
    best = -1
    for rule in rules:
        if rule.user_agent not in (agent, "*"):
            continue
        if matches_pattern(path, rule.pattern):
            best = max(best, len(rule.pattern))
    return best


def is_path_allowed(record: HostRecord, path: str, agent: str = "*") -> bool:
    """
    Blocked when a Disallow pattern matches, unless an Allow pattern at least as
    specific (as long) also matches.
    """
    if not record.robots_txt_exists:
        return True
    disallowed = _longest_match(path, record.disallow_rules, agent)
    if disallowed < 0:
        return True
    return _longest_match(path, record.allow_rules, agent) >= disallowed


class RobotsGuard:
    """
    FLOW: Look up the host in the HostStore -> refetch robots.txt when missing or
    older than the cache window -> evaluate Allow/Disallow for our agent token.
    """

    def __init__(self, host_store, session=None, user_agent=USER_AGENT,
                 timeout=ROBOTS_TIMEOUT, ttl_hours=ROBOTS_CACHE_HOURS,
                 clock=lambda: datetime.now(timezone.utc)):
        self._hosts = host_store
        self._session = session or requests.Session()
        self._user_agent = user_agent
        self._agent = agent_token(user_agent)
        self._timeout = timeout
        self._ttl_hours = ttl_hours
        self._clock = clock

    def is_allowed(self, url: str) -> bool:
        parsed = urlsplit(url)
        host = (parsed.hostname or "").lower()
        if not host:
            return False

        record = self.get_host(host, scheme=parsed.scheme or "https")
        path = parsed.path or "/"
        if parsed.query:
            path += "?" + parsed.query
        return is_path_allowed(record, path, self._agent)

    def get_crawl_delay(self, host: str):
        return self.get_host(host).get_crawl_delay(self._agent)

    def get_host(self, host: str, scheme: str = "https") -> HostRecord:
        record = self._hosts.get(host)
        if record is None or record.is_cache_expired(self._clock(), self._ttl_hours):
            record = self._fetch(host, scheme)
            self._hosts.upsert(record)
        return record

    def _fetch(self, host: str, scheme: str) -> HostRecord:
        robots_url = f"{scheme}://{host}/robots.txt"
        now = self._clock()
        try:
            response = self._session.get(
                robots_url,
                timeout=self._timeout,
                headers={"User-Agent": self._user_agent},
            )
        except requests.RequestException as e:
            logger.warning(f"[ROBOTS] Failed to fetch robots.txt host={host} error={e}")
            return HostRecord(host=host, robots_fetched_at=now, robots_txt_exists=False)

        if not 200 <= response.status_code < 300:
            logger.info(f"[ROBOTS] No robots.txt found, allowing all host={host} status={response.status_code}")
            return HostRecord(host=host, robots_fetched_at=now, robots_txt_exists=False)

        raw = response.text
        crawl_delay, allow, disallow = parse_robots_txt(raw)
        logger.info(f"[ROBOTS] Robots.txt fetched and cached host={host} disallow_rules={len(disallow)} allow_rules={len(allow)}")
        return HostRecord(
            host=host,
            robots_fetched_at=now,
            robots_txt_exists=True,
            crawl_delay=crawl_delay,
            allow_rules=allow,
            disallow_rules=disallow,
            robots_txt_raw=raw,
        )
