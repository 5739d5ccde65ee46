"""URL exclusion rules."""

from fnmatch import fnmatchcase
from typing import Iterable, List, Optional

from ..database.database import DatabaseManager
from ..database.models import BlacklistMatchType, BlacklistRule
from ..database.operations import get_blacklist_repository
from ..endpoints.base import normalize_url
from ..utils.logging import get_logger


logger = get_logger("cache.blacklist")


class BlacklistMatcher:
    """Immutable snapshot of the rules, used for one planning pass."""

    def __init__(self, rules: Iterable[BlacklistRule]):
        self.rules = list(rules)

    def __len__(self):
        return len(self.rules)

    def match(self, url: str) -> Optional[BlacklistRule]:
        """First rule matching ``url``, if any."""
        for rule in self.rules:
            pattern = rule.blacklist_url
            if rule.match_type == BlacklistMatchType.PREFIX:
                if url == pattern or url.startswith(pattern.rstrip("/") + "/") or (
                    pattern.endswith("/") and url.startswith(pattern)
                ):
                    return rule
            elif rule.match_type == BlacklistMatchType.SUBSTRING:
                if pattern in url:
                    return rule
            elif fnmatchcase(url, pattern):
                return rule
        return None

    def is_blacklisted(self, url: str) -> bool:
        return self.match(url) is not None


class Blacklist:
    """Persisted blacklist rules."""

    def __init__(self, db_manager: DatabaseManager, default_match_type: str = BlacklistMatchType.PREFIX.value):
        self.db_manager = db_manager
        self.default_match_type = BlacklistMatchType(default_match_type)

    def add(self, url: str, match_type: Optional[BlacklistMatchType] = None) -> BlacklistRule:
        match_type = match_type or self.default_match_type
        if match_type == BlacklistMatchType.PREFIX and "://" in url:
            url = normalize_url(url)
        rule = BlacklistRule(blacklist_url=url, match_type=match_type)
        with self.db_manager.session_scope() as session:
            row = get_blacklist_repository(session).add(rule)
            logger.info("Blacklist rule added", url=url, match_type=rule.match_type.value)
            return BlacklistRule.model_validate(row)

    def remove(self, url: str) -> int:
        candidates = {url}
        if "://" in url:
            candidates.add(normalize_url(url))
        with self.db_manager.session_scope() as session:
            repo = get_blacklist_repository(session)
            return sum(repo.delete(candidate) for candidate in candidates)

    def list_rules(self) -> List[BlacklistRule]:
        with self.db_manager.session_scope() as session:
            return [BlacklistRule.model_validate(r) for r in get_blacklist_repository(session).get_all()]

    def matcher(self) -> BlacklistMatcher:
        return BlacklistMatcher(self.list_rules())

    def is_blacklisted(self, url: str) -> bool:
        return self.matcher().is_blacklisted(url)
