"""
IP blacklist persisted in the settings store.
"""
from typing import List, Optional

import structlog
from pydantic import ValidationError

from ..models.common import validate_ipv4
from ..models.settings import BlacklistEntry
from .settings import BaseSettingsStore

logger = structlog.get_logger(__name__)

BLACKLIST_KEY = "network_scan_blacklist"


class BlacklistStore:
    """Ordered set of blacklisted IPv4 addresses with their insertion time."""

    def __init__(self, settings: BaseSettingsStore):
        self._settings = settings
        self.logger = logger.bind(service="BlacklistStore")
        self._entries: List[BlacklistEntry] = self._load()

    def _load(self) -> List[BlacklistEntry]:
        raw = self._settings.get(BLACKLIST_KEY) or []
        entries: List[BlacklistEntry] = []
        seen = set()
        for item in raw:
            # Older data stored bare IP strings.
            data = {"ip": item} if isinstance(item, str) else item
            try:
                entry = BlacklistEntry.model_validate(data)
            except ValidationError:
                self.logger.warning("Dropping invalid blacklist entry", entry=item)
                continue
            if entry.ip not in seen:
                seen.add(entry.ip)
                entries.append(entry)
        return entries

    def _save(self) -> None:
        self._settings.set(BLACKLIST_KEY, [e.model_dump(mode="json", by_alias=True) for e in self._entries])

    @staticmethod
    def _normalize(ip: str) -> Optional[str]:
        try:
            return validate_ipv4(ip)
        except (ValueError, AttributeError):
            return None

    def entries(self) -> List[BlacklistEntry]:
        return list(self._entries)

    def ips(self) -> List[str]:
        return [e.ip for e in self._entries]

    def is_blacklisted(self, ip: str) -> bool:
        normalized = self._normalize(ip)
        return normalized is not None and any(e.ip == normalized for e in self._entries)

    def add(self, ip: str) -> bool:
        """Adds an address. Returns False for invalid input; adding an address
        already present is a successful no-op."""
        normalized = self._normalize(ip)
        if normalized is None:
            self.logger.warning("Refusing to blacklist invalid address", ip=ip)
            return False
        if self.is_blacklisted(normalized):
            return True
        self._entries.append(BlacklistEntry(ip=normalized))
        self._save()
        self.logger.info("Address blacklisted", ip=normalized)
        return True

    def remove(self, ip: str) -> bool:
        """Removes an address. Removing an unknown address is a no-op returning True."""
        normalized = self._normalize(ip)
        if normalized is None:
            return False
        remaining = [e for e in self._entries if e.ip != normalized]
        if len(remaining) != len(self._entries):
            self._entries = remaining
            self._save()
            self.logger.info("Address removed from blacklist", ip=normalized)
        return True
