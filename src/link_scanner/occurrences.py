"""
Registry of live presentation sites per normalized URL.

A site is any hashable handle exposing `is_attached()`. Sites that report
themselves detached, or whose check raises, are dropped lazily: when the
registry is next asked for the live sites of their URL, or by `prune()`.
"""

from typing import Hashable, Optional, Protocol, runtime_checkable

from .event_logger import EventLogger, LogMixin


@runtime_checkable
class Site(Protocol):
    """A presentation site currently displaying a URL."""

    def is_attached(self) -> bool:
        ...


class OccurrenceRegistry(LogMixin):
    """Many-to-many association between normalized URLs and sites."""

    COMPONENT = "OccurrenceRegistry"

    def __init__(self, logger: Optional[EventLogger] = None) -> None:
        self._logger = logger
        # dict keys keep registration order and give set semantics
        self._sites: dict[str, dict[Hashable, None]] = {}

    def add(self, url: str, site: Hashable) -> bool:
        """
        Register a site for a URL.

        Returns:
            True if the site was not already registered for this URL
        """
        sites = self._sites.setdefault(url, {})
        if site in sites:
            return False
        sites[site] = None
        return True

    def live_sites(self, url: str) -> list[Hashable]:
        """Return the live sites for a URL, pruning stale ones in the same pass."""
        sites = self._sites.get(url)
        if not sites:
            return []

        live = []
        for site in list(sites):
            if self._is_live(site):
                live.append(site)
            else:
                del sites[site]

        if not sites:
            del self._sites[url]
        return live

    def _is_live(self, site: Hashable) -> bool:
        # Handles without is_attached() are treated as always live
        check = getattr(site, "is_attached", None)
        if check is None:
            return True
        try:
            return bool(check())
        except Exception as e:
            self._log_warn(
                "Liveness check failed, dropping site",
                {"error": str(e), "error_type": type(e).__name__},
            )
            return False

    def discard(self, url: str, site: Hashable) -> bool:
        sites = self._sites.get(url)
        if not sites or site not in sites:
            return False
        del sites[site]
        if not sites:
            del self._sites[url]
        return True

    def prune(self) -> int:
        """
        Drop every detached site across all URLs.

        Returns:
            Number of site registrations removed
        """
        removed = 0
        for url in list(self._sites):
            before = len(self._sites[url])
            removed += before - len(self.live_sites(url))
        return removed

    def sites_for(self, url: str) -> list[Hashable]:
        """Registered sites for a URL without checking liveness."""
        return list(self._sites.get(url, {}))

    def urls(self) -> list[str]:
        return list(self._sites)

    def count(self, url: str) -> int:
        return len(self._sites.get(url, {}))

    def clear(self) -> None:
        self._sites.clear()

