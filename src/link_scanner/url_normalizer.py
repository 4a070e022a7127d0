"""
URL normalization and ignore policy.

Turns a raw URL into the key used for deduplication and decides which URLs
never enter the scan pipeline (application assets, inline images, invite
links and private network addresses).
"""

import re
from typing import Optional
from urllib.parse import urlsplit


# (host suffix, path prefix) pairs whose query strings are signed, expiring
# parameters that change between otherwise identical links.
VOLATILE_QUERY_LOCATIONS = (
    ("cdn.discordapp.com", "/attachments/"),
)

DEFAULT_IGNORE_PATTERNS = (
    # Application assets and media
    re.compile(r"discord\.com/assets"),
    re.compile(r"discord\.com/channels"),
    re.compile(r"media\.discordapp\.net"),
    re.compile(r"cdn\.discordapp\.com/attachments/.*\.(png|jpg|jpeg|gif|webp|svg)(\?|$)", re.IGNORECASE),
    re.compile(r"images-ext.*\.discordapp\.net"),
    # Inline images
    re.compile(r"\.(png|jpg|jpeg|gif|webp|svg)(\?|$)", re.IGNORECASE),
    # Invite links
    re.compile(r"discord\.gg/"),
    # Loopback and private ranges
    re.compile(r"^https?://(localhost|127\.0\.0\.1|192\.168\.|10\.|172\.(1[6-9]|2[0-9]|3[0-1])\.)"),
)


class UrlNormalizer:
    """
    Canonicalizes raw URLs and applies the ignore policy.

    Both operations are pure: no I/O, no state beyond the configured patterns.
    """

    def __init__(
        self,
        ignore_patterns: Optional[tuple] = None,
        volatile_locations: Optional[tuple] = None,
    ) -> None:
        self._ignore_patterns = (
            DEFAULT_IGNORE_PATTERNS if ignore_patterns is None else tuple(ignore_patterns)
        )
        self._volatile_locations = (
            VOLATILE_QUERY_LOCATIONS if volatile_locations is None else tuple(volatile_locations)
        )

    def normalize(self, raw_url: str) -> str:
        """
        Compute the dedup key for a raw URL.

        For volatile-query locations the query string is dropped (the fragment
        is kept). Everything else, including unparseable input, is returned
        unchanged.

        Args:
            raw_url: URL as observed

        Returns:
            The normalized URL
        """
        if not self._has_volatile_query(raw_url):
            return raw_url

        base, sep, fragment = raw_url.partition("#")
        base = base.split("?", 1)[0]
        return base + sep + fragment

    def should_ignore(self, raw_url: str) -> bool:
        """Check whether a URL matches any ignore pattern."""
        return any(pattern.search(raw_url) for pattern in self._ignore_patterns)

    def prepare(self, raw_url: str) -> Optional[str]:
        """
        Apply the ignore policy, then normalize.

        Returns:
            The normalized URL, or None when the URL must be dropped
        """
        if not raw_url or self.should_ignore(raw_url):
            return None
        return self.normalize(raw_url)

    def _has_volatile_query(self, raw_url: str) -> bool:
        try:
            parts = urlsplit(raw_url)
        except ValueError:
            return False

        host = (parts.hostname or "").lower()
        for host_suffix, path_prefix in self._volatile_locations:
            if (host == host_suffix or host.endswith("." + host_suffix)) and parts.path.startswith(path_prefix):
                return True
        return False
