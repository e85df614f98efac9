"""
Source Trust Policy

Allow/deny rules evaluated against a plugin source before any network
call is made. Patterns are shell-style globs matched against both the
full URL and its host name; deny rules win over allow rules.
"""

from __future__ import annotations

import fnmatch
import logging
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from pluginhost.exceptions import UntrustedSourceError

logger = logging.getLogger(__name__)


class SourcePolicy(BaseModel):
    """Which plugin sources may be installed from."""

    allowed_schemes: list[str] = Field(
        default_factory=lambda: ["https"], description="Permitted URL schemes"
    )
    allow: list[str] = Field(
        default_factory=list,
        description="Glob patterns for URLs or hosts; empty allows every host",
    )
    deny: list[str] = Field(default_factory=list, description="Glob patterns that always reject")

    def check(self, source: str) -> None:
        """Raise ``UntrustedSourceError`` unless *source* is permitted."""
        parsed = urlparse(source)
        scheme = parsed.scheme.lower()
        if scheme not in {s.lower() for s in self.allowed_schemes}:
            raise UntrustedSourceError(
                f"Source scheme {scheme or '(none)'!r} is not allowed: {source}"
            )
        host = (parsed.hostname or "").lower()
        candidates = [source, host] if host else [source]

        for pattern in self.deny:
            if any(fnmatch.fnmatchcase(value, pattern) for value in candidates):
                logger.warning("Source %s rejected by deny rule %s", source, pattern)
                raise UntrustedSourceError(f"Source is denied by policy: {source}")

        if self.allow and not any(
            fnmatch.fnmatchcase(value, pattern)
            for pattern in self.allow
            for value in candidates
        ):
            logger.warning("Source %s matches no allow rule", source)
            raise UntrustedSourceError(f"Source is not on the allow list: {source}")

    def is_trusted(self, source: str) -> bool:
        try:
            self.check(source)
        except UntrustedSourceError:
            return False
        return True
