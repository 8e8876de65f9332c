"""Browser family and major version extraction from User-Agent strings."""

import re
from typing import Iterable, Optional, Tuple

# Families whose own token also appears in other browsers' User-Agents
_EXCLUDED_TOKENS = {
    "Chrome": ("Edg/", "OPR/"),
    "Safari": ("Chrome/", "Chromium/", "CriOS/", "FxiOS/"),
}


def extract_version(user_agent: str, family: str) -> Optional[int]:
    """Major version of ``family`` in ``user_agent`` or None if absent.

    Safari reports its release in the ``Version/`` token rather than in
    ``Safari/``, which carries the WebKit build number.
    """
    if not user_agent:
        return None
    if any(token in user_agent for token in _EXCLUDED_TOKENS.get(family, ())):
        return None

    if family == "Safari":
        if "Safari/" not in user_agent:
            return None
        match = re.search(r"Version/(\d+)", user_agent)
    else:
        match = re.search(rf"{re.escape(family)}/(\d+)", user_agent)
    return int(match.group(1)) if match else None


def meets_minimum(user_agent: str, table: Iterable[Tuple[str, int]]) -> bool:
    """True if any ``(family, min_version)`` entry is met or exceeded."""
    for family, min_version in table:
        version = extract_version(user_agent, family)
        if version is not None and version >= min_version:
            return True
    return False


def is_outdated_browser(user_agent: str, browser_block: Iterable[Tuple[str, int]]) -> bool:
    """True if the User-Agent names a listed family below its minimum version."""
    for family, min_version in browser_block:
        version = extract_version(user_agent, family)
        if version is not None and version < min_version:
            return True
    return False
