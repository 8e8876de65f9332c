"""IP and path whitelists.

IP entries may be single addresses or CIDR ranges and may carry an inline
comment, e.g. ``"192.168.1.0/24  # office"``. Blank and comment-only entries
are skipped.
"""

import ipaddress
from typing import Iterable


def _strip_comment(entry: str) -> str:
    return entry.split("#", 1)[0].strip()


def is_whitelisted(ip: str, whitelist: Iterable[str]) -> bool:
    """True if ``ip`` equals an entry or falls inside a CIDR entry."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False

    for raw_entry in whitelist:
        entry = _strip_comment(raw_entry)
        if not entry:
            continue
        if entry == ip:
            return True
        try:
            network = ipaddress.ip_network(entry, strict=False)
        except ValueError:
            continue
        if address.version == network.version and address in network:
            return True
    return False


def is_path_whitelisted(path: str, path_whitelist: Iterable[str]) -> bool:
    """True if ``path`` matches an entry exactly or a ``prefix*`` entry."""
    for raw_entry in path_whitelist:
        entry = _strip_comment(raw_entry)
        if not entry:
            continue
        if entry.endswith("*"):
            if path.startswith(entry[:-1]):
                return True
        elif path == entry:
            return True
    return False


def is_honeypot(path: str, honeypots: Iterable[str]) -> bool:
    """True if ``path`` is one of the configured honeypot paths."""
    return any(path == honeypot for honeypot in honeypots)
