"""User-agent browser detection."""

from __future__ import annotations

import re
from dataclasses import dataclass

UNKNOWN_BROWSER = "Unknown"

# Most specific product tokens first: Edge and Opera user agents also
# carry "Chrome/", and Chrome user agents also carry "Safari/".
BROWSER_SIGNATURES: list[tuple[str, re.Pattern[str]]] = [
    ("Edge", re.compile(r"Edg/(\d+)")),
    ("Opera", re.compile(r"OPR/(\d+)")),
    ("Firefox", re.compile(r"Firefox/(\d+)")),
    ("Chrome", re.compile(r"Chrome/(\d+)")),
    ("Safari", re.compile(r"Safari/(\d+)")),
]


@dataclass(frozen=True)
class BrowserInfo:
    name: str
    version: str

    @property
    def known(self) -> bool:
        return self.name != UNKNOWN_BROWSER


def extract_browser_info(user_agent: str | None) -> BrowserInfo:
    """Return the first matching browser signature's name and major version."""
    if user_agent:
        for name, pattern in BROWSER_SIGNATURES:
            match = pattern.search(user_agent)
            if match:
                return BrowserInfo(name, match.group(1))
    return BrowserInfo(UNKNOWN_BROWSER, "0")


def is_browser_update(old_user_agent: str | None, new_user_agent: str | None) -> bool:
    """
    True when both user agents name the same recognized browser at
    different versions. Unrecognized browsers never count as an update.
    """
    if not old_user_agent or not new_user_agent:
        return False
    old = extract_browser_info(old_user_agent)
    new = extract_browser_info(new_user_agent)
    if not (old.known and new.known):
        return False
    return old.name == new.name and old.version != new.version
