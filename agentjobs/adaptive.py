"""Fallback selector lists for common page elements.

Workflow tools try a caller's selector first, then these known patterns for
the element kind, then loose variations of the original selector, and use the
first one that matches anything on the page.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Optional

from playwright.async_api import Error as PlaywrightError

LOGGER = logging.getLogger(__name__)

ElementKind = Literal["username", "password", "search", "submit", "table_row", "results"]

SELECTOR_PATTERNS: dict[str, tuple[str, ...]] = {
    "username": (
        'input[type="email"]',
        'input[name="email"]',
        'input[id="email"]',
        'input[name="username"]',
        'input[id="username"]',
        'input[name="user"]',
        'input[name="login"]',
        'input[name*="email"]',
        'input[id*="email"]',
        'input[placeholder*="email" i]',
        'input[placeholder*="username" i]',
        'input[aria-label*="email" i]',
        'form input[type="text"]:first-of-type',
        'input[type="text"]:first-of-type',
    ),
    "password": (
        'input[type="password"]',
        'input[name="password"]',
        'input[id="password"]',
        'input[name*="pass"]',
        'input[id*="pass"]',
        'input[placeholder*="password" i]',
        'input[aria-label*="password" i]',
    ),
    "search": (
        'input[type="search"]',
        'input[name="search"]',
        'input[id="search"]',
        'input[name="q"]',
        'input[name="query"]',
        'input[placeholder*="search" i]',
        'input[aria-label*="search" i]',
        'input[class*="search"]',
        "#search",
        ".search-input",
        '[role="searchbox"]',
    ),
    "submit": (
        'button[type="submit"]',
        'input[type="submit"]',
        'button:has-text("Sign In")',
        'button:has-text("Log In")',
        'button:has-text("Login")',
        'button:has-text("Submit")',
        'button:has-text("Continue")',
        '[role="button"]:has-text("Sign In")',
        ".login-btn",
        ".submit-btn",
        "form button:first-of-type",
    ),
    "table_row": (
        "tbody tr",
        "table tr:not(:first-child)",
        ".MuiTableRow-root:not(.MuiTableRow-head)",
        'div[role="row"]',
        '[data-testid*="row"]',
        ".table-row",
        "tr[data-rowindex]",
    ),
    "results": (
        '[role="dialog"]',
        ".modal",
        ".search-results",
        "table",
        ".results-table",
        ".MuiDialog-root",
    ),
}


@dataclass(frozen=True, slots=True)
class SelectorMatch:
    selector: str
    count: int


def selector_variations(selector: str) -> list[str]:
    """Quote, case and partial-match variants of an attribute selector."""

    variations = [
        selector.replace("'", '"'),
        selector.replace('"', "'"),
        re.sub(r"['\"]", "", selector),
    ]
    if "=" in selector:
        variations.append(re.sub(r"=(\"[^\"]*\"|'[^']*')", r"=\1 i", selector, count=1))
    if 'name="' in selector:
        variations.append(re.sub(r'name="([^"]*)"', r'name*="\1"', selector, count=1))
    if 'id="' in selector:
        variations.append(re.sub(r'id="([^"]*)"', r'id*="\1"', selector, count=1))
    unique = []
    for variation in variations:
        if variation != selector and variation not in unique:
            unique.append(variation)
    return unique


async def first_present(page: Any, selectors: Iterable[str]) -> Optional[SelectorMatch]:
    """Return the first selector that matches at least one element."""

    for selector in selectors:
        try:
            count = await page.locator(selector).count()
        except PlaywrightError as exc:
            LOGGER.debug("Selector %s rejected: %s", selector, exc)
            continue
        if count:
            return SelectorMatch(selector, count)
    return None


async def find_element(
    page: Any,
    kind: ElementKind,
    selector: Optional[str] = None,
) -> Optional[SelectorMatch]:
    """Locate an element of ``kind``, trying ``selector`` and its variations first."""

    candidates: list[str] = []
    if selector:
        candidates.append(selector)
    candidates.extend(pattern for pattern in SELECTOR_PATTERNS[kind] if pattern not in candidates)
    if selector:
        candidates.extend(variation for variation in selector_variations(selector) if variation not in candidates)
    match = await first_present(page, candidates)
    if match is not None and match.selector != selector:
        LOGGER.info("Using %s for %s (%s match(es))", match.selector, kind, match.count)
    return match
