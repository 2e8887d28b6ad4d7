"""Page automation for the BROWSE tool."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

from runtime_state import CollaboratorNotConfigured

logger = logging.getLogger(__name__)

BROWSE_MAX_CHARS = 4000
BROWSE_ACTIONS = ("click", "screenshot", "extract", "type")
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class PageAutomation(Protocol):
    async def navigate(self, url: str) -> str:
        """Open `url` and return the page title."""
        ...

    async def extract_text(self) -> str:
        ...

    async def click(self, selector: str) -> str:
        """Click and return the resulting page title."""
        ...

    async def type(self, selector: str, text: str) -> None:
        ...

    async def screenshot(self, path: Path) -> Path:
        ...

    async def close(self) -> None:
        ...


@dataclass
class BrowseCommand:
    url: str
    action: str = "extract"
    argument: str = ""


def parse_browse_command(args: str) -> BrowseCommand:
    """`url [extract | click <sel> | type <sel> | <text> | screenshot]`"""
    raw = (args or "").strip()
    url, _, rest = raw.partition(" ")
    rest = rest.strip()
    if not rest or not url.lower().startswith("http"):
        return BrowseCommand(url=raw)
    action, _, argument = rest.partition(" ")
    action = action.lower()
    if action not in BROWSE_ACTIONS:
        return BrowseCommand(url=raw)
    return BrowseCommand(url=url, action=action, argument=argument.strip())


async def run_browse_command(
    automation: PageAutomation,
    args: str,
    *,
    screenshot_path: Path,
    max_chars: int = BROWSE_MAX_CHARS,
) -> str:
    command = parse_browse_command(args)
    if not command.url:
        return "Usage: BROWSE: <url> [extract | click <selector> | type <selector> | <text> | screenshot]"
    logger.info("Browsing %s (%s)", command.url, command.action)
    try:
        title = await automation.navigate(command.url)
        result = f'Page loaded: "{title}" ({command.url})\n'
        if command.action == "screenshot":
            saved = await automation.screenshot(screenshot_path)
            result += f"Screenshot saved to {saved}."
        elif command.action == "click":
            if command.argument:
                new_title = await automation.click(command.argument)
                result += f'Clicked: {command.argument}. New title: "{new_title}"'
        elif command.action == "type":
            selector, _, text = command.argument.partition("|")
            if selector.strip() and text.strip():
                await automation.type(selector.strip(), text.strip())
                result += f"Typed into {selector.strip()}"
        else:
            result += (await automation.extract_text())[:max_chars]
    finally:
        await automation.close()
    return result


class PlaywrightPageAutomation:
    """Headless Chromium via playwright's async API (optional extra)."""

    def __init__(self, *, navigation_timeout_ms: int = 15000) -> None:
        self._navigation_timeout_ms = navigation_timeout_ms
        self._playwright: Any = None
        self._browser: Any = None
        self._page: Any = None

    async def _ensure_page(self) -> Any:
        if self._page is not None:
            return self._page
        try:
            from playwright.async_api import async_playwright
        except ImportError as exc:
            raise CollaboratorNotConfigured("browser", ["playwright"]) from exc
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=True, args=["--no-sandbox", "--disable-setuid-sandbox"]
        )
        context = await self._browser.new_context(user_agent=USER_AGENT)
        self._page = await context.new_page()
        return self._page

    async def navigate(self, url: str) -> str:
        page = await self._ensure_page()
        await page.goto(url, wait_until="networkidle", timeout=self._navigation_timeout_ms)
        return await page.title()

    async def extract_text(self) -> str:
        page = await self._ensure_page()
        for selector in ("article", "main", "body"):
            element = await page.query_selector(selector)
            if element is not None:
                return await element.inner_text()
        return ""

    async def click(self, selector: str) -> str:
        page = await self._ensure_page()
        await page.click(selector)
        await page.wait_for_load_state("networkidle", timeout=5000)
        return await page.title()

    async def type(self, selector: str, text: str) -> None:
        page = await self._ensure_page()
        await page.fill(selector, text)

    async def screenshot(self, path: Path) -> Path:
        page = await self._ensure_page()
        path.parent.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=str(path), full_page=False)
        return path

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._page = None
        self._browser = None
        self._playwright = None
