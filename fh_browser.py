import asyncio
import logging
import os
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from playwright.async_api import Browser, BrowserContext, Locator, Page, Playwright

from fh_config import SHORT_TIMEOUT, RunConfig

logger = logging.getLogger("fortified.browser")


# ---------------------------
# Pacing
# ---------------------------
def jitter(base_ms: int, spread_ms: int = 350) -> int:
    return base_ms + random.randint(0, max(spread_ms, 0))


async def polite_pause(base_ms: int, spread_ms: int = 350) -> None:
    """Sleep base + random jitter between network-sensitive actions."""
    if base_ms <= 0 and spread_ms <= 0:
        return
    await asyncio.sleep(jitter(base_ms, spread_ms) / 1000)


async def type_incrementally(field: Locator, text: str, delay_ms: int) -> None:
    """Key-by-key input so the target's live filter sees every keystroke."""
    await field.click()
    await field.fill("")
    await field.press_sequentially(text, delay=delay_ms)


# ---------------------------
# Document detection
# ---------------------------
def looks_like_pdf_url(url: Optional[str]) -> bool:
    u = (url or "").lower().split("?", 1)[0]
    return u.endswith(".pdf") or "/certificate/download" in u or "/pdf/" in u


def is_pdf_content_type(ct: Optional[str]) -> bool:
    ct = (ct or "").lower()
    return (
        "application/pdf" in ct
        or "application/octet-stream" in ct
        or "application/force-download" in ct
    )


def is_pdf_response(resp) -> bool:
    try:
        return is_pdf_content_type(resp.headers.get("content-type"))
    except Exception:
        return False


# ---------------------------
# Page Interaction Helpers
# ---------------------------
async def maybe_click(locator: Locator, timeout: int = SHORT_TIMEOUT) -> bool:
    try:
        if await locator.count() > 0:
            await locator.first.click(timeout=timeout)
            return True
    except Exception as e:
        logger.debug(f"maybe_click: {e}")
    return False


async def first_usable(candidates: List[Locator]) -> Optional[Locator]:
    """First candidate that exists, is visible and enabled."""
    for loc in candidates:
        try:
            if await loc.count() == 0:
                continue
            first = loc.first
            if await first.is_visible() and await first.is_enabled():
                return first
        except Exception as e:
            logger.debug(f"first_usable: {e}")
    return None


# ---------------------------
# Signal race
# ---------------------------
@dataclass
class Signal:
    kind: str
    payload: Any


class SignalRace:
    """First of N awaitables to complete successfully, tagged by origin.

    Sources that fail (timeouts, closed pages) drop out of the race; the
    remaining ones keep running until `first()` is called again or `cancel()`.
    """

    def __init__(self, sources: Dict[str, Awaitable]):
        self._tasks: Dict[asyncio.Future, str] = {
            asyncio.ensure_future(aw): kind for kind, aw in sources.items()
        }
        self._pending = set(self._tasks)

    @property
    def pending(self) -> bool:
        return bool(self._pending)

    async def first(self, timeout_ms: float) -> Optional[Signal]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while self._pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            done, self._pending = await asyncio.wait(
                self._pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                return None
            for task in done:
                kind = self._tasks[task]
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    logger.debug(f"[race] {kind} dropped: {type(exc).__name__}: {exc}")
                    continue
                return Signal(kind=kind, payload=task.result())
        return None

    def cancel(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
            elif not task.cancelled():
                task.exception()
        self._pending = set()


# ---------------------------
# Browser launch
# ---------------------------
async def launch_browser(pw: Playwright, config: RunConfig) -> Tuple[Browser, BrowserContext, Page]:
    browser_args = ["--disable-blink-features=AutomationControlled", "--no-sandbox"]
    executable_path = None

    # Heroku / container environment
    if os.getenv("DYNO") or os.path.exists("/app"):
        if os.path.exists("/app/.chrome-for-testing/chrome-linux64/chrome"):
            executable_path = "/app/.chrome-for-testing/chrome-linux64/chrome"
        browser_args += [
            "--disable-dev-shm-usage",
            "--disable-gpu",
            "--disable-extensions",
            "--disable-background-timer-throttling",
            "--disable-backgrounding-occluded-windows",
            "--disable-renderer-backgrounding",
        ]

    launch_kwargs = dict(
        headless=config.headless,
        args=browser_args,
        slow_mo=250 if config.debug else 0,
    )
    if executable_path:
        logger.info(f"Using Chrome at: {executable_path}")
        launch_kwargs["executable_path"] = executable_path
    else:
        logger.info("Using default Playwright Chromium")
    browser = await pw.chromium.launch(**launch_kwargs)
    context = await browser.new_context(user_agent=config.user_agent, accept_downloads=True)
    page = await context.new_page()
    return browser, context, page
