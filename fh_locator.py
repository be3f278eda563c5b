import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from playwright.async_api import Locator, Page, TimeoutError as PlaywrightTimeoutError

from fh_browser import first_usable, maybe_click, polite_pause, type_incrementally
from fh_config import NAV_TIMEOUT, SHORT_TIMEOUT
from fh_errors import NavigationError, NoResultsError
from fh_models import AddressQuery

logger = logging.getLogger("fortified.locator")

# Autocomplete popups the wizard's search box renders its live matches into.
POPUP_CONTAINERS = [".e-popup.e-popup-open", '[role="listbox"]', ".bp5-menu"]
POPUP_ITEMS = '.e-list-item, [role="option"], .bp5-menu-item, li'
POPUP_ITEM_SELECTOR = ", ".join(f"{c} {i.strip()}" for c in POPUP_CONTAINERS for i in POPUP_ITEMS.split(","))
# Result grids only count when their rows change after typing.
RESULT_ROW_SELECTORS = [
    '[role="grid"] [role="row"]:not(:has([role="columnheader"]))',
    "table tbody tr",
]
NO_RESULTS_SELECTOR = '.e-nodata, [class*="no-data"], [class*="no-record"]'
NO_RESULTS_TEXT = re.compile(r"\bno\s+(?:results|records|matches|data|items)(?:\s+found)?\b", re.I)
DOWNLOAD_TEXT = re.compile(r"download|view\s*certificate", re.I)
CERT_TAB_TEXT = re.compile(r"certificate", re.I)
_STREET_NUMBER = re.compile(r"^\d+[a-z]?$")


# ---------------------------
# Query tokens & candidate selection
# ---------------------------
@dataclass
class QueryTokens:
    number: Optional[str]
    names: List[str] = field(default_factory=list)


def split_query_tokens(raw: str, max_names: int = 2) -> QueryTokens:
    """Leading street number plus the first name tokens of the street part."""
    street = (raw or "").split(",", 1)[0]
    words = re.findall(r"[a-z0-9]+", street.lower())
    number = None
    if words and _STREET_NUMBER.match(words[0]):
        number, words = words[0], words[1:]
    return QueryTokens(number=number, names=words[:max_names])


def candidate_matches(tokens: QueryTokens, text: str) -> bool:
    t = (text or "").lower()
    if not tokens.number and not tokens.names:
        return False
    if tokens.number and not re.search(rf"\b{re.escape(tokens.number)}\b", t):
        return False
    return all(re.search(rf"\b{re.escape(n)}\b", t) for n in tokens.names)


@dataclass
class Selection:
    policy: str  # "exact" | "first" | "keyboard"
    index: Optional[int] = None


def choose_candidate(tokens: QueryTokens, texts: Sequence[str]) -> Selection:
    """Exact token match, else the first filtered candidate, else keyboard-confirm."""
    for i, text in enumerate(texts):
        if candidate_matches(tokens, text):
            return Selection(policy="exact", index=i)
    if texts:
        return Selection(policy="first", index=0)
    return Selection(policy="keyboard")


# ---------------------------
# Search input strategies
# ---------------------------
class LocatorStrategy:
    """One way of finding the search input. `attempt` returns None when it misses."""

    name = "strategy"

    async def attempt(self, page: Page) -> Optional[Locator]:
        raise NotImplementedError


class SelectorStrategy(LocatorStrategy):
    def __init__(self, name: str, build: Callable[[Page], Locator], prefer_last: bool = False, limit: int = 10):
        self.name = name
        self.build = build
        self.prefer_last = prefer_last
        self.limit = limit

    async def attempt(self, page: Page) -> Optional[Locator]:
        loc = self.build(page)
        count = min(await loc.count(), self.limit)
        order = range(count - 1, -1, -1) if self.prefer_last else range(count)
        for i in order:
            item = loc.nth(i)
            try:
                if await item.is_visible() and await item.is_enabled():
                    return item
            except Exception as e:
                logger.debug(f"[locate] {self.name}#{i}: {e}")
        return None


def default_strategies() -> List[LocatorStrategy]:
    return [
        # the wizard renders a second "Type to search" box inside its dialog; the later one is live
        SelectorStrategy(
            "placeholder",
            lambda p: p.get_by_placeholder(re.compile(r"type\s+to\s+search", re.I)),
            prefer_last=True,
        ),
        SelectorStrategy("searchbox-role", lambda p: p.get_by_role("searchbox")),
        SelectorStrategy(
            "search-attrs",
            lambda p: p.locator('input[type="search"], [placeholder*="search" i], [aria-label*="search" i]'),
        ),
        SelectorStrategy("dialog-input", lambda p: p.locator('[role="dialog"] input:not([type="hidden"])')),
        SelectorStrategy("textbox-role", lambda p: p.get_by_role("textbox")),
        SelectorStrategy("first-input", lambda p: p.locator('input:not([type="hidden"])')),
    ]


async def run_strategies(
    strategies: Sequence[LocatorStrategy], page: Page
) -> Optional[Tuple[str, Locator]]:
    for strategy in strategies:
        try:
            found = await strategy.attempt(page)
        except Exception as e:
            logger.debug(f"[locate] strategy {strategy.name} failed: {e}")
            continue
        if found is not None:
            logger.info(f"[locate] Using search strategy {strategy.name}")
            return strategy.name, found
        logger.debug(f"[locate] strategy {strategy.name} found nothing")
    return None


# ---------------------------
# Record locator
# ---------------------------
@dataclass
class RecordHandle:
    query: AddressQuery
    policy: str
    strategy: str
    candidate_text: Optional[str] = None


class RecordLocator:
    def __init__(
        self,
        page: Page,
        wizard_steps: Sequence[str] = (),
        strategies: Optional[Sequence[LocatorStrategy]] = None,
        type_delay_ms: int = 150,
        polite_delay_ms: int = 800,
        step_timeout: int = NAV_TIMEOUT,
        results_timeout: int = SHORT_TIMEOUT,
        diagnostics=None,
    ):
        self.page = page
        self.wizard_steps = list(wizard_steps)
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.type_delay_ms = type_delay_ms
        self.polite_delay_ms = polite_delay_ms
        self.step_timeout = step_timeout
        self.results_timeout = results_timeout
        self.diagnostics = diagnostics

    async def _snapshot(self, step: str) -> None:
        if self.diagnostics is not None:
            await self.diagnostics.snapshot(self.page, step)

    async def _settle(self, timeout: int = NAV_TIMEOUT) -> None:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=timeout)
        except PlaywrightTimeoutError:
            logger.debug("[locate] networkidle not reached; continuing")

    async def reset(self, home_url: Optional[str]) -> None:
        if home_url:
            await self.page.goto(home_url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT)
            await self._settle()

    async def click_step(self, name: str) -> None:
        page = self.page
        rx = re.compile(re.escape(name), re.I)
        try:
            await page.get_by_text(rx).first.wait_for(state="visible", timeout=self.step_timeout)
        except PlaywrightTimeoutError:
            raise NavigationError(f"Wizard step {name!r} did not appear")
        target = await first_usable([
            page.get_by_role("button", name=rx),
            page.get_by_role("tab", name=rx),
            page.get_by_role("link", name=rx),
            page.get_by_text(rx),
        ])
        if target is None:
            raise NavigationError(f"Wizard step {name!r} is not clickable")
        logger.info(f"[locate] Clicking wizard step {name!r}")
        await target.click(timeout=SHORT_TIMEOUT)
        await self._settle()
        await polite_pause(self.polite_delay_ms)

    async def find_search_input(self) -> Tuple[str, Locator]:
        found = await run_strategies(self.strategies, self.page)
        if found is None:
            raise NavigationError("No usable search field found")
        return found

    async def _popup_scopes(self, field_: Locator) -> List[Locator]:
        """The popup owned by the search box (aria-controls) first, then any open autocomplete popup."""
        scopes = []
        try:
            owned = await field_.get_attribute("aria-controls")
        except Exception as e:
            logger.debug(f"[locate] aria-controls lookup: {e}")
            owned = None
        if owned:
            scopes.append(self.page.locator(f'[id="{owned}"]'))
        scopes += [self.page.locator(c) for c in POPUP_CONTAINERS]
        return scopes

    async def _row_texts(self) -> Dict[str, List[str]]:
        rows = {}
        for selector in RESULT_ROW_SELECTORS:
            try:
                rows[selector] = [t.strip() for t in await self.page.locator(selector).all_inner_texts()]
            except Exception as e:
                logger.debug(f"[locate] reading rows {selector}: {e}")
        return rows

    async def _enumerate_candidates(
        self, field_: Locator, rows_before: Dict[str, List[str]]
    ) -> Tuple[Optional[Locator], List[str]]:
        page = self.page
        try:
            await page.locator(POPUP_ITEM_SELECTOR).first.wait_for(state="visible", timeout=self.results_timeout)
        except PlaywrightTimeoutError:
            logger.debug("[locate] no popup list became visible")
        for scope in await self._popup_scopes(field_):
            try:
                items = scope.locator(POPUP_ITEMS)
                if await items.count() == 0:
                    continue
                texts = [t.strip() for t in await items.all_inner_texts()]
            except Exception as e:
                logger.debug(f"[locate] enumerating popup: {e}")
                continue
            if any(texts) and not all(NO_RESULTS_TEXT.search(t) for t in texts if t):
                logger.info(f"[locate] {len(texts)} popup candidates")
                return items, texts
        for selector in RESULT_ROW_SELECTORS:
            try:
                rows = page.locator(selector)
                texts = [t.strip() for t in await rows.all_inner_texts()]
            except Exception as e:
                logger.debug(f"[locate] enumerating {selector}: {e}")
                continue
            if any(texts) and texts != rows_before.get(selector, []):
                logger.info(f"[locate] {len(texts)} result rows changed via {selector}")
                return rows, texts
        return None, []

    async def _shows_no_results(self, field_: Locator) -> bool:
        """An open search popup that is empty or says so. Indicators elsewhere on the page are ignored."""
        for scope in await self._popup_scopes(field_):
            try:
                if not await scope.count() or not await scope.first.is_visible():
                    continue
                if await scope.locator(NO_RESULTS_SELECTOR).count():
                    return True
                if NO_RESULTS_TEXT.search(await scope.first.inner_text(timeout=SHORT_TIMEOUT) or ""):
                    return True
                if await scope.locator(POPUP_ITEMS).count() == 0:
                    return True
            except Exception as e:
                logger.debug(f"[locate] checking popup for no results: {e}")
        return False

    async def locate(self, query: AddressQuery) -> RecordHandle:
        """Open the record matching `query`. Raises NavigationError or NoResultsError."""
        await self._snapshot("BEFORE_SEARCH")
        for step in self.wizard_steps:
            await self.click_step(step)

        strategy, field_ = await self.find_search_input()
        tokens = split_query_tokens(query.raw)
        typed = " ".join(t for t in [tokens.number] + tokens.names if t) or query.raw
        logger.info(f"[locate] Typing {typed!r} for {query.raw!r}")
        rows_before = await self._row_texts()
        await type_incrementally(field_, typed, self.type_delay_ms)
        await polite_pause(self.polite_delay_ms)

        items, texts = await self._enumerate_candidates(field_, rows_before)
        await self._snapshot("AFTER_SEARCH")
        selection = choose_candidate(tokens, texts)

        if selection.policy == "keyboard":
            if await self._shows_no_results(field_):
                raise NoResultsError(f"No search results found for {query.raw!r}")
            logger.info("[locate] No enumerable candidates; confirming highlighted entry")
            await self.page.keyboard.press("ArrowDown")
            await polite_pause(300)
            await self.page.keyboard.press("Enter")
            await self._settle()
            return RecordHandle(query=query, policy="keyboard", strategy=strategy)

        text = texts[selection.index]
        if selection.policy == "first":
            logger.warning(f"[locate] No exact token match; taking first candidate {text!r}")
        else:
            logger.info(f"[locate] Exact match {text!r}")
        await items.nth(selection.index).click(timeout=SHORT_TIMEOUT)
        await self._settle()
        await polite_pause(self.polite_delay_ms)
        return RecordHandle(query=query, policy=selection.policy, strategy=strategy, candidate_text=text)

    # ---------------------------
    # Detail view
    # ---------------------------
    def _download_candidates(self) -> List[Locator]:
        page = self.page
        return [
            page.get_by_role("button", name=DOWNLOAD_TEXT),
            page.get_by_role("link", name=DOWNLOAD_TEXT),
            page.locator('[title*="download" i], [aria-label*="download" i]'),
            page.locator('button:has-text("Download"), a:has-text("Download")'),
            page.get_by_text(re.compile(r"download", re.I)),
        ]

    async def find_download_control(self) -> Optional[Locator]:
        return await first_usable(self._download_candidates())

    async def open_detail(self, handle: RecordHandle) -> None:
        """Walk from the selected candidate to the certificate section."""
        page = self.page
        if await self.find_download_control() is None:
            logger.info("[detail] No immediate download control, opening the result")
            tokens = split_query_tokens(handle.query.raw)
            targets = []
            if tokens.number:
                targets.append(page.get_by_text(tokens.number, exact=True))
                targets.append(page.locator("tr").filter(has_text=re.compile(rf"\b{re.escape(tokens.number)}\b")))
            if handle.candidate_text:
                targets.append(page.get_by_text(handle.candidate_text, exact=True))
            for target in targets:
                try:
                    if await target.count() and await target.first.is_visible():
                        await target.first.click(timeout=SHORT_TIMEOUT)
                        await self._settle(timeout=30_000)
                        break
                except Exception as e:
                    logger.debug(f"[detail] click attempt failed: {e}")

        # tabs only; nav links and download controls also say "certificate"
        cert_tab = await first_usable([
            page.get_by_role("tab", name=CERT_TAB_TEXT).filter(has_not_text=DOWNLOAD_TEXT),
        ])
        if cert_tab is not None and await maybe_click(cert_tab):
            logger.info("[detail] Opened certificate tab")
            await self._settle(timeout=30_000)
            await polite_pause(300)
        await self._snapshot("READY_FOR_DOWNLOAD")

    async def detail_view(self):
        """The open dialog when one is showing, else the whole page."""
        dialog = self.page.locator('[role="dialog"]')
        try:
            if await dialog.count() and await dialog.last.is_visible():
                return dialog.last
        except Exception as e:
            logger.debug(f"[detail] dialog lookup: {e}")
        return self.page
