from unittest.mock import AsyncMock, MagicMock

import pytest

import fh_locator
from fh_errors import NavigationError, NoResultsError
from fh_locator import (
    POPUP_ITEMS,
    LocatorStrategy,
    QueryTokens,
    RecordHandle,
    RecordLocator,
    SelectorStrategy,
    candidate_matches,
    choose_candidate,
    run_strategies,
    split_query_tokens,
)
from fh_models import AddressQuery
from tests.fakes import FakeLocator, FakePage

POPUP = ".e-popup.e-popup-open"
TABLE_ROWS = "table tbody tr"


@pytest.fixture(autouse=True)
def no_pauses(monkeypatch):
    monkeypatch.setattr(fh_locator, "polite_pause", AsyncMock())


def _field(aria_controls=None) -> MagicMock:
    field = MagicMock()
    field.click = AsyncMock()
    field.fill = AsyncMock()
    field.press_sequentially = AsyncMock()
    field.get_attribute = AsyncMock(return_value=aria_controls)
    return field


def _popup(*texts: str) -> FakeLocator:
    items = FakeLocator(texts)
    return FakeLocator(["\n".join(texts)], children={POPUP_ITEMS: items})


class FixedStrategy(LocatorStrategy):
    def __init__(self, name, result):
        self.name = name
        self.result = result

    async def attempt(self, page):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestQueryTokens:
    def test_number_and_names(self) -> None:
        tokens = split_query_tokens("513 MALAGA DRIVE, Mobile, AL")
        assert tokens.number == "513"
        assert tokens.names == ["malaga", "drive"]

    def test_no_number(self) -> None:
        tokens = split_query_tokens("Malaga Drive")
        assert tokens.number is None
        assert tokens.names == ["malaga", "drive"]

    def test_number_is_whole_word(self) -> None:
        tokens = QueryTokens(number="513", names=["malaga"])
        assert candidate_matches(tokens, "513 Malaga Dr, Mobile AL")
        assert not candidate_matches(tokens, "5130 Malaga Dr")
        assert not candidate_matches(tokens, "513 Magnolia Dr")

    def test_empty_tokens_match_nothing(self) -> None:
        assert not candidate_matches(QueryTokens(number=None), "anything")


class TestChooseCandidate:
    def test_exact_beats_order(self) -> None:
        tokens = split_query_tokens("513 Malaga Drive")
        selection = choose_candidate(tokens, ["5130 Malaga Drive", "513 Malaga Drive, Mobile"])
        assert selection.policy == "exact"
        assert selection.index == 1

    def test_first_fallback(self) -> None:
        selection = choose_candidate(split_query_tokens("513 Malaga Drive"), ["Malaga Court"])
        assert selection.policy == "first"
        assert selection.index == 0

    def test_keyboard_when_nothing_listed(self) -> None:
        assert choose_candidate(split_query_tokens("513 Malaga Drive"), []).policy == "keyboard"


class TestStrategies:
    @pytest.mark.asyncio
    async def test_prefer_last_skips_hidden(self) -> None:
        loc = FakeLocator(["a", "b", "c"], hidden=[2])
        found = await SelectorStrategy("s", lambda p: loc, prefer_last=True).attempt(FakePage())
        assert found.index == 1

    @pytest.mark.asyncio
    async def test_in_order_by_default(self) -> None:
        loc = FakeLocator(["a", "b"])
        found = await SelectorStrategy("s", lambda p: loc).attempt(FakePage())
        assert found.index == 0

    @pytest.mark.asyncio
    async def test_run_strategies_falls_through(self) -> None:
        field = _field()
        strategies = [
            FixedStrategy("boom", RuntimeError("detached")),
            FixedStrategy("miss", None),
            FixedStrategy("hit", field),
        ]
        assert await run_strategies(strategies, FakePage()) == ("hit", field)

    @pytest.mark.asyncio
    async def test_run_strategies_none(self) -> None:
        assert await run_strategies([FixedStrategy("miss", None)], FakePage()) is None


class TestRecordLocator:
    @pytest.mark.asyncio
    async def test_exact_match_is_clicked(self) -> None:
        popup = _popup("5130 Malaga Drive, Mobile", "513 Malaga Drive, Mobile AL")
        page = FakePage(selectors={POPUP: popup})
        field = _field()
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", field)], results_timeout=10)

        handle = await locator.locate(AddressQuery.from_raw("513 MALAGA DRIVE"))

        assert handle.policy == "exact"
        assert handle.strategy == "placeholder"
        assert handle.candidate_text == "513 Malaga Drive, Mobile AL"
        assert page.clicks == ["513 Malaga Drive, Mobile AL"]
        field.press_sequentially.assert_awaited_once_with("513 malaga drive", delay=150)

    @pytest.mark.asyncio
    async def test_first_candidate_fallback(self) -> None:
        page = FakePage(selectors={POPUP: _popup("Malaga Court")})
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", _field())], results_timeout=10)
        handle = await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))
        assert handle.policy == "first"
        assert page.clicks == ["Malaga Court"]

    @pytest.mark.asyncio
    async def test_popup_owned_by_search_box(self) -> None:
        page = FakePage(selectors={'[id="search_popup"]': _popup("513 Malaga Drive")})
        field = _field(aria_controls="search_popup")
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", field)], results_timeout=10)
        handle = await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))
        assert handle.policy == "exact"
        assert page.clicks == ["513 Malaga Drive"]

    @pytest.mark.asyncio
    async def test_keyboard_confirm(self) -> None:
        page = FakePage(body="Evaluation wizard")
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", _field())], results_timeout=10)
        handle = await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))
        assert handle.policy == "keyboard"
        assert page.keyboard.pressed == ["ArrowDown", "Enter"]

    @pytest.mark.asyncio
    async def test_no_results(self) -> None:
        page = FakePage(selectors={POPUP: _popup("No records found")})
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", _field())], results_timeout=10)
        with pytest.raises(NoResultsError):
            await locator.locate(AddressQuery.from_raw("1 Nowhere Ln"))
        assert page.keyboard.pressed == []
        assert page.clicks == []

    @pytest.mark.asyncio
    async def test_existing_table_with_empty_popup_is_no_results(self) -> None:
        page = FakePage(selectors={
            POPUP: _popup(),
            TABLE_ROWS: FakeLocator(["12 Oak Street  FH-0001  Gold"]),
        })
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", _field())], results_timeout=10)
        with pytest.raises(NoResultsError):
            await locator.locate(AddressQuery.from_raw("1 Nowhere Ln"))
        assert page.clicks == []
        assert page.keyboard.pressed == []

    @pytest.mark.asyncio
    async def test_unchanged_table_is_not_a_candidate(self) -> None:
        page = FakePage(selectors={TABLE_ROWS: FakeLocator(["12 Oak Street  FH-0001  Gold"])})
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", _field())], results_timeout=10)
        handle = await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))
        assert handle.policy == "keyboard"
        assert page.clicks == []

    @pytest.mark.asyncio
    async def test_rows_that_change_after_typing_are_candidates(self) -> None:
        table = FakeLocator(["12 Oak Street  FH-0001  Gold"])
        page = FakePage(selectors={TABLE_ROWS: table})
        field = _field()

        def results_arrive(*args, **kwargs):
            table.texts = ["513 Malaga Drive  FH-0002  Silver"]

        field.press_sequentially = AsyncMock(side_effect=results_arrive)
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", field)], results_timeout=10)
        handle = await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))
        assert handle.policy == "exact"
        assert page.clicks == ["513 Malaga Drive  FH-0002  Silver"]

    @pytest.mark.asyncio
    async def test_no_data_outside_popup_is_ignored(self) -> None:
        page = FakePage(selectors={".e-nodata": FakeLocator(["No data"])}, body="No data available")
        locator = RecordLocator(page, strategies=[FixedStrategy("placeholder", _field())], results_timeout=10)
        handle = await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))
        assert handle.policy == "keyboard"
        assert page.keyboard.pressed == ["ArrowDown", "Enter"]

    @pytest.mark.asyncio
    async def test_no_search_input(self) -> None:
        locator = RecordLocator(FakePage(), strategies=[FixedStrategy("miss", None)])
        with pytest.raises(NavigationError, match="search field"):
            await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))

    @pytest.mark.asyncio
    async def test_missing_wizard_step(self) -> None:
        locator = RecordLocator(
            FakePage(),
            wizard_steps=["New Evaluation"],
            strategies=[FixedStrategy("placeholder", _field())],
            step_timeout=10,
        )
        with pytest.raises(NavigationError, match="New Evaluation"):
            await locator.locate(AddressQuery.from_raw("513 Malaga Drive"))

    @pytest.mark.asyncio
    async def test_wizard_step_clicked(self) -> None:
        page = FakePage(roles={"button": FakeLocator(["New Evaluation"])}, texts=["New Evaluation"])
        await RecordLocator(page).click_step("New Evaluation")
        assert page.clicks == ["New Evaluation"]

    @pytest.mark.asyncio
    async def test_reset_returns_home(self) -> None:
        page = FakePage(url="https://app.ibhs.org/fh/evaluation/9")
        await RecordLocator(page).reset("https://app.ibhs.org/fh/home")
        assert page.visited == ["https://app.ibhs.org/fh/home"]

    @pytest.mark.asyncio
    async def test_download_control(self) -> None:
        assert await RecordLocator(FakePage()).find_download_control() is None
        page = FakePage(roles={"button": FakeLocator(["Download Certificate"])})
        assert await RecordLocator(page).find_download_control() is not None

    @pytest.mark.asyncio
    async def test_detail_view_prefers_dialog(self) -> None:
        page = FakePage()
        assert await RecordLocator(page).detail_view() is page
        dialog_page = FakePage(selectors={'[role="dialog"]': FakeLocator(["Certificate"])})
        view = await RecordLocator(dialog_page).detail_view()
        assert view is not dialog_page


class TestOpenDetail:
    def _handle(self, raw="513 Malaga Drive") -> RecordHandle:
        return RecordHandle(query=AddressQuery.from_raw(raw), policy="keyboard", strategy="placeholder")

    @pytest.mark.asyncio
    async def test_certificate_links_and_buttons_are_not_tabs(self) -> None:
        page = FakePage(roles={
            "link": FakeLocator(["Certificates", "View Certificate"]),
            "button": FakeLocator(["View Certificate"]),
        })
        await RecordLocator(page).open_detail(self._handle())
        assert page.clicks == []

    @pytest.mark.asyncio
    async def test_certificate_tab_clicked(self) -> None:
        page = FakePage(roles={"tab": FakeLocator(["Overview", "Download Certificate", "Certificate"])})
        await RecordLocator(page).open_detail(self._handle())
        assert page.clicks == ["Certificate"]

    @pytest.mark.asyncio
    async def test_opens_row_with_street_number(self) -> None:
        page = FakePage(selectors={"tr": FakeLocator(["Address  FH Number", "12 Oak Street", "513 Malaga Drive"])})
        await RecordLocator(page).open_detail(self._handle())
        assert page.clicks == ["513 Malaga Drive"]
