import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fh_capture import ArtifactCapture

PDF = b"%PDF-1.7\n" + b"0" * 2048


class EventPage:
    """Emits the configured events shortly after subscription; others time out."""

    def __init__(self, events=None, url="https://app.ibhs.org/fh/evaluation/1"):
        self.events = events or {}
        self.url = url

    async def wait_for_event(self, event, predicate=None, timeout=None):
        if event in self.events:
            await asyncio.sleep(0.005)
            value = self.events[event]
            if predicate is None or predicate(value):
                return value
        await asyncio.sleep((timeout or 0) / 1000)
        raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded while waiting for event \"{event}\"")


def _response(body=PDF, content_type="application/pdf", url="https://app.ibhs.org/api/certificate/1.pdf"):
    resp = MagicMock()
    resp.headers = {"content-type": content_type}
    resp.url = url
    resp.ok = True
    resp.status = 200
    resp.body = AsyncMock(return_value=body)
    return resp


def _download(path: Path, name="FORTIFIED_Certificate.pdf", failure=None):
    download = MagicMock()
    download.suggested_filename = name
    download.failure = AsyncMock(return_value=failure)
    download.path = AsyncMock(return_value=str(path))
    download.save_as = AsyncMock()
    return download


def _popup(url, fetched=None):
    popup = MagicMock()
    popup.url = url
    popup.wait_for_event = AsyncMock(side_effect=PlaywrightTimeoutError("no response"))
    popup.wait_for_load_state = AsyncMock()
    popup.close = AsyncMock()
    popup.context.request.get = AsyncMock(return_value=fetched or _response())
    return popup


def _capture(page) -> ArtifactCapture:
    return ArtifactCapture(page, primary_timeout=50, poll_interval=10, poll_attempts=2, popup_timeout=10)


class TestArtifactCapture:
    @pytest.mark.asyncio
    async def test_nothing_arrives(self) -> None:
        trigger = AsyncMock()
        artifact = await _capture(EventPage()).capture(trigger)
        trigger.assert_awaited_once()
        assert artifact.size_bytes == 0
        assert artifact.is_empty

    @pytest.mark.asyncio
    async def test_inline_response(self) -> None:
        page = EventPage({"response": _response(content_type="application/pdf; charset=binary")})
        artifact = await _capture(page).capture(AsyncMock())
        assert artifact.channel == "response"
        assert artifact.data == PDF
        assert artifact.content_type == "application/pdf"
        assert artifact.suggested_file_name == "1.pdf"

    @pytest.mark.asyncio
    async def test_html_response_is_ignored(self) -> None:
        page = EventPage({"response": _response(content_type="text/html")})
        assert (await _capture(page).capture(AsyncMock())).is_empty

    @pytest.mark.asyncio
    async def test_native_download(self, tmp_path: Path) -> None:
        path = tmp_path / "dl"
        path.write_bytes(PDF)
        artifact = await _capture(EventPage({"download": _download(path)})).capture(AsyncMock())
        assert artifact.channel == "download"
        assert artifact.size_bytes == len(PDF)
        assert artifact.content_type == "application/pdf"
        assert artifact.suggested_file_name == "FORTIFIED_Certificate.pdf"

    @pytest.mark.asyncio
    async def test_failed_download(self, tmp_path: Path) -> None:
        download = _download(tmp_path / "missing", failure="canceled")
        assert (await _capture(EventPage({"download": download})).capture(AsyncMock())).is_empty

    @pytest.mark.asyncio
    async def test_empty_download(self, tmp_path: Path) -> None:
        path = tmp_path / "dl"
        path.write_bytes(b"")
        assert (await _capture(EventPage({"download": _download(path)})).capture(AsyncMock())).is_empty

    @pytest.mark.asyncio
    async def test_popup_document_is_fetched(self) -> None:
        popup = _popup("https://app.ibhs.org/certificate/download/77")
        artifact = await _capture(EventPage({"popup": popup})).capture(AsyncMock())
        assert artifact.channel == "popup-fetch"
        assert artifact.data == PDF
        popup.context.request.get.assert_awaited_once()
        popup.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_popup_without_document(self) -> None:
        popup = _popup("https://app.ibhs.org/fh/help")
        assert (await _capture(EventPage({"popup": popup})).capture(AsyncMock())).is_empty
        popup.context.request.get.assert_not_awaited()
        popup.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trigger_failure_propagates(self) -> None:
        trigger = AsyncMock(side_effect=RuntimeError("element detached"))
        with pytest.raises(RuntimeError, match="detached"):
            await _capture(EventPage()).capture(trigger)

    def test_listener_window_covers_polling(self) -> None:
        assert _capture(EventPage()).listener_timeout == 70
