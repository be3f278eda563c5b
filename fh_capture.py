import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Awaitable, Callable

from playwright.async_api import Page

from fh_browser import Signal, SignalRace, is_pdf_content_type, is_pdf_response, looks_like_pdf_url
from fh_config import CAPTURE_TIMEOUT, NAV_TIMEOUT, POLL_ATTEMPTS, POLL_INTERVAL, SHORT_TIMEOUT
from fh_models import Artifact

logger = logging.getLogger("fortified.capture")

Trigger = Callable[[], Awaitable[None]]


class ArtifactCapture:
    """
    Capture the document produced by a trigger, whatever channel delivers it:

      1) native download event
      2) new window/tab (popup) showing or fetching the document
      3) inline response on the same page with a document content-type

    All three listeners are registered before the trigger fires. If nothing
    produces bytes an empty Artifact comes back; that is the normal "no
    certificate for this record" outcome, not an error.
    """

    def __init__(
        self,
        page: Page,
        primary_timeout: int = CAPTURE_TIMEOUT,
        poll_interval: int = POLL_INTERVAL,
        poll_attempts: int = POLL_ATTEMPTS,
        popup_timeout: int = SHORT_TIMEOUT,
    ):
        self.page = page
        self.primary_timeout = primary_timeout
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.popup_timeout = popup_timeout

    @property
    def listener_timeout(self) -> int:
        return self.primary_timeout + self.poll_interval * self.poll_attempts

    def _listeners(self) -> SignalRace:
        page, timeout = self.page, self.listener_timeout
        return SignalRace({
            "download": page.wait_for_event("download", timeout=timeout),
            "popup": page.wait_for_event("popup", timeout=timeout),
            "response": page.wait_for_event("response", predicate=is_pdf_response, timeout=timeout),
        })

    async def capture(self, trigger: Trigger) -> Artifact:
        race = self._listeners()
        # let the listener tasks subscribe before the click goes out
        await asyncio.sleep(0)
        try:
            await trigger()
            logger.info("[capture] Trigger fired, waiting for a delivery signal...")
            signal = await race.first(self.primary_timeout)
            polls = 0
            while signal is None and race.pending and polls < self.poll_attempts:
                polls += 1
                logger.debug(f"[capture] poll {polls}/{self.poll_attempts}")
                signal = await race.first(self.poll_interval)
        finally:
            race.cancel()

        if signal is None:
            logger.warning("[capture] No download, popup or document response")
            return Artifact.empty()

        logger.info(f"[capture] Signal: {signal.kind}")
        try:
            artifact = await self._bytes_from(signal)
        except Exception as e:
            logger.warning(f"[capture] Reading {signal.kind} failed: {type(e).__name__}: {e}")
            return Artifact.empty()
        if artifact.is_empty:
            logger.warning(f"[capture] {signal.kind} produced no bytes")
            return Artifact.empty()
        logger.info(f"[capture] Captured {artifact.size_bytes} bytes via {artifact.channel}")
        return artifact

    async def _bytes_from(self, signal: Signal) -> Artifact:
        if signal.kind == "download":
            return await self._from_download(signal.payload)
        if signal.kind == "response":
            return await self._from_response(signal.payload, channel="response")
        if signal.kind == "popup":
            return await self._from_popup(signal.payload)
        raise ValueError(f"unknown signal kind {signal.kind!r}")

    async def _from_download(self, download) -> Artifact:
        name = download.suggested_filename
        failure = await download.failure()
        if failure:
            logger.warning(f"[capture] Download failed: {failure}")
            return Artifact.empty()
        data = b""
        try:
            path = await download.path()
            if path:
                data = Path(path).read_bytes()
        except Exception as e:
            # remote browsers have no local path; save_as streams the file over
            logger.debug(f"[capture] download.path() failed, saving a copy: {e}")
            with tempfile.TemporaryDirectory() as tmp:
                target = Path(tmp) / (name or "download.pdf")
                await download.save_as(str(target))
                data = target.read_bytes()
        ct = "application/pdf" if (name or "").lower().endswith(".pdf") else "application/octet-stream"
        return Artifact(data=data, content_type=ct, suggested_file_name=name, channel="download")

    async def _from_response(self, resp, channel: str) -> Artifact:
        data = await resp.body()
        ct = resp.headers.get("content-type") or "application/pdf"
        name = Path(resp.url.split("?", 1)[0]).name or None
        return Artifact(data=data or b"", content_type=ct.split(";")[0].strip(), suggested_file_name=name, channel=channel)

    async def _from_popup(self, popup: Page) -> Artifact:
        try:
            logger.info(f"[capture] New tab opened: {popup.url}")
            try:
                resp = await popup.wait_for_event("response", predicate=is_pdf_response, timeout=self.popup_timeout)
                artifact = await self._from_response(resp, channel="popup-response")
                if not artifact.is_empty:
                    return artifact
            except Exception as e:
                logger.debug(f"[capture] popup produced no document response: {e}")

            try:
                await popup.wait_for_load_state("domcontentloaded", timeout=NAV_TIMEOUT)
            except Exception as e:
                logger.debug(f"[capture] popup load: {e}")
            if looks_like_pdf_url(popup.url):
                return await self._fetch_url(popup, popup.url)
            logger.info(f"[capture] Popup URL does not look like a document: {popup.url}")
            return Artifact.empty()
        finally:
            try:
                await popup.close()
            except Exception as e:
                logger.debug(f"[capture] closing popup: {e}")

    async def _fetch_url(self, popup: Page, url: str) -> Artifact:
        logger.info(f"[context-request] GET {url}")
        resp = await popup.context.request.get(
            url,
            headers={"Accept": "application/pdf,application/octet-stream,*/*", "Referer": self.page.url},
            timeout=NAV_TIMEOUT,
        )
        if not resp.ok:
            logger.warning(f"[context-request] {url} failed: {resp.status}")
            return Artifact.empty()
        data = await resp.body()
        ct = resp.headers.get("content-type")
        if ct and not is_pdf_content_type(ct):
            logger.debug(f"[context-request] unexpected content-type {ct}")
        name = Path(url.split("?", 1)[0]).name or None
        return Artifact(
            data=data or b"",
            content_type=(ct or "application/pdf").split(";")[0].strip(),
            suggested_file_name=name,
            channel="popup-fetch",
        )
