import enum
import logging
from typing import Optional

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from fh_browser import SignalRace, polite_pause
from fh_config import DEFAULT_LANDMARK, LOGIN_TIMEOUT, NAV_TIMEOUT, Credentials
from fh_errors import AuthError

logger = logging.getLogger("fortified.session")

EMAIL_SEL = 'input[type="email"], input[name="email"], input[autocomplete="username"]'
PASS_SEL = 'input[type="password"], input[name="password"], input[autocomplete="current-password"]'
SUBMIT_SEL = 'button:has-text("Sign in"), button:has-text("Log in"), button[type="submit"], [type="submit"]'


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class SessionManager:
    """Drives the login form until the app landmark shows or the form goes away."""

    def __init__(
        self,
        page: Page,
        login_url: str,
        landmark_selector: str = DEFAULT_LANDMARK,
        polite_delay_ms: int = 800,
        login_timeout: int = LOGIN_TIMEOUT,
        diagnostics=None,
    ):
        self.page = page
        self.login_url = login_url
        self.landmark_selector = landmark_selector
        self.polite_delay_ms = polite_delay_ms
        self.login_timeout = login_timeout
        self.diagnostics = diagnostics
        self.state = SessionState.UNAUTHENTICATED
        self.home_url: Optional[str] = None

    async def _snapshot(self, step: str) -> None:
        if self.diagnostics is not None:
            await self.diagnostics.snapshot(self.page, step)

    async def _login_form_present(self) -> bool:
        return await self.page.locator(EMAIL_SEL).count() > 0

    async def _submit(self) -> None:
        page = self.page
        if await page.locator(SUBMIT_SEL).count():
            await page.locator(SUBMIT_SEL).first.click()
        elif await page.locator(PASS_SEL).count():
            await page.locator(PASS_SEL).first.press("Enter")

    async def ensure(self, credentials: Credentials) -> None:
        if self.state is SessionState.AUTHENTICATED:
            return
        page = self.page
        logger.info("[login] Starting login process...")
        try:
            await page.goto(self.login_url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT)
        except PlaywrightTimeoutError as e:
            self.state = SessionState.FAILED
            raise AuthError(f"Login page did not load: {e}")
        try:
            await page.wait_for_load_state("networkidle", timeout=NAV_TIMEOUT)
        except PlaywrightTimeoutError:
            logger.debug("[login] networkidle not reached; continuing")
        await self._snapshot("LOGIN_PAGE_LOADED")

        if await page.locator(EMAIL_SEL).count():
            logger.info("[login] Filling email field...")
            await page.locator(EMAIL_SEL).first.fill(credentials.username)
            await polite_pause(200)
        if await page.locator(PASS_SEL).count():
            logger.info("[login] Filling password field...")
            await page.locator(PASS_SEL).first.fill(credentials.password)
            await polite_pause(200)

        logger.info("[login] Submitting credentials...")
        await self._submit()
        self.state = SessionState.CREDENTIALS_SUBMITTED

        race = SignalRace({
            "form_gone": page.wait_for_selector(EMAIL_SEL, state="detached", timeout=self.login_timeout),
            "landmark": page.wait_for_selector(self.landmark_selector, timeout=self.login_timeout),
        })
        try:
            signal = await race.first(self.login_timeout)
        finally:
            race.cancel()
        logger.info(f"[login] Race resolved by: {signal.kind if signal else 'timeout'}")

        if signal is not None and await self._login_form_present():
            logger.info("[login] Form still present, submitting once more")
            await self._submit()
            try:
                await page.wait_for_load_state("networkidle", timeout=LOGIN_TIMEOUT)
            except PlaywrightTimeoutError:
                logger.debug("[login] networkidle not reached after resubmit")

        await self._snapshot("POST_LOGIN")

        if signal is None or await self._login_form_present():
            self.state = SessionState.FAILED
            raise AuthError("Login did not complete (email field still visible). Check credentials.")

        self.state = SessionState.AUTHENTICATED
        self.home_url = page.url
        logger.info(f"[login] Login successful, landed on {self.home_url}")
        await polite_pause(self.polite_delay_ms)
