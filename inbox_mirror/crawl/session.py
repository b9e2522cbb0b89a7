"""Authenticated session reuse: login detection, one-shot login, cookie persistence."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol
from urllib.parse import parse_qs, unquote, urlparse

from selenium.common.exceptions import (
    ElementNotInteractableException,
    NoSuchElementException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from ..config import SourceCredentials
from .browser import BrowserSession


LOGGER = logging.getLogger(__name__)


class SessionUnavailableError(RuntimeError):
    """The source or the browser could not be reached at all."""


class LoginState(str, Enum):
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class LoginSignals:
    """Independent page observations used to decide whether we are logged in."""

    current_url: str
    has_logout_link: bool = False
    has_logout_text: bool = False
    has_profile_element: bool = False

    @property
    def redirected_to_login(self) -> bool:
        return "login" in urlparse(self.current_url).path.lower()

    @property
    def on_restricted_page(self) -> bool:
        path = urlparse(self.current_url).path.lower()
        return any(marker in path for marker in RESTRICTED_PATH_MARKERS)


RESTRICTED_PATH_MARKERS = ("/pro/", "/requests/", "/dashboard", "/account")
PROFILE_SELECTORS = ".profile, .avatar, .user-menu, .user-profile"
LOGOUT_TEXT_XPATH = (
    "//*[self::a or self::button or self::span or self::div]"
    "[contains(normalize-space(.), '로그아웃') or contains(normalize-space(.), 'Log out')"
    " or contains(normalize-space(.), 'Logout')]"
)


def classify_login_signals(signals: LoginSignals) -> LoginState:
    """Fold the individual signals into one tri-state decision.

    A login redirect vetoes everything else. Otherwise a logout affordance or
    an account-only element is required for LOGGED_IN; sitting on a
    restricted page without either is only UNKNOWN.
    """
    if signals.redirected_to_login:
        return LoginState.LOGGED_OUT
    if signals.has_logout_link or signals.has_logout_text or signals.has_profile_element:
        return LoginState.LOGGED_IN
    if signals.on_restricted_page:
        return LoginState.UNKNOWN
    return LoginState.LOGGED_OUT


class SessionProbe(Protocol):
    """Source-coupled login capability consumed by ``SessionManager``."""

    def probe(self) -> LoginState:
        ...

    def login(self, credentials: SourceCredentials) -> None:
        ...


class SeleniumSessionProbe:
    """Probe and login sequence driven through the shared browser."""

    def __init__(
        self,
        browser: BrowserSession,
        *,
        probe_path: str = "/pro/chats",
        login_path: str = "/login",
        form_timeout: float = 10.0,
        navigation_timeout: float = 30.0,
    ) -> None:
        self._browser = browser
        self._base_url = browser.settings.base_url
        self._probe_path = probe_path
        self._login_path = login_path
        self._form_timeout = form_timeout
        self._navigation_timeout = navigation_timeout

    def probe(self) -> LoginState:
        driver = self._browser.driver()
        driver.get(f"{self._base_url}{self._probe_path}")
        signals = self.collect_signals()
        state = classify_login_signals(signals)
        LOGGER.debug("Login probe at %s -> %s (%s)", signals.current_url, state.value, signals)
        return state

    def collect_signals(self) -> LoginSignals:
        driver = self._browser.driver()
        current_url = driver.current_url or ""
        if "login" in urlparse(current_url).path.lower():
            return LoginSignals(current_url=current_url)
        return LoginSignals(
            current_url=current_url,
            has_logout_link=bool(driver.find_elements(By.CSS_SELECTOR, "a[href*='/logout']")),
            has_logout_text=bool(driver.find_elements(By.XPATH, LOGOUT_TEXT_XPATH)),
            has_profile_element=bool(driver.find_elements(By.CSS_SELECTOR, PROFILE_SELECTORS)),
        )

    def login(self, credentials: SourceCredentials) -> None:
        driver = self._browser.driver()
        driver.get(f"{self._base_url}{self._login_path}")
        if "login" not in urlparse(driver.current_url or "").path.lower():
            LOGGER.info("Login page redirected away; session already active")
            return

        try:
            email_input = WebDriverWait(driver, self._form_timeout).until(
                EC.presence_of_element_located((By.CSS_SELECTOR, "input[type='email']"))
            )
        except TimeoutException:
            LOGGER.error("Login form did not render within %.0fs", self._form_timeout)
            return

        try:
            email_input.clear()
            email_input.send_keys(credentials.email)
            password_input = driver.find_element(By.CSS_SELECTOR, "input[type='password']")
            password_input.clear()
            password_input.send_keys(credentials.password)
            driver.find_element(By.CSS_SELECTOR, "button[type='submit']").click()
        except (NoSuchElementException, ElementNotInteractableException) as exc:
            LOGGER.error("Login form incomplete: %s", exc.msg or type(exc).__name__)
            return

        try:
            WebDriverWait(driver, self._navigation_timeout).until(
                lambda d: "login" not in urlparse(d.current_url or "").path.lower()
            )
        except TimeoutException:
            LOGGER.warning("Still on the login page %.0fs after submitting", self._navigation_timeout)
            return

        redirect = self.redirect_target(driver.current_url or "")
        if redirect:
            LOGGER.debug("Following post-login redirect to %s", redirect)
            driver.get(f"{self._base_url}{redirect}")

    @staticmethod
    def redirect_target(url: str) -> Optional[str]:
        """Return the site-relative ``redirect=`` target of ``url``, if any."""
        values = parse_qs(urlparse(url).query).get("redirect")
        if not values:
            return None
        target = unquote(values[0])
        if not target.startswith("/"):
            return None
        return target


class SessionManager:
    """Keeps the process-wide session valid.

    ``ensure_valid`` makes exactly one login attempt per call and reports a
    failed login as ``False``. Only an unreachable source or browser raises
    (``SessionUnavailableError``). Retrying is the caller's decision.
    """

    def __init__(
        self,
        browser: BrowserSession,
        probe: SessionProbe,
        credentials: Optional[SourceCredentials] = None,
    ) -> None:
        self._browser = browser
        self._probe = probe
        self._credentials = credentials
        self._lock = threading.RLock()
        self._logged_in = False

    @property
    def browser(self) -> BrowserSession:
        return self._browser

    def is_logged_in(self) -> bool:
        return self._logged_in

    def ensure_valid(self) -> bool:
        with self._lock:
            try:
                state = self._probe.probe()
                if state == LoginState.LOGGED_IN:
                    LOGGER.debug("Session still valid")
                    self._logged_in = True
                    self._persist_cookies()
                    return True

                self._logged_in = False
                if self._credentials is None:
                    LOGGER.error("Session is %s and no source credentials are configured", state.value)
                    return False

                LOGGER.info("Session is %s; attempting login", state.value)
                self._probe.login(self._credentials)
                state = self._probe.probe()
            except WebDriverException as exc:
                self._logged_in = False
                raise SessionUnavailableError(f"source unreachable: {exc.msg or exc}") from exc

            if state != LoginState.LOGGED_IN:
                LOGGER.warning("Login failed; session state after attempt is %s", state.value)
                return False

            LOGGER.info("Login succeeded")
            self._logged_in = True
            self._persist_cookies()
            return True

    def close(self) -> None:
        """Escape hatch: release the browser and forget login state.

        Does not take ``ensure_valid``'s lock, so it can run while a job is
        wedged mid-navigation (including from an ``atexit`` hook).
        """
        self._logged_in = False
        self._browser.close()
        LOGGER.info("Session closed")

    def _persist_cookies(self) -> None:
        try:
            self._browser.save_cookies()
        except OSError as exc:
            LOGGER.warning("Cookies could not be persisted: %s", exc)
