"""Shared Selenium browser handle with cookie persistence."""
from __future__ import annotations

import logging
import pickle
import signal
import threading
from pathlib import Path
from typing import Callable, Optional

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.remote.webdriver import WebDriver

from ..config import BrowserSettings


LOGGER = logging.getLogger(__name__)


class BrowserSession:
    """One lazily started Chrome instance shared by every crawl job.

    The composition root owns it and is the only caller of ``close``; jobs
    borrow ``driver()``. Saved cookies are replayed when the driver starts so
    a previous process's login carries over.
    """

    def __init__(
        self,
        settings: BrowserSettings,
        driver_factory: Optional[Callable[[], WebDriver]] = None,
    ) -> None:
        self._settings = settings
        self._driver_factory = driver_factory or self._build_chrome
        self._driver: Optional[WebDriver] = None
        self._lock = threading.RLock()

    @property
    def settings(self) -> BrowserSettings:
        return self._settings

    @property
    def cookies_path(self) -> Path:
        return self._settings.cookies_path

    def is_running(self) -> bool:
        return self._driver is not None

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def driver(self) -> WebDriver:
        with self._lock:
            if self._driver is None:
                LOGGER.debug("Starting browser (headless=%s)", self._settings.headless)
                driver = self._driver_factory()
                driver.set_page_load_timeout(self._settings.page_load_timeout)
                self._driver = driver
                self.load_cookies()
            return self._driver

    def _build_chrome(self) -> WebDriver:
        options = webdriver.ChromeOptions()
        if self._settings.headless:
            options.add_argument("--headless=new")
        options.add_argument(f"--window-size={self._settings.window_size}")
        options.add_argument("--disable-blink-features=AutomationControlled")
        options.add_experimental_option("excludeSwitches", ["enable-automation"])
        options.add_experimental_option("useAutomationExtension", False)

        # Keep Ctrl+C away from chromedriver while it spawns so the Python
        # side gets to run its shutdown path.
        old_sigint_handler = None
        if threading.current_thread() is threading.main_thread():
            old_sigint_handler = signal.signal(signal.SIGINT, signal.SIG_IGN)
        try:
            driver = webdriver.Chrome(options=options)
        finally:
            if old_sigint_handler is not None:
                signal.signal(signal.SIGINT, old_sigint_handler)

        driver.execute_script(
            "Object.defineProperty(navigator, 'webdriver', {get: () => undefined})"
        )
        return driver

    def close(self) -> None:
        """Release the browser unconditionally. Safe to call repeatedly."""
        with self._lock:
            driver, self._driver = self._driver, None
        if driver is None:
            return
        LOGGER.info("Closing shared browser")
        try:
            driver.quit()
        except WebDriverException as exc:
            LOGGER.warning("Browser quit raised during close: %s", exc)

    # ------------------------------------------------------------------
    # Cookie persistence
    # ------------------------------------------------------------------
    def load_cookies(self) -> int:
        path = self._settings.cookies_path
        if not path.exists():
            LOGGER.debug("No saved cookies at %s", path)
            return 0
        try:
            with path.open("rb") as fh:
                cookies = pickle.load(fh)
        except (OSError, pickle.UnpicklingError, EOFError) as exc:
            LOGGER.warning("Cookies at %s could not be read: %s", path, exc)
            return 0

        assert self._driver is not None
        # Cookies can only be attached to the domain currently loaded.
        self._driver.get(self._settings.base_url)
        loaded = 0
        for cookie in cookies:
            try:
                self._driver.add_cookie(cookie)
                loaded += 1
            except WebDriverException as exc:
                LOGGER.debug("Skipping cookie %s: %s", cookie.get("name"), exc)
        LOGGER.info("Cookies loaded from %s (%s entries)", path, loaded)
        return loaded

    def save_cookies(self) -> int:
        with self._lock:
            if self._driver is None:
                LOGGER.debug("No browser running; cookies not saved")
                return 0
            cookies = self._driver.get_cookies() or []

        path = self._settings.cookies_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as fh:
            pickle.dump(cookies, fh)
        LOGGER.info("Cookies saved to %s (%s entries)", path, len(cookies))
        return len(cookies)
