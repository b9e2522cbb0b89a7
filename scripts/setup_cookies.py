"""Interactive helper to capture inbox authentication cookies."""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional

from inbox_mirror.config import BrowserSettings, get_browser_settings
from inbox_mirror.crawl.browser import BrowserSession


def parse_args() -> argparse.Namespace:
    settings = get_browser_settings()
    parser = argparse.ArgumentParser(description="Capture inbox cookies for the shared Selenium session")
    parser.add_argument(
        "--output",
        type=Path,
        default=settings.cookies_path,
        help=f"Where to write the cookies pickle (default: {settings.cookies_path})",
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=settings.base_url,
        help=f"Site to log in to (default: {settings.base_url})",
    )
    parser.add_argument(
        "--window-size",
        type=str,
        default="1200,1200",
        help="Window size passed to Chrome (WIDTH,HEIGHT)",
    )
    return parser.parse_args()


def capture_cookies(output_path: Path, *, base_url: str, window_size: str) -> Optional[Path]:
    settings = BrowserSettings(
        base_url=base_url.rstrip("/"),
        cookies_path=output_path.expanduser().resolve(),
        headless=False,
        window_size=window_size,
    )
    browser = BrowserSession(settings)
    try:
        driver = browser.driver()
        login_url = f"{settings.base_url}/login"
        print(f"Opening {login_url} ...")
        driver.get(login_url)
        print("\nPlease complete login in the browser window.")
        print("When the inbox is visible, press Enter here to capture cookies.")
        input("Press Enter once you are logged in...")

        saved = browser.save_cookies()
        if not saved:
            print("\n✗ No cookies were captured. Is the session still active?")
            return None

        print(f"\n✓ Saved {saved} cookies to {settings.cookies_path}")
        return settings.cookies_path
    finally:
        browser.close()


def main() -> None:
    args = parse_args()
    capture_cookies(args.output, base_url=args.base_url, window_size=args.window_size)


if __name__ == "__main__":
    main()
