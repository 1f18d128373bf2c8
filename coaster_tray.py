#!/usr/bin/env python3
"""
Coaster - price tracker for the system tray

Shows the latest USD price for a handful of CoinGecko ids in a tray menu.
Click Refresh to fetch again; use `coaster set` to change the tracked ids.

Usage:
    coaster                      run the tray icon
    coaster prices               print current prices
    coaster settings             show saved settings
    coaster set "btc, eth" [--api-key KEY]
"""

import sys
import logging
import argparse
import threading
import traceback
from pathlib import Path
from typing import List, Optional

from PIL import Image, ImageDraw

from coaster_prices import (
    __version__,
    ConfigStore,
    FetchResult,
    PLACEHOLDER,
    PriceBoard,
    PriceFetcher,
    PriceFetchError,
    apply_settings,
    app_dir,
    fetch_for_display,
)

logger = logging.getLogger('Coaster')

SETTINGS_HINT = 'Change tickers: coaster set "btc, eth"'

SYSTEM_TRAY_AVAILABLE = False
try:
    import pystray
    from pystray import MenuItem as item
    SYSTEM_TRAY_AVAILABLE = True
except Exception as e:
    # pystray picks its backend at import; headless X raises Xlib errors here
    logger.debug(f"System tray unavailable: {e}")
    pystray = None
    item = None


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> logging.Logger:
    """Setup logging to ~/.coaster/coaster.log and the console"""
    log = logging.getLogger('Coaster')
    log.setLevel(logging.DEBUG if debug else logging.INFO)
    if log.handlers:
        return log

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    log.addHandler(console_handler)

    try:
        log_dir = log_dir or app_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / 'coaster.log', encoding='utf-8')
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)
    except OSError as e:
        log.warning(f"Could not open log file, logging to console only: {e}")

    return log


def menu_labels(rows, status: str, is_error: bool = False) -> List[str]:
    """Text lines shown at the top of the tray menu"""
    labels = [f"{row.symbol}    {row.price_text}" for row in rows]
    if status:
        labels.append(f"⚠ {status}" if is_error else status)
    return labels or [PLACEHOLDER]


class CoasterTray:
    """Tray icon listing one menu row per tracked id"""

    def __init__(self, store: Optional[ConfigStore] = None,
                 fetcher: Optional[PriceFetcher] = None):
        self.available = SYSTEM_TRAY_AVAILABLE
        self.store = store or ConfigStore()
        self.fetcher = fetcher or PriceFetcher()
        self.board = PriceBoard()
        self.tray_icon = None
        self.tray_image = None
        self.running = False

    def create_icon(self) -> Image.Image:
        """Draw the tray icon: a rising line on a rounded tile"""
        size = 64
        image = Image.new('RGBA', (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)

        draw.rounded_rectangle([4, 4, size - 4, size - 4], radius=12,
                               fill='#1E293B', outline='#3B82F6', width=2)
        points = [(12, 46), (24, 34), (34, 40), (52, 18)]
        draw.line(points, fill='#10B981', width=5, joint='curve')
        draw.ellipse([48, 14, 56, 22], fill='#10B981')

        self.tray_image = image
        return image

    def refresh(self) -> FetchResult:
        """Fetch prices with a fresh settings snapshot and publish the result"""
        config = self.store.read()
        self.board.begin()
        self._update_menu()
        try:
            result = fetch_for_display(config.ids, config.api_key, fetcher=self.fetcher)
        except Exception:
            self.board.abandon()
            self._update_menu()
            raise
        self.board.publish(result)
        if result.ok:
            logger.info(f"Fetched {len(result.entries)} price(s)")
        self._update_menu()
        return result

    def refresh_async(self, *_) -> threading.Thread:
        """Run refresh on a worker thread so the tray stays responsive"""
        thread = threading.Thread(target=self.refresh, daemon=True, name="PriceRefresh")
        thread.start()
        return thread

    def build_menu_items(self) -> list:
        labels = menu_labels(self.board.rows(), self.board.status_text(),
                             is_error=self.board.is_error)
        items = [item(label, None, enabled=False) for label in labels]
        items += [
            pystray.Menu.SEPARATOR,
            item('Refresh', self.refresh_async, default=True),
            item(SETTINGS_HINT, None, enabled=False),
            item('Quit', self.quit_application),
        ]
        return items

    def setup_tray(self) -> bool:
        """Create the pystray icon"""
        if not self.available:
            logger.error("System tray unavailable on this platform")
            return False

        if self.tray_image is None:
            self.create_icon()
        self.tray_icon = pystray.Icon(
            "coaster",
            self.tray_image,
            "Coaster",
            menu=pystray.Menu(lambda: self.build_menu_items()),
        )
        logger.info("System tray configured successfully")
        return True

    def _update_menu(self) -> None:
        if self.tray_icon is not None:
            self.tray_icon.update_menu()

    def run(self) -> bool:
        """Run the tray loop until Quit"""
        if not self.setup_tray():
            return False
        self.running = True
        try:
            self.tray_icon.run(setup=self._on_ready)
        finally:
            self.running = False
        return True

    def _on_ready(self, icon) -> None:
        icon.visible = True
        self.refresh_async()

    def quit_application(self, *_) -> None:
        logger.info("Shutting down Coaster...")
        if self.tray_icon is not None:
            self.tray_icon.stop()


def print_prices(store: ConfigStore, fetcher: PriceFetcher) -> int:
    config = store.read()
    result = fetch_for_display(config.ids, config.api_key, fetcher=fetcher)
    for row in result.entries:
        print(f"{row.symbol:<12}{row.price_text:>14}")
    if not result.ok:
        print(result.status_text, file=sys.stderr)
        return 1
    return 0


def print_settings(store: ConfigStore) -> int:
    config = store.read()
    print(f"ids:     {config.ids_raw or '(none)'}")
    print(f"api key: {'set' if config.api_key else 'not set'}")
    return 0


def save_settings(store: ConfigStore, fetcher: PriceFetcher,
                  tickers: str, api_key: Optional[str]) -> int:
    # Without --api-key keep the saved key; --api-key "" clears it
    if api_key is None:
        api_key = store.read().api_key
    try:
        config = apply_settings(store, tickers, api_key, fetcher=fetcher)
    except PriceFetchError as e:
        print(f"⚠ {e.message}", file=sys.stderr)
        return 1
    print(f"Saved: {config.ids_raw}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='coaster',
                                     description='CoinGecko price tracker for the system tray')
    parser.add_argument('--debug', action='store_true', help='Verbose logging')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Request timeout in seconds')
    parser.add_argument('--version', action='version', version=f'Coaster v{__version__}')

    sub = parser.add_subparsers(dest='command')
    sub.add_parser('tray', help='Run the tray icon (default)')
    sub.add_parser('prices', help='Fetch and print current prices')
    sub.add_parser('settings', help='Show saved settings')
    set_parser = sub.add_parser('set', help='Validate and save tracked tickers')
    set_parser.add_argument('tickers', help='Comma-separated tickers, e.g. "btc, eth"')
    set_parser.add_argument('--api-key', default=None,
                            help='CoinGecko demo API key (sent as x-cg-demo-api-key); '
                                 'omit to keep the saved key, pass "" to clear it')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug)

    store = ConfigStore()
    fetcher = PriceFetcher() if args.timeout is None else PriceFetcher(timeout=args.timeout)

    try:
        if args.command == 'prices':
            return print_prices(store, fetcher)
        if args.command == 'settings':
            return print_settings(store)
        if args.command == 'set':
            return save_settings(store, fetcher, args.tickers, args.api_key)

        tray = CoasterTray(store, fetcher)
        return 0 if tray.run() else 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.critical(f"Critical error: {e}")
        logger.critical(traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
