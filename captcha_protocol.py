#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - CAPTCHA Protocol                                ║
║                  Acquire → hand to operator → submit → classify              ║
╚══════════════════════════════════════════════════════════════════════════════╝

Acquisition:
  The portal's image (#imgCaptcha_new) is served by Handler.ashx?txt=<token>.
  When the token is present the bytes are fetched in a short-lived page of
  the same browser context; on any failure we fall back to a screenshot of
  the element's bounding box. Each acquisition overwrites the session's one
  challenge file.

Classification (after a fixed settle, the portal has no "done" signal):
  - error element mentions "invalid" / "CAPTCHA"   → REJECTED
  - results table or IndexII buttons present       → ACCEPTED
  - neither                                        → INDETERMINATE

Author: POWER-IGR Team
Version: 1.0.0
"""

import os
import logging
from pathlib import Path
from typing import Optional

import portal_scripts as js
from igr_config import Config
from igr_errors import IGRError, SessionLost, WaitTimeout
from retry_policy import Clock
from session_models import CaptchaChallenge, CaptchaOutcome

logger = logging.getLogger('CaptchaProtocol')


def classify_outcome(error_text: Optional[str], results_present: bool) -> CaptchaOutcome:
    """Map what the page shows after a submission to an outcome"""
    text = (error_text or '').strip()
    if text and ('invalid' in text.lower() or 'CAPTCHA' in text):
        return CaptchaOutcome.REJECTED
    if results_present:
        return CaptchaOutcome.ACCEPTED
    return CaptchaOutcome.INDETERMINATE


def handler_url(image_src: Optional[str], base_url: str = None) -> Optional[str]:
    """Direct image URL for a src carrying a txt= token, else None"""
    if not image_src or 'txt=' not in image_src:
        return None
    token = image_src.split('txt=', 1)[1]
    if not token:
        return None
    base = base_url or Config.BASE_URL
    if not base.endswith('/'):
        base += '/'
    return f"{base}{Config.CAPTCHA_HANDLER_PATH}{token}"


class CaptchaProtocol:
    """CAPTCHA round-trips for one session"""

    def __init__(self, browser, clock: Clock, image_path: Path, log: logging.Logger = None):
        self.browser = browser
        self.clock = clock
        self.image_path = Path(image_path)
        self.logger = log or logger
        self.current: Optional[CaptchaChallenge] = None
        self._sequence = 0

    # ═══════════════════════════════════════════════════════════════════════
    # ACQUIRE
    # ═══════════════════════════════════════════════════════════════════════

    def acquire_challenge(self) -> CaptchaChallenge:
        """Grab the image currently shown and make it the current challenge"""
        selector = Config.SELECTORS['captcha_image']
        if not self.browser.wait_for_selector(selector, Config.CAPTCHA_VISIBLE_TIMEOUT):
            raise WaitTimeout('CAPTCHA image', Config.CAPTCHA_VISIBLE_TIMEOUT)

        image_bytes = None
        source = 'screenshot'
        url = handler_url(self.browser.evaluate(js.IMAGE_SOURCE, selector))
        if url:
            try:
                image_bytes = self.browser.fetch_in_new_page(url, Config.CAPTCHA_FETCH_TIMEOUT)
                source = 'fetch'
            except SessionLost:
                raise
            except Exception as e:
                self.logger.warning(f"⚠️  CAPTCHA fetch failed ({e}), using element screenshot")
                image_bytes = None

        if not image_bytes:
            image_bytes = self.browser.element_screenshot(selector)
            source = 'screenshot'

        self._sequence += 1
        self._write(image_bytes)
        self.current = CaptchaChallenge(
            image_bytes=image_bytes,
            acquired_at=self.clock.timestamp(),
            sequence=self._sequence,
            source=source,
            path=str(self.image_path),
        )
        self.logger.info(f"🔐 CAPTCHA #{self._sequence} ready ({source}, {len(image_bytes)} bytes)")
        return self.current

    def _write(self, image_bytes: bytes):
        self.image_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.image_path.with_suffix('.tmp')
        temp_path.write_bytes(image_bytes)
        os.replace(temp_path, self.image_path)

    def discard(self):
        """Forget the current challenge and remove its file"""
        self.current = None
        try:
            self.image_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove CAPTCHA file: {e}")

    # ═══════════════════════════════════════════════════════════════════════
    # SUBMIT
    # ═══════════════════════════════════════════════════════════════════════

    def submit(self, value: str) -> CaptchaOutcome:
        """Type the operator's answer, press search, settle, classify"""
        if not self.browser.evaluate(js.FILL_INPUT, [Config.SELECTORS['captcha_input'], value]):
            raise IGRError('CAPTCHA input not found on page')

        clicked = self.browser.evaluate(js.CLICK_FIRST, Config.SEARCH_BUTTONS)
        if not clicked:
            raise IGRError('Search button not found on page')
        self.logger.info(f"🔎 Submitted CAPTCHA via {clicked}")

        self.clock.sleep(Config.CAPTCHA_SETTLE)

        error_text = self.browser.evaluate(js.ELEMENT_TEXT, Config.SELECTORS['captcha_error'])
        results_present = bool(self.browser.evaluate(
            js.RESULTS_PRESENT,
            [Config.RESULTS_TABLES, Config.SELECTORS['record_action']]
        ))
        outcome = classify_outcome(error_text, results_present)
        if outcome == CaptchaOutcome.REJECTED:
            self.logger.warning(f"❌ CAPTCHA rejected: {error_text}")
        elif outcome == CaptchaOutcome.INDETERMINATE:
            self.logger.info("❔ No error and no results yet, treating CAPTCHA as accepted")
        else:
            self.logger.info("✅ CAPTCHA accepted")
        return outcome
