#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Search Session                                  ║
║                  One browser, one search, one state machine                  ║
╚══════════════════════════════════════════════════════════════════════════════╝

State machine:

    IDLE ──start(property)──▶ AWAITING_CAPTCHA ──accepted──▶ EXTRACTING
     │                          │    ▲                          │
     │                          └────┘ rejected                 ├──▶ COMPLETED
     │                                                          └──▶ FAILED
     └──────────── cancel() from any state ──────────────────────────▶ CLOSED

start() without a property number stays IDLE and just discloses the next
dropdown's options, so clients can walk the cascade one level at a time.

Every operation returns an OperationResult; engine exceptions are turned
into failures here and never reach the HTTP layer.

Threading:
  All methods run on the session's worker thread (see session_registry).
  cancel_event is the only thing other threads touch.

Author: POWER-IGR Team
Version: 1.0.0
"""

import logging
import sqlite3
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional, Dict, Any

import portal_scripts as js
from artifact_store import ArtifactLog, DocumentStore
from captcha_protocol import CaptchaProtocol
from capture_history import CaptureHistory
from igr_config import Config
from igr_errors import (
    IGRError, InvalidTransition, SessionCancelled, SessionLost, CascadeOrderError
)
from record_capture import RecordCapture
from retry_policy import Clock
from selection_resolver import SelectionResolver
from session_models import (
    CASCADE_LEVELS, CaptchaOutcome, CaptchaChallenge, ExtractionReport,
    OperationResult, Selections, SessionStatus
)

S = SessionStatus

TRANSITIONS = {
    S.IDLE: {S.AWAITING_CAPTCHA, S.CLOSED, S.FAILED},
    S.AWAITING_CAPTCHA: {S.AWAITING_CAPTCHA, S.EXTRACTING, S.CLOSED, S.FAILED},
    S.EXTRACTING: {S.COMPLETED, S.FAILED, S.CLOSED},
    S.COMPLETED: {S.CLOSED},
    S.FAILED: {S.CLOSED},
    S.CLOSED: set(),
}


class SearchSession:
    """
    One IGR property search.

    Collaborators are injected so tests can drive the whole flow against a
    scripted fake browser and a virtual clock.
    """

    def __init__(
        self,
        session_id: str,
        browser,
        clock: Clock = None,
        documents: DocumentStore = None,
        artifact_log: ArtifactLog = None,
        history: Optional[CaptureHistory] = None,
        captcha_path: Path = None
    ):
        self.session_id = session_id
        self.browser = browser
        self.clock = clock or Clock()
        self.cancel_event: threading.Event = self.clock.cancel_event
        self.documents = documents or DocumentStore()
        self.artifact_log = artifact_log or ArtifactLog()
        self.history = history

        self.logger = logging.getLogger(f'Session-{session_id}')
        self.status = S.IDLE
        self.created_at = self.clock.timestamp()
        self.updated_at = self.created_at
        self.selections = Selections()
        self.form_ready = False
        self.captcha_attempts = 0
        self.last_report: Optional[ExtractionReport] = None
        self.last_message = ''

        self.resolver = SelectionResolver(
            browser, self.clock, logging.getLogger('SelectionResolver').getChild(session_id)
        )
        self.captcha = CaptchaProtocol(
            browser,
            self.clock,
            Path(captcha_path or Config.CAPTCHA_DIR / f'captcha-{session_id}.png'),
            logging.getLogger('CaptchaProtocol').getChild(session_id)
        )
        self.capture = RecordCapture(
            browser,
            self.clock,
            self.documents,
            self.artifact_log,
            logging.getLogger('RecordCapture').getChild(session_id)
        )

    # ═══════════════════════════════════════════════════════════════════════
    # STATE
    # ═══════════════════════════════════════════════════════════════════════

    def _transition(self, target: SessionStatus):
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransition(self.status, target)
        if target != self.status:
            self.logger.info(f"🔄 {self.status.value} → {target.value}")
        self.status = target
        self.updated_at = self.clock.timestamp()
        self._record_history('update_session_status', self.session_id, target.value,
                             captcha_attempts=self.captcha_attempts)

    def _fail(self, reason: str):
        if S.FAILED in TRANSITIONS[self.status]:
            self._transition(S.FAILED)
        self.last_message = reason
        self._record_history('update_session_status', self.session_id, self.status.value, notes=reason)

    def is_live(self) -> bool:
        return self.status not in (S.COMPLETED, S.FAILED, S.CLOSED)

    def current_challenge(self) -> Optional[CaptchaChallenge]:
        return self.captcha.current

    def _result(self, success: bool, message: str, **kwargs) -> OperationResult:
        self.last_message = message
        return OperationResult(
            success=success,
            message=message,
            status=self.status,
            session_id=self.session_id,
            **kwargs
        )

    # ═══════════════════════════════════════════════════════════════════════
    # START
    # ═══════════════════════════════════════════════════════════════════════

    def start(self, selections: Selections) -> OperationResult:
        """Resolve the cascade as far as selections go; stop at the CAPTCHA."""
        if self.status != S.IDLE:
            return self._result(False, f"Cannot start a search while session is {self.status.value}")
        try:
            selections.validate()
        except CascadeOrderError as e:
            return self._result(False, str(e))

        self.selections = replace(selections, year=selections.year or Config.DEFAULT_YEAR)
        self.logger.info(f"🚀 Search: {self.selections.get_summary()}")
        self._record_history('create_session', self.session_id, self.selections)

        result = self._result(True, '')
        try:
            self._ensure_form_ready()

            for level in CASCADE_LEVELS:
                candidate = self.selections.value_for(level)
                options, selected = self.resolver.resolve(level, candidate)
                result.set_options(options)

                if not candidate:
                    result.message = f"Select a {level}"
                    return result
                if not selected.found:
                    result.success = False
                    result.unresolved_level = level
                    result.message = f"{level.capitalize()} '{candidate}' not found on portal"
                    self.last_message = result.message
                    return result
                result.selected[level] = selected

            if not self.selections.property_id:
                result.message = 'Village selected. Enter a property number to search.'
                return result

            self._fill_property_id()
            self.captcha.acquire_challenge()
            self._transition(S.AWAITING_CAPTCHA)
            result.status = self.status
            result.success = False
            result.captcha_required = True
            result.message = 'Please enter the CAPTCHA to continue'
            self.last_message = result.message
            return result

        except SessionCancelled:
            return self._result(False, 'Session cancelled')
        except SessionLost as e:
            self._fail(str(e))
            return self._result(False, str(e))
        except Exception as e:
            self.logger.error(f"❌ Start failed: {e}")
            self._diagnostic('start-error')
            self.form_ready = False
            return self._result(False, f"Automation error: {e}")

    def _ensure_form_ready(self):
        """Open the portal, dismiss the popup, switch to 'Rest of Maharashtra'"""
        self.browser.launch()
        if self.form_ready:
            return
        selectors = Config.SELECTORS

        self.logger.info(f"🌐 Opening {Config.BASE_URL}")
        self.browser.navigate(Config.BASE_URL, wait_until='networkidle', timeout=Config.PAGE_LOAD_TIMEOUT)

        if self.browser.wait_for_selector(selectors['popup_close'], Config.POPUP_TIMEOUT):
            self.browser.click(selectors['popup_close'])
            self.clock.sleep(Config.POPUP_SETTLE)
        else:
            self.logger.info("No start-up popup")

        if not self.browser.wait_for_selector(selectors['search_mode'], Config.SEARCH_MODE_TIMEOUT):
            raise IGRError('Search mode button not found')
        self.browser.click(selectors['search_mode'])

        if not self.browser.wait_for_selector(selectors['year'], Config.FORM_TIMEOUT):
            raise IGRError('Search form did not appear')
        self.clock.sleep(Config.FORM_SETTLE)
        self.form_ready = True

    def _fill_property_id(self):
        filled = self.browser.evaluate(
            js.FILL_INPUT, [Config.SELECTORS['property_id'], self.selections.property_id]
        )
        if not filled:
            raise IGRError('Property number input not found')
        self.logger.info(f"🏠 Property number: {self.selections.property_id}")

    # ═══════════════════════════════════════════════════════════════════════
    # CAPTCHA
    # ═══════════════════════════════════════════════════════════════════════

    def submit_captcha(self, value: str) -> OperationResult:
        """Submit the operator's answer; on acceptance run the capture loop"""
        if self.status != S.AWAITING_CAPTCHA:
            return self._result(False, f"No CAPTCHA pending (session is {self.status.value})")
        value = (value or '').strip()
        if not value:
            return self._result(False, 'Please enter the CAPTCHA', captcha_required=True)

        self.captcha_attempts += 1
        try:
            outcome = self.captcha.submit(value)
            if outcome == CaptchaOutcome.REJECTED:
                self.captcha.acquire_challenge()
                self._transition(S.AWAITING_CAPTCHA)
                return self._result(False, 'Invalid CAPTCHA. Please try again.', captcha_required=True)

            self._transition(S.EXTRACTING)
            report = self.capture.extract(self.selections.village)
            return self._finish_extraction(report)

        except SessionCancelled:
            return self._result(False, 'Session cancelled')
        except SessionLost as e:
            self._fail(str(e))
            return self._result(False, str(e))
        except Exception as e:
            self.logger.error(f"❌ CAPTCHA round failed: {e}")
            self._diagnostic('captcha-error')
            if self.status == S.EXTRACTING:
                self._fail(f"Extraction error: {e}")
                return self._result(False, f"Extraction error: {e}")
            return self._result(False, f"Error: {e}", captcha_required=True)

    def _finish_extraction(self, report: ExtractionReport) -> OperationResult:
        self.last_report = report
        self.captcha.discard()
        for capture in report.captures:
            self._record_history('record_capture', self.session_id, capture)

        total = len(report.index_buttons)
        saved = report.saved_count()
        self._record_history('update_session_status', self.session_id, self.status.value,
                             total_records=total, saved_records=saved)

        if total == 0:
            self._transition(S.COMPLETED)
            return self._result(True, 'No records found for this property', property_data=report)
        if report.view_lost:
            self._fail(report.reason)
            return self._result(saved > 0, report.reason, property_data=report)
        if saved == 0:
            self._fail(report.reason)
            return self._result(False, report.reason, property_data=report)

        self._transition(S.COMPLETED)
        return self._result(True, f"Property search completed: saved {saved} of {total} documents",
                            property_data=report)

    # ═══════════════════════════════════════════════════════════════════════
    # CANCEL
    # ═══════════════════════════════════════════════════════════════════════

    def cancel(self) -> OperationResult:
        """Close the browser and end the session. Safe to call repeatedly."""
        self.cancel_event.set()
        if self.status == S.CLOSED:
            return self._result(True, 'Session already closed')
        try:
            self.browser.close()
        except Exception as e:
            self.logger.warning(f"Browser close error: {e}")
        self.captcha.discard()
        self._transition(S.CLOSED)
        return self._result(True, 'Browser closed successfully')

    # ═══════════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def _diagnostic(self, name: str):
        """Full-page screenshot for offline debugging; failures only logged"""
        try:
            if not self.browser.is_connected():
                return
            path = self.documents.diagnostic_path(f'{name}-{self.session_id}')
            self.browser.screenshot(path=str(path), full_page=True)
            self.logger.info(f"📸 Diagnostic saved: {path}")
        except Exception as e:
            self.logger.warning(f"Diagnostic screenshot failed: {e}")

    def _record_history(self, method: str, *args, **kwargs):
        if self.history is None:
            return
        try:
            getattr(self.history, method)(*args, **kwargs)
        except (sqlite3.Error, OSError) as e:
            self.logger.warning(f"History write failed ({method}): {e}")

    def snapshot(self) -> Dict[str, Any]:
        challenge = self.captcha.current
        return {
            'sessionId': self.session_id,
            'status': self.status.value,
            'selections': self.selections.to_dict(),
            'createdAt': self.created_at,
            'ageSeconds': round(self.clock.timestamp() - self.created_at, 1),
            'captchaPending': self.status == S.AWAITING_CAPTCHA,
            'captchaAttempts': self.captcha_attempts,
            'captcha': challenge.to_dict() if challenge else None,
            'lastMessage': self.last_message,
        }
