#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Record Capture Loop                             ║
║                  IndexII buttons → document views → PDFs                     ║
╚══════════════════════════════════════════════════════════════════════════════╝

After the CAPTCHA is accepted the portal lists matching registrations, each
row with an "IndexII" button. Pressing it either opens a new tab with the
document or replaces the results view in place. For every button, in index
order:

  1. make sure the results view is showing (back up to twice)
  2. mark the new-page channel, click button N by index
  3. wait for a new tab with a real URL, or the main URL changing
  4. render that view to documents/<village>/document[-main]-N-<ts>.pdf
  5. close the tab, or go back
  6. record a CaptureResult whatever happened

A failed record never aborts the loop. Losing the results view does: the
remaining records are marked skipped and the report is marked failed.

Author: POWER-IGR Team
Version: 1.0.0
"""

import logging
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

import portal_scripts as js
from artifact_store import ArtifactLog, DocumentStore
from igr_config import Config
from igr_errors import SessionCancelled, SessionLost, WaitTimeout
from retry_policy import Clock, retry, wait_until
from session_models import CaptureResult, ExtractionReport, RecordAction

logger = logging.getLogger('RecordCapture')

BLANK_URL = 'about:blank'


def parse_results_table(html: str) -> List[Dict[str, str]]:
    """Rows of the first results table found, keyed by header text"""
    soup = BeautifulSoup(html or '', 'html.parser')
    table = None
    for selector in Config.RESULTS_TABLES:
        table = soup.select_one(selector)
        if table is not None:
            break
    if table is None:
        return []

    rows = table.find_all('tr')
    if not rows:
        return []

    headers = [cell.get_text(strip=True) for cell in rows[0].find_all(['th', 'td'])]
    details = []
    for row in rows[1:]:
        cells = row.find_all('td')
        if not cells:
            continue
        record = {}
        for position, cell in enumerate(cells):
            key = headers[position] if position < len(headers) and headers[position] else f'column_{position + 1}'
            record[key] = cell.get_text(strip=True)
        details.append(record)
    return details


class _DocumentWatch:
    """Where the document for one click showed up"""

    def __init__(self, mark: int, results_url: str):
        self.mark = mark
        self.results_url = results_url
        self.page: Optional[Any] = None
        self.in_place = False


class RecordCapture:
    """Extraction loop for one session's results view"""

    def __init__(
        self,
        browser,
        clock: Clock,
        documents: DocumentStore,
        artifact_log: ArtifactLog,
        log: logging.Logger = None
    ):
        self.browser = browser
        self.clock = clock
        self.documents = documents
        self.artifact_log = artifact_log
        self.logger = log or logger
        self.action_selector = Config.SELECTORS['record_action']

    # ═══════════════════════════════════════════════════════════════════════
    # MAIN LOOP
    # ═══════════════════════════════════════════════════════════════════════

    def extract(self, village: str) -> ExtractionReport:
        report = ExtractionReport()
        self.clock.sleep(Config.RESULTS_SETTLE)

        actions = self.find_actions()
        if not actions:
            self.logger.warning("⚠️  No IndexII buttons found")
            report.status = 'failed'
            report.reason = 'no actionable records found'
            self._snapshot(report, 'no_records', self.documents.diagnostic_path('no_records'))
            return report

        report.index_buttons = actions
        report.details = parse_results_table(self.browser.content())
        self._snapshot(report, 'results_table', self.documents.results_snapshot_path(village))
        results_url = self.browser.current_url()

        total = len(actions)
        for position, action in enumerate(actions):
            result = CaptureResult(record_index=action.index, source_row_description=action.row_text)
            report.captures.append(result)

            if report.view_lost:
                result.mark_skipped('results view lost')
                continue
            if not self.ensure_results_view():
                self.logger.error(f"❌ Results view lost before record {action.index + 1}/{total}")
                report.view_lost = True
                result.mark_skipped('results view lost')
                continue

            self.logger.info(f"📄 Record {action.index + 1}/{total}: {action.row_text}")
            self._capture_one(action, result, village, results_url)

            if position < total - 1:
                self.clock.sleep(Config.BETWEEN_RECORDS_PAUSE)

        if not report.view_lost and not self.ensure_results_view():
            report.view_lost = True

        saved = report.saved_count()
        if report.view_lost:
            report.status = 'failed'
            report.reason = f'results view lost after {saved} of {total} records'
        elif saved == 0:
            report.status = 'failed'
            report.reason = 'all record captures failed'
        else:
            report.status = 'completed'
        self.logger.info(f"🏁 Captured {saved}/{total} documents")
        return report

    def find_actions(self) -> List[RecordAction]:
        """Poll for IndexII buttons with bounded retries"""
        attempts = Config.RESULT_POLL_ATTEMPTS

        def attempt(number: int) -> list:
            found = self.browser.evaluate(js.LIST_RECORD_ACTIONS, self.action_selector) or []
            self.logger.info(f"🔍 {len(found)} IndexII buttons (attempt {number}/{attempts})")
            return found

        raw = retry(
            attempt,
            attempts=attempts,
            backoff=Config.RESULT_POLL_BACKOFF,
            clock=self.clock,
            what='record actions'
        )
        return [RecordAction(index=int(item.get('index', n)), row_text=item.get('rowText') or '')
                for n, item in enumerate(raw or [])]

    def ensure_results_view(self) -> bool:
        """True when the IndexII buttons are on screen, going back up to twice"""
        if self._on_results():
            return True
        for attempt in (1, 2):
            self.logger.info(f"↩️  Navigating back to results (attempt {attempt})")
            self.browser.go_back()
            self.clock.sleep(Config.BACK_NAV_SETTLE)
            if self._on_results():
                return True
        return False

    def _on_results(self) -> bool:
        return bool(self.browser.evaluate(js.COUNT_ELEMENTS, self.action_selector))

    # ═══════════════════════════════════════════════════════════════════════
    # ONE RECORD
    # ═══════════════════════════════════════════════════════════════════════

    def _capture_one(self, action: RecordAction, result: CaptureResult, village: str, results_url: str):
        self._close_strays(self.browser.new_pages.drain())
        watch = _DocumentWatch(self.browser.new_pages.mark(), results_url)
        try:
            clicked = self.browser.evaluate(js.CLICK_RECORD_ACTION, [self.action_selector, action.index])
            if not clicked:
                result.mark_failed('record action not found')
                return

            self._await_document(watch)
            if watch.page is not None:
                self.browser.wait_for_page_load(watch.page, Config.DOCUMENT_WAIT_TIMEOUT)
                self.clock.sleep(Config.DOCUMENT_SETTLE)
            self.clock.sleep(Config.PRE_RENDER_SETTLE)

            path = self.documents.document_path(village, action.index + 1, in_place=watch.in_place)
            self.browser.render_pdf(str(path), page=watch.page)
            document_url = self.browser.page_url(watch.page)
            result.mark_saved(str(path), document_url)
            self.logger.info(f"✅ Saved {path}")
            self.artifact_log.append(document_url)

        except (SessionLost, SessionCancelled):
            raise
        except WaitTimeout:
            result.mark_failed(f'no document view within {Config.DOCUMENT_WAIT_TIMEOUT:.0f}s')
            self.logger.warning(f"⚠️  Record {action.index + 1}: no document view appeared")
        except Exception as e:
            result.mark_failed(str(e))
            self.logger.error(f"❌ Record {action.index + 1} failed: {e}")
        finally:
            self._leave_document(watch)

    def _await_document(self, watch: _DocumentWatch):
        """Block until a new tab with a real URL appears or the main view navigates"""
        def document_ready():
            self.browser.pump(0)
            if watch.page is None:
                watch.page = self.browser.new_pages.take_after(watch.mark)
            if watch.page is not None:
                url = self.browser.page_url(watch.page)
                return bool(url) and url not in (BLANK_URL, watch.results_url)
            if self.browser.current_url() != watch.results_url:
                watch.in_place = True
                return True
            return False

        wait_until(
            document_ready,
            timeout=Config.DOCUMENT_WAIT_TIMEOUT,
            interval=Config.DOCUMENT_POLL_INTERVAL,
            clock=self.clock,
            what='document view'
        )

    def _leave_document(self, watch: _DocumentWatch):
        try:
            if watch.page is not None:
                self.browser.close_page(watch.page)
            elif watch.in_place:
                self.browser.go_back()
                self.clock.sleep(Config.BACK_NAV_SETTLE)
            self._close_strays(self.browser.new_pages.take_all_after(watch.mark))
        except (SessionLost, SessionCancelled):
            raise
        except Exception as e:
            self.logger.warning(f"Could not leave document view: {e}")

    def _close_strays(self, pages: list):
        """Close pages nobody is waiting for: extra popups and tabs that opened late"""
        for page in pages:
            self.logger.info(f"🗙 Closing stray page {self.browser.page_url(page)}")
            self.browser.close_page(page)

    def _snapshot(self, report: ExtractionReport, kind: str, path):
        try:
            self.browser.screenshot(path=str(path), full_page=True)
            report.screenshots.append({'path': str(path), 'type': kind})
        except SessionLost:
            raise
        except Exception as e:
            self.logger.warning(f"Snapshot '{kind}' failed: {e}")
