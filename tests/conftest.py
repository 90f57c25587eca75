"""
Shared fixtures: a scripted stand-in for the IGR portal behind the
BrowserHandle interface, and a virtual clock so no test sleeps for real.
"""

from pathlib import Path

import pytest

import portal_scripts as js
from artifact_store import ArtifactLog, DocumentStore
from browser_handle import NewPageChannel
from capture_history import CaptureHistory
from igr_config import Config
from igr_errors import SessionLost
from retry_policy import Clock
from search_session import SearchSession

SEL = Config.SELECTORS
PORTAL_URL = Config.BASE_URL

YEARS = [('---Select---', '---Select Year---'), ('2024', '2024'), ('2025', '2025')]
DISTRICTS = [
    ('---Select District---', '---Select District---'),
    ('Pune', 'Pune'),
    ('Thane', 'Thane'),
    ('Satara ', 'Satara'),
]
TALUKAS = {
    'Pune': [('Haveli', 'Haveli'), ('Mulshi', 'Mulshi')],
    'Thane': [('Bhiwandi', 'Bhiwandi')],
    'Satara': [],
}
VILLAGES = {
    'Haveli': [('Ambegaon', 'Ambegaon'), ('Ambegaon ', 'Ambegaon'), ('Wagholi', 'Wagholi')],
    'Mulshi': [('Paud', 'Paud')],
    'Bhiwandi': [('Kalher', 'Kalher')],
}
PLACEHOLDERS = {
    SEL['district']: ('---Select District---', '---Select District---'),
    SEL['taluka']: ('---Select Tahsil----', '---Select Tahsil----'),
    SEL['village']: ('---Select Village----', '---Select Village----'),
}


class FakeClock(Clock):
    """Virtual time: sleep() advances the clock instantly"""

    def __init__(self, epoch: float = 1_700_000_000.0):
        super().__init__()
        self._now = 0.0
        self._epoch = epoch
        self.sleeps = []
        self.on_sleep = []

    def now(self) -> float:
        return self._now

    def timestamp(self) -> float:
        return self._epoch + self._now

    def sleep(self, seconds: float):
        self.check_cancelled()
        self.sleeps.append(seconds)
        self._now += max(seconds, 0)
        for hook in list(self.on_sleep):
            hook(self)
        self.check_cancelled()


class FakeSelect:
    def __init__(self, options, sticky: bool = True, slow_reads: int = 0, force_sticks: bool = True):
        self.options = [{'value': v, 'text': t} for v, t in options]
        self.selected = 0
        self.sticky = sticky
        self.force_sticks = force_sticks
        self.slow_reads = slow_reads
        self.disabled = False

    def snapshot(self):
        if self.slow_reads > 0:
            self.slow_reads -= 1
            return {'disabled': True, 'options': []}
        return {
            'disabled': self.disabled,
            'options': [dict(o, index=i) for i, o in enumerate(self.options)],
        }

    def selected_option(self):
        if self.selected < 0 or self.selected >= len(self.options):
            return None
        return dict(self.options[self.selected], index=self.selected)


class FakePage:
    def __init__(self, url: str):
        self.url = url
        self.closed = False


class FakeBrowser:
    """
    Scripted IGR portal behind the BrowserHandle interface.

    Records are dicts: {'row', 'mode', 'fail_render', 'back_broken'} where
    mode is 'tab' (opens a new page), 'two_tabs' (document tab plus a
    disclaimer popup), 'in_place' (main view navigates) or
    'none' (click does nothing).
    """

    def __init__(self):
        self.connected = True
        self.launched = False
        self.closed = False
        self.new_pages = NewPageChannel()
        self.opened_pages = []
        self.url = PORTAL_URL
        self.calls = []

        self.selects = {
            SEL['year']: FakeSelect(YEARS),
            SEL['district']: FakeSelect([PLACEHOLDERS[SEL['district']]]),
            SEL['taluka']: FakeSelect([PLACEHOLDERS[SEL['taluka']]]),
            SEL['village']: FakeSelect([PLACEHOLDERS[SEL['village']]]),
        }
        self.inputs = {}
        self.hidden = set()

        self.captcha_answer = 'AB12C'
        self.captcha_src = '/Handler.ashx?txt=Q9XZ'
        self.fetch_fails = False
        self.fetches = []
        self.fetch_count = 0
        self.screenshot_count = 0
        self.silent_after_submit = False

        self.error_text = None
        self.results_present = False
        self.on_results = False
        self.records = []
        self.action_polls_needed = 0
        self.action_polls = 0
        self.active_record = None
        self.back_stack = []
        self.pdfs = []
        self.screenshots = []

        self._scripts = {
            js.READ_OPTIONS: self._read_options,
            js.READ_SELECTED: self._read_selected,
            js.APPLY_SELECTION: self._apply_selection,
            js.FORCE_INDEX: self._force_index,
            js.FILL_INPUT: self._fill_input,
            js.CLICK_FIRST: self._click_first,
            js.IMAGE_SOURCE: lambda selector: self.captcha_src,
            js.ELEMENT_TEXT: self._element_text,
            js.RESULTS_PRESENT: lambda arg: self.results_present,
            js.LIST_RECORD_ACTIONS: self._list_actions,
            js.CLICK_RECORD_ACTION: self._click_action,
            js.COUNT_ELEMENTS: lambda selector: len(self.records) if self.on_results else 0,
        }

    # ── scripting helpers ──────────────────────────────────────────────────

    def add_records(self, *modes, fail_render=(), back_broken=()):
        for number, mode in enumerate(modes, start=1):
            self.records.append({
                'row': f'{100 + number} | 2025 | Sale Deed',
                'mode': mode,
                'fail_render': number in fail_render,
                'back_broken': number in back_broken,
            })

    def show_results(self):
        self.error_text = ''
        self.results_present = True
        self.on_results = True

    def disconnect(self):
        self.connected = False

    # ── BrowserHandle interface ────────────────────────────────────────────

    def _check(self):
        if not self.connected or self.closed:
            raise SessionLost()

    def launch(self):
        self.launched = True

    def close(self):
        self.closed = True
        self.connected = False

    def is_connected(self):
        return self.connected and not self.closed

    def ensure_connected(self):
        self._check()

    def navigate(self, url, wait_until='networkidle', timeout=None):
        self._check()
        self.calls.append(('navigate', url))
        self.url = url

    def wait_for_selector(self, selector, timeout, state='visible'):
        self._check()
        return selector not in self.hidden

    def click(self, selector, timeout=None):
        self._check()
        self.calls.append(('click', selector))

    def evaluate(self, script, arg=None):
        self._check()
        return self._scripts[script](arg)

    def current_url(self):
        self._check()
        return self.url

    def content(self):
        self._check()
        rows = ''.join(
            f"<tr><td>{r['row'].split(' | ')[0]}</td><td>2025</td><td>Sale Deed</td>"
            f"<td><input type='button' value='IndexII'></td></tr>"
            for r in self.records
        )
        return (
            "<html><body><table id='gvDocDetails'>"
            "<tr><th>Doc No</th><th>Year</th><th>Type</th><th></th></tr>"
            f"{rows}</table></body></html>"
        )

    def go_back(self, timeout=None):
        self._check()
        self.calls.append(('go_back', self.url))
        if not self.back_stack:
            return False
        record = self.records[self.active_record] if self.active_record is not None else None
        if record and record['back_broken']:
            return False
        self.url = self.back_stack.pop()
        self.on_results = True
        return True

    def pump(self, seconds):
        self._check()

    def screenshot(self, path=None, full_page=True):
        self._check()
        data = b'\x89PNG page'
        if path:
            Path(path).write_bytes(data)
            self.screenshots.append(path)
        return data

    def element_screenshot(self, selector):
        self._check()
        self.screenshot_count += 1
        return f'element-shot-{self.screenshot_count}'.encode()

    def fetch_in_new_page(self, url, timeout):
        self._check()
        self.fetches.append(url)
        if self.fetch_fails:
            raise RuntimeError('net::ERR_CONNECTION_RESET')
        self.fetch_count += 1
        return f'captcha-image-{self.fetch_count}'.encode()

    def page_url(self, page=None):
        self._check()
        return page.url if page is not None else self.url

    def wait_for_page_load(self, page, timeout):
        self._check()
        return True

    def render_pdf(self, path, page=None):
        self._check()
        record = self.records[self.active_record]
        if record['fail_render']:
            raise RuntimeError('PDF render failed')
        Path(path).write_bytes(b'%PDF-1.4 fake')
        self.pdfs.append((path, page))

    def close_page(self, page):
        if page is not None:
            page.closed = True

    # ── in-page script handlers ────────────────────────────────────────────

    def _read_options(self, selector):
        select = self.selects.get(selector)
        return select.snapshot() if select else None

    def _read_selected(self, selector):
        select = self.selects.get(selector)
        return select.selected_option() if select else None

    def _apply_selection(self, arg):
        selector, value = arg
        select = self.selects[selector]
        if select.sticky:
            matches = [i for i, o in enumerate(select.options) if o['value'] == value]
            select.selected = matches[0] if matches else -1
            self._on_change(selector)
        option = select.selected_option()
        return option['value'] if option else ''

    def _force_index(self, arg):
        selector, index = arg
        select = self.selects[selector]
        if select.force_sticks:
            select.selected = index
            self._on_change(selector)
        option = select.selected_option()
        return option['value'] if option else ''

    def _on_change(self, selector):
        option = self.selects[selector].selected_option()
        value = option['value'].strip() if option else ''
        if selector == SEL['year']:
            self._populate(SEL['district'], DISTRICTS[1:])
            self._populate(SEL['taluka'], [])
            self._populate(SEL['village'], [])
        elif selector == SEL['district']:
            self._populate(SEL['taluka'], TALUKAS.get(value, []))
            self._populate(SEL['village'], [])
        elif selector == SEL['taluka']:
            self._populate(SEL['village'], VILLAGES.get(value, []))

    def _populate(self, selector, options):
        select = self.selects[selector]
        select.options = [{'value': v, 'text': t} for v, t in [PLACEHOLDERS[selector]] + list(options)]
        select.selected = 0

    def _fill_input(self, arg):
        selector, value = arg
        if selector not in (SEL['property_id'], SEL['captcha_input']):
            return False
        self.inputs[selector] = value
        return True

    def _click_first(self, selectors):
        if self.silent_after_submit:
            self.error_text = None
            self.results_present = False
        elif self.inputs.get(SEL['captcha_input']) == self.captcha_answer:
            self.show_results()
        else:
            self.error_text = 'Invalid Captcha. Please enter valid captcha'
            self.results_present = False
        return selectors[0]

    def _element_text(self, selector):
        if selector == SEL['captcha_error']:
            return self.error_text
        return None

    def _list_actions(self, selector):
        if not self.on_results:
            return []
        if self.action_polls < self.action_polls_needed:
            self.action_polls += 1
            return []
        return [{'index': i, 'rowText': r['row']} for i, r in enumerate(self.records)]

    def _open_page(self, url):
        page = FakePage(url)
        self.opened_pages.append(page)
        self.new_pages.publish(page)
        return page

    def _click_action(self, arg):
        selector, index = arg
        if not self.on_results or index >= len(self.records):
            return False
        self.active_record = index
        record = self.records[index]
        document_url = f'{PORTAL_URL}IndexII.aspx?doc={index + 1}'
        if record['mode'] in ('tab', 'two_tabs'):
            self._open_page(document_url)
            if record['mode'] == 'two_tabs':
                self._open_page(f'{PORTAL_URL}Disclaimer.aspx')
        elif record['mode'] == 'in_place':
            self.back_stack.append(self.url)
            self.url = document_url
            self.on_results = False
        return True


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def documents(tmp_path):
    return DocumentStore(tmp_path / 'documents', tmp_path / 'diagnostics')


@pytest.fixture
def artifact_log(tmp_path):
    return ArtifactLog(tmp_path / 'data.json')


@pytest.fixture
def history(tmp_path):
    return CaptureHistory(tmp_path / 'history.db')


@pytest.fixture
def make_session(tmp_path, documents, artifact_log, history):
    """Build a SearchSession over a FakeBrowser and FakeClock"""
    def build(session_id='s1', browser=None, clock=None):
        return SearchSession(
            session_id,
            browser or FakeBrowser(),
            clock=clock or FakeClock(),
            documents=documents,
            artifact_log=artifact_log,
            history=history,
            captcha_path=tmp_path / 'captcha' / f'captcha-{session_id}.png',
        )
    return build
