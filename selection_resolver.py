#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Selection Resolver                              ║
║                  One cascading-dropdown step: wait, read, select, verify     ║
╚══════════════════════════════════════════════════════════════════════════════╝

The portal's option values are not clean: the same village may appear as
"Ambivali" and "Ambivali " and labels drift from values. Matching therefore
walks an explicit, ordered strategy list:

    EXACT → PADDED (value + ' ') → TRIMMED → LABEL (case-insensitive)
          → SUBSTRING (either direction) → FALLBACK_FIRST

and reports which one won in SelectedOption.method. No match at all comes
back as SelectionMethod.NOT_FOUND, never as an exception.

Author: POWER-IGR Team
Version: 1.0.0
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple, Any

import portal_scripts as js
from igr_config import Config
from igr_errors import WaitTimeout, CascadeOrderError
from retry_policy import Clock, wait_until
from session_models import (
    OptionSet, SelectedOption, SelectionMethod, is_placeholder
)

logger = logging.getLogger('SelectionResolver')

PARENT_LEVEL = {'district': 'year', 'taluka': 'district', 'village': 'taluka'}


# ═══════════════════════════════════════════════════════════════════════════════════════
# MATCHING STRATEGIES
# ═══════════════════════════════════════════════════════════════════════════════════════

def _exact(option: Dict[str, Any], candidate: str) -> bool:
    return option['value'] == candidate


def _padded(option: Dict[str, Any], candidate: str) -> bool:
    return option['value'] == candidate + ' '


def _trimmed(option: Dict[str, Any], candidate: str) -> bool:
    return option['value'].strip() == candidate.strip()


def _label(option: Dict[str, Any], candidate: str) -> bool:
    return option['text'].strip().lower() == candidate.strip().lower()


def _substring(option: Dict[str, Any], candidate: str) -> bool:
    wanted = candidate.strip().lower()
    label = option['text'].strip().lower()
    if not wanted or not label:
        return False
    return wanted in label or label in wanted


MATCH_STRATEGIES: List[Tuple[SelectionMethod, Callable[[Dict[str, Any], str], bool]]] = [
    (SelectionMethod.EXACT, _exact),
    (SelectionMethod.PADDED, _padded),
    (SelectionMethod.TRIMMED, _trimmed),
    (SelectionMethod.LABEL, _label),
    (SelectionMethod.SUBSTRING, _substring),
]


def _normalize(raw_options: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    normalized = []
    for position, raw in enumerate(raw_options or []):
        normalized.append({
            'value': raw.get('value') or '',
            'text': raw.get('text') or '',
            'index': int(raw.get('index', position)),
        })
    return normalized


def match_option(
    raw_options: List[Dict[str, Any]],
    candidate: str
) -> Tuple[Optional[Dict[str, Any]], SelectionMethod]:
    """
    Pick the option to select for candidate.

    raw_options are the control's options as read from the page (raw values,
    placeholders included). Returns (option, method); option is None only
    with SelectionMethod.NOT_FOUND.
    """
    options = [o for o in _normalize(raw_options) if not is_placeholder(o['value'], o['text'])]
    for method, matches in MATCH_STRATEGIES:
        for option in options:
            if matches(option, candidate):
                return option, method
    if options:
        return options[0], SelectionMethod.FALLBACK_FIRST
    return None, SelectionMethod.NOT_FOUND


# ═══════════════════════════════════════════════════════════════════════════════════════
# RESOLVER
# ═══════════════════════════════════════════════════════════════════════════════════════

class SelectionResolver:
    """Drives one dropdown of the cascade on a BrowserHandle"""

    def __init__(self, browser, clock: Clock, log: logging.Logger = None):
        self.browser = browser
        self.clock = clock
        self.logger = log or logger

    def resolve(self, level: str, candidate: str = '') -> Tuple[OptionSet, SelectedOption]:
        """
        Wait for `level` to populate, read its options and, when candidate is
        given, select the best match.

        An empty OptionSet after the wait is "no data for this parent" and is
        returned as such. An empty candidate only enumerates.
        """
        selector = Config.SELECTORS[level]
        self._check_parent(level)

        self._wait_populated(level, selector)
        self.clock.sleep(Config.VILLAGE_SETTLE if level == 'village' else Config.DROPDOWN_SETTLE)

        snapshot = self._read(selector)
        raw_options = snapshot['options'] if snapshot else []
        options = OptionSet.from_raw(level, raw_options)
        self.logger.info(f"📋 {level}: {len(options)} options")

        if not candidate:
            return options, SelectedOption(method=SelectionMethod.NONE)

        option, method = match_option(raw_options, candidate)
        if option is None:
            self.logger.warning(f"❌ {level}: no option for '{candidate}'")
            return options, SelectedOption(method=SelectionMethod.NOT_FOUND, value=candidate)

        if method != SelectionMethod.EXACT:
            self.logger.warning(
                f"⚠️  {level}: '{candidate}' matched '{option['value']}' via {method.value}"
            )
        return options, self._apply(level, selector, option, method)

    def read_selected(self, level: str) -> Optional[Dict[str, Any]]:
        """Currently selected {value, text, index} of a control, or None"""
        return self.browser.evaluate(js.READ_SELECTED, Config.SELECTORS[level])

    def _check_parent(self, level: str):
        parent = PARENT_LEVEL.get(level)
        if not parent:
            return
        current = self.read_selected(parent)
        if not current or is_placeholder(current.get('value', ''), current.get('text', '')):
            raise CascadeOrderError(f"Cannot resolve {level} before {parent} is selected")

    def _read(self, selector: str) -> Optional[Dict[str, Any]]:
        return self.browser.evaluate(js.READ_OPTIONS, selector)

    def _wait_populated(self, level: str, selector: str) -> bool:
        def populated():
            snapshot = self._read(selector)
            if not snapshot or snapshot.get('disabled'):
                return None
            real = [o for o in snapshot.get('options', [])
                    if not is_placeholder(o.get('value', ''), o.get('text', ''))]
            return snapshot if real else None

        try:
            wait_until(
                populated,
                timeout=Config.DROPDOWN_TIMEOUT,
                interval=Config.DROPDOWN_POLL_INTERVAL,
                clock=self.clock,
                what=f'{level} options'
            )
            return True
        except WaitTimeout:
            self.logger.info(f"{level}: still empty after {Config.DROPDOWN_TIMEOUT:.0f}s")
            return False

    def _apply(
        self,
        level: str,
        selector: str,
        option: Dict[str, Any],
        method: SelectionMethod
    ) -> SelectedOption:
        self.browser.evaluate(js.APPLY_SELECTION, [selector, option['value']])
        self.clock.sleep(Config.SELECTION_VERIFY_SETTLE)

        selected = SelectedOption(
            method=method,
            value=option['value'].strip(),
            label=option['text'].strip(),
            index=option['index'],
        )
        selected.verified = self._verify(level, option)
        if selected.verified:
            self.logger.info(f"✅ {level}: {selected.label or selected.value}")
            return selected

        self.logger.warning(f"⚠️  {level}: selection did not stick, forcing index {option['index']}")
        self.browser.evaluate(js.FORCE_INDEX, [selector, option['index']])
        self.clock.sleep(Config.SELECTION_VERIFY_SETTLE)
        selected.forced = True
        selected.verified = self._verify(level, option)
        if not selected.verified:
            self.logger.warning(f"⚠️  {level}: could not verify selection of '{option['value']}'")
        return selected

    def _verify(self, level: str, option: Dict[str, Any]) -> bool:
        current = self.read_selected(level)
        if not current:
            return False
        return (current.get('value') or '').strip() == option['value'].strip()
