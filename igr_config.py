#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Configuration                                   ║
║                  Portal selectors, timeouts, paths, logging                  ║
╚══════════════════════════════════════════════════════════════════════════════╝

Every constant can be overridden with an environment variable named
IGR_<CONSTANT>, e.g. IGR_HEADLESS=1 or IGR_MAX_SESSIONS=2.

Author: POWER-IGR Team
Version: 1.0.0
"""

import os
import logging
from pathlib import Path


def _env(name: str, default):
    """Read IGR_<name> and coerce it to the type of the default"""
    raw = os.environ.get(f'IGR_{name}')
    if raw is None:
        return default
    if isinstance(default, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


# ═══════════════════════════════════════════════════════════════════════════════════════
# CONFIG
# ═══════════════════════════════════════════════════════════════════════════════════════

class Config:
    # Server
    HOST = _env('HOST', '0.0.0.0')
    PORT = _env('PORT', 3000)
    DEBUG = _env('DEBUG', False)

    # Sessions
    MAX_SESSIONS = _env('MAX_SESSIONS', 4)
    COMMAND_TIMEOUT = _env('COMMAND_TIMEOUT', 600.0)  # whole start/submit round
    CANCEL_JOIN_TIMEOUT = _env('CANCEL_JOIN_TIMEOUT', 45.0)
    SESSION_IDLE_TIMEOUT = _env('SESSION_IDLE_TIMEOUT', 900.0)  # untouched IDLE/AWAITING_CAPTCHA session is reaped

    # Browser
    HEADLESS = _env('HEADLESS', True)  # page.pdf() needs headless Chromium
    SLOW_MO_MS = _env('SLOW_MO_MS', 50)
    DEFAULT_TIMEOUT_MS = _env('DEFAULT_TIMEOUT_MS', 20000)

    # Portal
    BASE_URL = _env('BASE_URL', 'https://freesearchigrservice.maharashtra.gov.in/')
    CAPTCHA_HANDLER_PATH = 'Handler.ashx?txt='
    DEFAULT_YEAR = _env('DEFAULT_YEAR', '2025')

    # Timeouts (seconds)
    PAGE_LOAD_TIMEOUT = _env('PAGE_LOAD_TIMEOUT', 60.0)
    POPUP_TIMEOUT = 5.0
    POPUP_SETTLE = 2.0
    SEARCH_MODE_TIMEOUT = 10.0
    FORM_TIMEOUT = 30.0
    FORM_SETTLE = 3.0
    DROPDOWN_TIMEOUT = _env('DROPDOWN_TIMEOUT', 15.0)
    DROPDOWN_POLL_INTERVAL = 0.5
    DROPDOWN_SETTLE = _env('DROPDOWN_SETTLE', 3.0)
    VILLAGE_SETTLE = _env('VILLAGE_SETTLE', 5.0)
    SELECTION_VERIFY_SETTLE = 1.0
    CAPTCHA_VISIBLE_TIMEOUT = 15.0
    CAPTCHA_FETCH_TIMEOUT = 10.0
    CAPTCHA_SETTLE = _env('CAPTCHA_SETTLE', 5.0)
    RESULTS_SETTLE = _env('RESULTS_SETTLE', 10.0)
    RESULT_POLL_ATTEMPTS = _env('RESULT_POLL_ATTEMPTS', 3)
    RESULT_POLL_BACKOFF = _env('RESULT_POLL_BACKOFF', 15.0)
    DOCUMENT_WAIT_TIMEOUT = _env('DOCUMENT_WAIT_TIMEOUT', 20.0)
    DOCUMENT_POLL_INTERVAL = 0.5
    DOCUMENT_SETTLE = 2.0
    PRE_RENDER_SETTLE = 5.0
    BACK_NAV_SETTLE = 5.0
    BETWEEN_RECORDS_PAUSE = _env('BETWEEN_RECORDS_PAUSE', 5.0)

    # Paths
    DATA_DIR = Path(_env('DATA_DIR', 'igr_data'))
    DOCUMENTS_DIR = DATA_DIR / 'documents'
    CAPTCHA_DIR = DATA_DIR / 'captcha'
    DIAGNOSTICS_DIR = DATA_DIR / 'diagnostics'
    ARTIFACT_LOG = DATA_DIR / 'data.json'
    DB_PATH = DATA_DIR / 'igr_captures.db'

    # Portal health
    HEALTH_CHECK_INTERVAL = _env('HEALTH_CHECK_INTERVAL', 30.0)

    # Element selectors (IGR free search portal)
    SELECTORS = {
        'popup_close': '#popup .btnclose.btn.btn-danger',
        'search_mode': '#btnOtherdistrictSearch',
        'year': '#ddlFromYear1',
        'district': '#ddlDistrict1',
        'taluka': '#ddltahsil',
        'village': '#ddlvillage',
        'property_id': '#txtAttributeValue1',
        'captcha_image': '#imgCaptcha_new',
        'captcha_input': '#txtImg1',
        'captcha_error': '.error-message, #lblError',
        'record_action': 'input[type="button"][value="IndexII"]',
    }

    SEARCH_BUTTONS = [
        '#btnSearch_RestMaha',
        '#btnSearch',
        'input[type="button"][value="Search"]',
        'button[type="submit"]',
        'input[type="submit"]',
    ]

    RESULTS_TABLES = ['table#gvDocDetails', 'table.gridview', '.search-results']

    PDF_OPTIONS = {
        'format': 'A4',
        'print_background': True,
        'margin': {'top': '20px', 'right': '20px', 'bottom': '20px', 'left': '20px'},
    }


LOG_FORMAT = '%(asctime)s | %(levelname)-7s | %(name)-15s | %(message)s'


def setup_logging(level=logging.INFO):
    """Configure console logging once for the process"""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt='%H:%M:%S')
