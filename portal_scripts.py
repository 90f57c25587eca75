#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - In-Page Scripts                                 ║
╚══════════════════════════════════════════════════════════════════════════════╝

JavaScript evaluated in the portal page through BrowserHandle.evaluate().
Each takes a single argument (selector, or a [selector, value] pair).

The portal's cascading dropdowns are wired with ASP.NET postbacks and jQuery
handlers, so a plain `value =` is not enough: every write dispatches
focus/change/blur and triggers jQuery's change as well.

Author: POWER-IGR Team
Version: 1.0.0
"""

READ_OPTIONS = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    return {
        disabled: !!el.disabled,
        options: Array.from(el.options).map((o, i) => ({value: o.value, text: o.text, index: i}))
    };
}
"""

READ_SELECTED = """
(selector) => {
    const el = document.querySelector(selector);
    if (!el || el.selectedIndex < 0) return null;
    const o = el.options[el.selectedIndex];
    return {value: o.value, text: o.text, index: el.selectedIndex};
}
"""

APPLY_SELECTION = """
([selector, value]) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    el.dispatchEvent(new Event('focus', {bubbles: true}));
    el.value = value;
    el.dispatchEvent(new Event('change', {bubbles: true}));
    el.dispatchEvent(new Event('blur', {bubbles: true}));
    if (window.jQuery) { window.jQuery(el).trigger('change'); }
    return el.value;
}
"""

FORCE_INDEX = """
([selector, index]) => {
    const el = document.querySelector(selector);
    if (!el) return null;
    el.selectedIndex = index;
    el.dispatchEvent(new Event('change', {bubbles: true}));
    if (window.jQuery) { window.jQuery(el).trigger('change'); }
    return el.value;
}
"""

FILL_INPUT = """
([selector, value]) => {
    const el = document.querySelector(selector);
    if (!el) return false;
    el.focus();
    el.value = value;
    el.dispatchEvent(new Event('input', {bubbles: true}));
    el.dispatchEvent(new Event('change', {bubbles: true}));
    return true;
}
"""

CLICK_FIRST = """
(selectors) => {
    for (const s of selectors) {
        const el = document.querySelector(s);
        if (el) { el.click(); return s; }
    }
    return null;
}
"""

IMAGE_SOURCE = """
(selector) => {
    const img = document.querySelector(selector);
    return img ? (img.getAttribute('src') || '') : null;
}
"""

ELEMENT_TEXT = """
(selector) => {
    const el = document.querySelector(selector);
    return el ? (el.textContent || '').trim() : null;
}
"""

RESULTS_PRESENT = """
([tables, action]) => tables.some(s => !!document.querySelector(s)) || !!document.querySelector(action)
"""

LIST_RECORD_ACTIONS = """
(selector) => Array.from(document.querySelectorAll(selector)).map((button, index) => {
    const row = button.closest('tr');
    const cells = row ? Array.from(row.querySelectorAll('td')).slice(0, 3) : [];
    return {index: index, rowText: cells.map(td => td.textContent.trim()).join(' | ')};
})
"""

CLICK_RECORD_ACTION = """
([selector, index]) => {
    const buttons = document.querySelectorAll(selector);
    if (index >= buttons.length) return false;
    buttons[index].scrollIntoView();
    buttons[index].click();
    return true;
}
"""

COUNT_ELEMENTS = """
(selector) => document.querySelectorAll(selector).length
"""
