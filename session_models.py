#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Session Models                                  ║
║                  Dataclasses shared by the automation engine                 ║
╚══════════════════════════════════════════════════════════════════════════════╝

Purpose:
  - Selections a caller submits (year → district → taluka → village → property)
  - Option sets scraped from the portal's cascading dropdowns
  - CAPTCHA challenges, per-record capture results, artifact log entries
  - The structured outcome every session operation returns

to_dict() output uses the camelCase keys the browser clients expect.

Author: POWER-IGR Team
Version: 1.0.0
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from igr_errors import CascadeOrderError


CASCADE_LEVELS = ('year', 'district', 'taluka', 'village')


class SessionStatus(Enum):
    """Session lifecycle states"""
    IDLE = 'idle'
    AWAITING_CAPTCHA = 'awaiting_captcha'
    EXTRACTING = 'extracting'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CLOSED = 'closed'


class SelectionMethod(Enum):
    """Which matching strategy picked the option (in strategy order)"""
    EXACT = 'exact'
    PADDED = 'padded'
    TRIMMED = 'trimmed'
    LABEL = 'label'
    SUBSTRING = 'substring'
    FALLBACK_FIRST = 'fallback-first-option'
    NOT_FOUND = 'not-found'
    NONE = 'none'  # enumerate only


class CaptchaOutcome(Enum):
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    INDETERMINATE = 'indeterminate'


class CaptureStatus(Enum):
    SAVED = 'saved'
    FAILED = 'failed'
    SKIPPED = 'skipped'


def is_placeholder(value: str, label: str = '') -> bool:
    """Portal placeholders look like '---Select Tahsil----' or carry no value"""
    stripped = (value or '').strip()
    if not stripped:
        return True
    if stripped.startswith('---') or 'select' in stripped.lower():
        return True
    return (label or '').strip().startswith('---')


@dataclass
class Selections:
    """
    One search request. Empty strings mean "not chosen yet"; a request may
    stop at any level to enumerate the next dropdown.
    """
    year: str = ''
    district: str = ''
    taluka: str = ''
    village: str = ''
    property_id: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Selections':
        data = data or {}
        return cls(
            year=str(data.get('year') or '').strip(),
            district=str(data.get('district') or '').strip(),
            taluka=str(data.get('taluka') or '').strip(),
            village=str(data.get('village') or '').strip(),
            property_id=str(data.get('propertyNo') or data.get('property_id') or '').strip(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self):
        """Reject gaps in the cascade (taluka without district, etc.)"""
        chain = [
            ('district', self.district),
            ('taluka', self.taluka),
            ('village', self.village),
            ('property identifier', self.property_id),
        ]
        missing_parent = None
        for name, value in chain:
            if value and missing_parent:
                raise CascadeOrderError(f"Cannot select {name} before {missing_parent}")
            if not value and missing_parent is None:
                missing_parent = name

    def value_for(self, level: str) -> str:
        return getattr(self, level)

    def get_summary(self) -> str:
        parts = [p for p in (self.year, self.district, self.taluka, self.village) if p]
        summary = ' / '.join(parts) or '(no selections)'
        if self.property_id:
            summary += f" #{self.property_id}"
        return summary


@dataclass
class OptionItem:
    """One dropdown option. value is trimmed; raw_value is what the portal holds."""
    value: str
    label: str
    raw_value: str = ''
    index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'value': self.value, 'text': self.label}


@dataclass
class OptionSet:
    """Ordered, trimmed-unique, placeholder-free options of one control"""
    level: str
    items: List[OptionItem] = field(default_factory=list)

    @classmethod
    def from_raw(cls, level: str, raw_options: List[Dict[str, Any]]) -> 'OptionSet':
        """
        Build from [{'value', 'text', 'index'}] as read from the page.
        Later duplicates of a trimmed value are dropped, the first raw value wins.
        """
        seen = set()
        items = []
        for position, raw in enumerate(raw_options or []):
            raw_value = raw.get('value') or ''
            label = raw.get('text') or ''
            if is_placeholder(raw_value, label):
                continue
            value = raw_value.strip()
            if value in seen:
                continue
            seen.add(value)
            items.append(OptionItem(
                value=value,
                label=label.strip(),
                raw_value=raw_value,
                index=int(raw.get('index', position)),
            ))
        return cls(level=level, items=items)

    def values(self) -> List[str]:
        return [item.value for item in self.items]

    def is_empty(self) -> bool:
        return not self.items

    def __len__(self):
        return len(self.items)

    def to_list(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.items]


@dataclass
class SelectedOption:
    """Result of one resolver selection attempt"""
    method: SelectionMethod
    value: str = ''
    label: str = ''
    index: int = -1
    verified: bool = False
    forced: bool = False

    @property
    def found(self) -> bool:
        return self.method not in (SelectionMethod.NOT_FOUND, SelectionMethod.NONE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method.value,
            'value': self.value,
            'text': self.label,
            'index': self.index,
            'verified': self.verified,
            'forced': self.forced,
        }


@dataclass
class CaptchaChallenge:
    """The single current challenge of a session; each acquisition replaces it"""
    image_bytes: bytes
    acquired_at: float
    sequence: int
    source: str  # 'fetch' or 'screenshot'
    path: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'size': len(self.image_bytes),
            'acquiredAt': datetime.fromtimestamp(self.acquired_at).isoformat(),
            'sequence': self.sequence,
            'source': self.source,
            'path': self.path,
        }


@dataclass
class RecordAction:
    """A per-row 'IndexII' control found on the results view"""
    index: int
    row_text: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {'index': self.index, 'rowText': self.row_text, 'found': True}


@dataclass
class CaptureResult:
    """One per detected record action, whatever happened to it"""
    record_index: int
    source_row_description: str = ''
    output_path: str = ''
    status: CaptureStatus = CaptureStatus.SKIPPED
    reason: str = ''
    document_url: str = ''
    captured_at: float = field(default_factory=lambda: datetime.now().timestamp())

    def mark_saved(self, output_path: str, document_url: str = ''):
        self.status = CaptureStatus.SAVED
        self.output_path = output_path
        self.document_url = document_url
        self.reason = ''

    def mark_failed(self, reason: str):
        self.status = CaptureStatus.FAILED
        self.reason = reason

    def mark_skipped(self, reason: str):
        self.status = CaptureStatus.SKIPPED
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            'recordIndex': self.record_index,
            'sourceRowDescription': self.source_row_description,
            'outputPath': self.output_path,
            'status': self.status.value,
            'reason': self.reason,
            'documentUrl': self.document_url,
        }


@dataclass
class ExtractionReport:
    """Everything one extraction run produced (the 'propertyData' payload)"""
    index_buttons: List[RecordAction] = field(default_factory=list)
    details: List[Dict[str, str]] = field(default_factory=list)
    screenshots: List[Dict[str, str]] = field(default_factory=list)
    captures: List[CaptureResult] = field(default_factory=list)
    status: str = 'completed'  # completed, failed
    reason: str = ''
    view_lost: bool = False

    def saved_count(self) -> int:
        return sum(1 for c in self.captures if c.status == CaptureStatus.SAVED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'indexButtons': [b.to_dict() for b in self.index_buttons],
            'details': self.details,
            'screenshots': self.screenshots,
            'captures': [c.to_dict() for c in self.captures],
            'status': self.status,
            'reason': self.reason,
        }


@dataclass
class ArtifactLogEntry:
    identifier: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {'url': self.identifier, 'timestamp': self.timestamp}


@dataclass
class OperationResult:
    """Structured outcome of every session operation"""
    success: bool
    message: str = ''
    captcha_required: bool = False
    status: Optional[SessionStatus] = None
    years: List[OptionItem] = field(default_factory=list)
    districts: List[OptionItem] = field(default_factory=list)
    talukas: List[OptionItem] = field(default_factory=list)
    villages: List[OptionItem] = field(default_factory=list)
    selected: Dict[str, SelectedOption] = field(default_factory=dict)
    unresolved_level: str = ''
    property_data: Optional[ExtractionReport] = None
    session_id: str = ''

    @classmethod
    def failure(cls, message: str, **kwargs) -> 'OperationResult':
        return cls(success=False, message=message, **kwargs)

    def set_options(self, options: OptionSet):
        setattr(self, f"{options.level}s", list(options.items))

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'message': self.message,
            'captchaRequired': self.captcha_required,
            'status': self.status.value if self.status else None,
            'years': [o.to_dict() for o in self.years],
            'districts': [o.to_dict() for o in self.districts],
            'talukas': [o.to_dict() for o in self.talukas],
            'villages': [o.to_dict() for o in self.villages],
            'selected': {level: s.to_dict() for level, s in self.selected.items()},
            'propertyData': self.property_data.to_dict() if self.property_data else None,
        }
        if self.unresolved_level:
            result['unresolvedLevel'] = self.unresolved_level
        if self.session_id:
            result['sessionId'] = self.session_id
        return result
