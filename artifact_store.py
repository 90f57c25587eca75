#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                  POWER-IGR - Artifact Store                                  ║
║                  data.json capture log + per-village document folders        ║
╚══════════════════════════════════════════════════════════════════════════════╝

Layout (under Config.DATA_DIR):

    data.json                                   [{url, timestamp}, ...]
    documents/<village>/document-3-2025-01-31T10-22-05-123Z.pdf
    documents/<village>/document-main-4-<timestamp>.pdf   (in-place view)
    documents/<village>/results-<timestamp>.png
    diagnostics/<name>-<timestamp>.png

Author: POWER-IGR Team
Version: 1.0.0
"""

import re
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any

from igr_config import Config
from session_models import ArtifactLogEntry

logger = logging.getLogger('ArtifactStore')

# data.json is shared by every session in the process
_LOG_LOCK = threading.Lock()

_UNSAFE_CHARS = re.compile(r'[/\\?%*:|"<>]')


def sanitize_name(name: str) -> str:
    """Folder-safe version of a village name"""
    cleaned = _UNSAFE_CHARS.sub('-', name or '').strip()
    return cleaned or 'unknown-village'


def file_timestamp(moment: datetime = None) -> str:
    """ISO-8601 UTC timestamp with ':' and '.' replaced, safe for filenames"""
    moment = moment or datetime.now(timezone.utc)
    iso = moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
    return iso.replace(':', '-').replace('.', '-')


class ArtifactLog:
    """
    Append-only JSON list of captured document URLs.

    append() is read-modify-write and never raises: unreadable or non-list
    content is replaced by an empty list before the new entry is added.
    """

    def __init__(self, path: Path = None):
        self.path = Path(path or Config.ARTIFACT_LOG)

    def append(self, identifier: str) -> bool:
        entry = ArtifactLogEntry(identifier=identifier)
        with _LOG_LOCK:
            try:
                entries = self._load()
                entries.append(entry.to_dict())
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.path.write_text(json.dumps(entries, indent=2), encoding='utf-8')
                logger.info(f"📝 Logged {identifier}")
                return True
            except Exception as e:
                logger.error(f"Error saving {identifier} to {self.path.name}: {e}")
                return False

    def entries(self) -> List[Dict[str, Any]]:
        with _LOG_LOCK:
            return self._load()

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding='utf-8') or '[]')
        except (ValueError, OSError) as e:
            logger.warning(f"⚠️  {self.path.name} unreadable ({e}), starting a new list")
            return []
        if not isinstance(data, list):
            logger.warning(f"⚠️  {self.path.name} is not a list, starting a new list")
            return []
        return data


class DocumentStore:
    """Where documents, result snapshots and diagnostics are written"""

    def __init__(self, documents_dir: Path = None, diagnostics_dir: Path = None):
        self.documents_dir = Path(documents_dir or Config.DOCUMENTS_DIR)
        self.diagnostics_dir = Path(diagnostics_dir or Config.DIAGNOSTICS_DIR)

    def village_dir(self, village: str) -> Path:
        folder = self.documents_dir / sanitize_name(village)
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def document_path(self, village: str, sequence: int, in_place: bool = False) -> Path:
        """sequence is 1-based; in_place marks a render of the main view"""
        prefix = 'document-main' if in_place else 'document'
        return self.village_dir(village) / f"{prefix}-{sequence}-{file_timestamp()}.pdf"

    def results_snapshot_path(self, village: str) -> Path:
        return self.village_dir(village) / f"results-{file_timestamp()}.png"

    def diagnostic_path(self, name: str) -> Path:
        self.diagnostics_dir.mkdir(parents=True, exist_ok=True)
        return self.diagnostics_dir / f"{sanitize_name(name)}-{file_timestamp()}.png"
