"""Per-run session folders: request trace, metadata, summary, artifacts.

Layout (one folder per run)::

    <root>/<label>/<YYYYMMDD-HHMMSS>/
        logs.txt            [ISO timestamp] line per event
        session-info.json   metadata, merged on every update
        EstNightTotal.txt   human-readable summary
        <artifacts>         copies of batch input / result payloads

Logging must never get in the way of a consolidation run, so
``open_session_logger`` falls back to ``NoopSessionLogger`` when the folder
cannot be created, and every later write failure is swallowed.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from .config import DEFAULT_DATA_ROOT


logger = logging.getLogger(__name__)

LOG_FILE = "logs.txt"
METADATA_FILE = "session-info.json"
SUMMARY_FILE = "EstNightTotal.txt"

CUSTOM_LABEL_MAX = 80
ADDRESS_LABEL_MAX = 14
ADDRESS_PREFIX_LEN = 9
ADDRESS_SUFFIX_LEN = 5

SUMMARY_FOOTER = (
    "",
    "Note: Midnight finalizes Night rewards independently.",
    "Values recorded here reflect the exact time this consolidation ran.",
)

_HOSTILE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


# ------------------------ naming ------------------------

def sanitize_address(address: Optional[str]) -> str:
    cleaned = _NON_ALNUM.sub("", address or "")
    return cleaned or "unknown-address"


def sanitize_custom_label(label: Optional[str]) -> Optional[str]:
    if not label or not isinstance(label, str):
        return None
    trimmed = label.strip()
    if not trimmed:
        return None
    cleaned = _WHITESPACE.sub("-", _HOSTILE_CHARS.sub("", trimmed))[:CUSTOM_LABEL_MAX]
    return cleaned or None


def format_address_label(address: Optional[str]) -> str:
    """addr1qxyz...abcde style label, short enough for a folder name."""
    safe = sanitize_address(address)
    if len(safe) <= ADDRESS_LABEL_MAX:
        return safe
    return f"{safe[:ADDRESS_PREFIX_LEN]}...{safe[-ADDRESS_SUFFIX_LEN:]}"


def format_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now()
    return moment.strftime("%Y%m%d-%H%M%S")


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ------------------------ loggers ------------------------

class NoopSessionLogger:
    """Inert logger used when the session folder is unavailable."""

    enabled = False
    session_dir: Optional[Path] = None
    label = "unavailable"
    timestamp = ""

    def log(self, message: str) -> None:
        pass

    def write_summary(self, lines: Iterable[str]) -> None:
        pass

    def update_metadata(self, extra: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        pass

    def copy_artifact(self, source_path: Union[str, Path, None], file_name: Optional[str]) -> None:
        pass

    def write_artifact(self, file_name: str, payload: Any) -> None:
        pass


class SessionLogger:
    enabled = True

    def __init__(self, session_dir: Path, label: str, timestamp: str, metadata: Dict[str, Any]) -> None:
        self.session_dir = session_dir
        self.label = label
        self.timestamp = timestamp
        self._log_path = session_dir / LOG_FILE
        self._metadata_path = session_dir / METADATA_FILE
        self._summary_path = session_dir / SUMMARY_FILE
        self._metadata = dict(metadata)
        self._write_metadata()

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self._metadata)

    def _write_metadata(self) -> None:
        self._metadata_path.write_text(json.dumps(self._metadata, indent=2, default=str), encoding="utf-8")

    def log(self, message: str) -> None:
        try:
            with self._log_path.open("a", encoding="utf-8") as f:
                f.write(f"[{_utc_iso()}] {message}\n")
        except OSError as e:
            logger.debug("session log append failed: %s", e)

    def write_summary(self, lines: Iterable[str]) -> None:
        content = "\n".join([*lines, *SUMMARY_FOOTER])
        try:
            self._summary_path.write_text(content, encoding="utf-8")
        except OSError as e:
            self.log(f"Failed to write summary: {e}")

    def update_metadata(self, extra: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        """Merge keys into session-info.json; keys not given are kept."""
        self._metadata.update(extra or {})
        self._metadata.update(kwargs)
        try:
            self._write_metadata()
        except (OSError, TypeError, ValueError) as e:
            self.log(f"Failed to update metadata: {e}")

    def copy_artifact(self, source_path: Union[str, Path, None], file_name: Optional[str]) -> None:
        if not source_path or not file_name:
            return
        source = Path(source_path)
        try:
            if source.exists():
                shutil.copyfile(source, self.session_dir / file_name)
            else:
                self.log(f"Skipping artifact copy. Source not found: {source}")
        except OSError as e:
            self.log(f"Failed to copy artifact {file_name}: {e}")

    def write_artifact(self, file_name: str, payload: Any) -> None:
        try:
            (self.session_dir / file_name).write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            self.log(f"Failed to write artifact {file_name}: {e}")


AnySessionLogger = Union[SessionLogger, NoopSessionLogger]


def _unique_session_dir(parent: Path, timestamp: str) -> Path:
    candidate = parent / timestamp
    suffix = 0
    while True:
        try:
            candidate.mkdir(parents=True, exist_ok=False)
            return candidate
        except FileExistsError:
            suffix += 1
            candidate = parent / f"{timestamp}-{suffix}"


def open_session_logger(
    primary_address: Optional[str],
    metadata: Optional[Dict[str, Any]] = None,
    custom_label: Optional[str] = None,
    root: Union[str, Path, None] = None,
) -> AnySessionLogger:
    """Create the run folder and return a logger bound to it.

    Any failure while setting up the folder yields a ``NoopSessionLogger``.
    """
    root_dir = Path(root) if root is not None else DEFAULT_DATA_ROOT
    try:
        safe_custom = sanitize_custom_label(custom_label)
        label = safe_custom or format_address_label(primary_address)
        timestamp = format_timestamp()
        session_dir = _unique_session_dir(root_dir / label, timestamp)
        initial: Dict[str, Any] = {
            "label": label,
            "session_timestamp": session_dir.name,
            "created_at": _utc_iso(),
        }
        if safe_custom:
            initial["custom_label"] = custom_label
        initial.update(metadata or {})
        return SessionLogger(session_dir, label, session_dir.name, initial)
    except (OSError, TypeError, ValueError) as e:
        logger.warning("session logging disabled, failed to initialize folder under %s: %s", root_dir, e)
        return NoopSessionLogger()
