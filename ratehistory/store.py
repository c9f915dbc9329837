"""
JSON file stores, one file per lender.

    <history_dir>/<lenderId>.json   baseline + changesets
    <rates_dir>/<lenderId>.json     current rates (owned by the live scraper)

A missing file is a normal state (new lender) and loads as None. Writes
replace the whole file. No locking: callers serialize access per lender.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ratehistory.schemas import RatesFile, RatesHistoryFile

logger = logging.getLogger(__name__)


class HistoryFileError(Exception):
    """Raised when a stored file exists but cannot be read or fails validation."""
    pass


def _read_json(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise HistoryFileError(f"cannot read {path}: {e}") from e


def _write_json(path: Path, data: Any):
    """Serialize with tab indentation and swap the file in with os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(data, indent="\t", ensure_ascii=False) + "\n"

    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _validate(model, data: Dict[str, Any], path: Path):
    try:
        model.model_validate(data)
    except ValidationError as e:
        raise HistoryFileError(f"invalid {model.__name__} in {path}: {e}") from e


class _LenderFileStore:
    model = None

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, lender_id: str) -> Path:
        return self.directory / f"{lender_id}.json"

    def exists(self, lender_id: str) -> bool:
        return self.path_for(lender_id).exists()

    def lender_ids(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class HistoryStore(_LenderFileStore):
    """Reads and writes `RatesHistoryFile` documents."""

    model = RatesHistoryFile

    def load(self, lender_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(lender_id)
        data = _read_json(path)
        if data is None:
            return None
        _validate(self.model, data, path)
        return data

    def save(self, history: Dict[str, Any]):
        path = self.path_for(history["lenderId"])
        _validate(self.model, history, path)
        _write_json(path, history)
        logger.debug(
            "history saved",
            extra={"lender": history["lenderId"], "step": "save"},
        )


class CurrentRatesStore(_LenderFileStore):
    """
    Reads and writes the current rates file.

    A plain JSON array is the pre-hash legacy format; it loads as None so the
    next scrape rewrites it in the current shape.
    """

    model = RatesFile

    def load(self, lender_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(lender_id)
        data = _read_json(path)
        if data is None:
            return None
        if isinstance(data, list):
            logger.info(
                "legacy rates file ignored",
                extra={"lender": lender_id, "step": "load"},
            )
            return None
        _validate(self.model, data, path)
        return data

    def save(self, rates_file: Dict[str, Any]):
        path = self.path_for(rates_file["lenderId"])
        _validate(self.model, rates_file, path)
        _write_json(path, rates_file)
