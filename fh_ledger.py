import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from fh_models import ProcessingEntry

logger = logging.getLogger("fortified.ledger")


class ProcessingLedger:
    """Durable normalized-address -> last-outcome map.

    Entries are overwritten on reprocessing and never expire; only `clear()`
    (an operator action) removes them. Reads and writes go back to the file,
    so two ledgers on the same path see each other's entries.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, Dict] = self._load()

    def _load(self) -> Dict[str, Dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Ledger file {self.path} is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise ValueError(f"Ledger file {self.path} must hold a JSON object")
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".ledger-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._entries, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[ProcessingEntry]:
        # another run may have written since we loaded
        self._entries = self._load()
        raw = self._entries.get(key)
        return ProcessingEntry.from_dict(raw) if raw is not None else None

    def put(self, key: str, entry: ProcessingEntry) -> None:
        entries = self._load()
        entries[key] = entry.to_dict()
        self._entries = entries
        self._flush()
        logger.info(f"[ledger] {key} -> {entry.status}")

    def clear(self) -> None:
        self._entries = {}
        self._flush()
        logger.warning(f"[ledger] Cleared {self.path}")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
