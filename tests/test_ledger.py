from pathlib import Path

import pytest

from fh_ledger import ProcessingLedger
from fh_models import ProcessingEntry


def _entry(key: str, status: str) -> ProcessingEntry:
    return ProcessingEntry(key=key, status=status, timestamp="2026-01-01T00:00:00+00:00")


class TestProcessingLedger:
    def test_absent_key(self, tmp_path: Path) -> None:
        assert ProcessingLedger(tmp_path / "l.json").get("missing") is None

    def test_put_then_get(self, tmp_path: Path) -> None:
        ledger = ProcessingLedger(tmp_path / "l.json")
        ledger.put("513 malaga drive", _entry("513 malaga drive", "success"))
        got = ledger.get("513 malaga drive")
        assert got is not None
        assert got.succeeded
        assert "513 malaga drive" in ledger

    def test_survives_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "l.json"
        ProcessingLedger(path).put("k", _entry("k", "no_results"))
        reloaded = ProcessingLedger(path)
        assert reloaded.get("k").status == "no_results"
        assert len(reloaded) == 1

    def test_overwrite_not_append(self, tmp_path: Path) -> None:
        ledger = ProcessingLedger(tmp_path / "l.json")
        ledger.put("k", _entry("k", "transport_error"))
        ledger.put("k", _entry("k", "success"))
        assert len(ledger) == 1
        assert ledger.get("k").succeeded

    def test_clear(self, tmp_path: Path) -> None:
        path = tmp_path / "l.json"
        ledger = ProcessingLedger(path)
        ledger.put("k", _entry("k", "success"))
        ledger.clear()
        assert ProcessingLedger(path).get("k") is None

    def test_corrupt_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "l.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            ProcessingLedger(path)

    def test_two_ledgers_on_one_file_keep_both_writes(self, tmp_path: Path) -> None:
        path = tmp_path / "l.json"
        first = ProcessingLedger(path)
        second = ProcessingLedger(path)
        first.put("513 malaga drive", _entry("513 malaga drive", "success"))
        second.put("520 novatan rd", _entry("520 novatan rd", "no_results"))

        reloaded = ProcessingLedger(path)
        assert reloaded.get("513 malaga drive").succeeded
        assert reloaded.get("520 novatan rd").status == "no_results"
        assert first.get("520 novatan rd") is not None
