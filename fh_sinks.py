import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fh_models import ResultRecord, kv_safe_key, utc_now_iso

logger = logging.getLogger("fortified.sinks")


class ArtifactStore:
    """Binary artifact store on the local filesystem, addressed by key."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / kv_safe_key(key)

    def put(self, key: str, data: bytes, content_type: Optional[str] = "application/pdf") -> Dict[str, Any]:
        if not data:
            raise ValueError(f"refusing to store empty artifact under {key!r}")
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        logger.info(f"[store] Saved {len(data)} bytes -> {path}")
        return {
            "key": path.name,
            "path": str(path),
            "fileSize": len(data),
            "contentType": content_type or "application/pdf",
            "savedAt": utc_now_iso(),
        }

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "rb") as f:
            return f.read()

    def list_keys(self, pattern: str = "*.pdf") -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.glob(pattern))


class ResultSink:
    """Append-only JSON-lines file, one ResultRecord per processed address."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def emit(self, record: ResultRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(record.to_json() + "\n")
        latest = self.path.parent / "latest-result.json"
        with open(latest, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, ensure_ascii=False, indent=2)
        logger.info(f"[result] {record.normalized_key} -> {record.status}")

    def read_all(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class DiagnosticsSink:
    """Screenshots and HTML dumps for human debugging. Never read back."""

    def __init__(self, root: Path, enabled: bool):
        self.root = Path(root)
        self.enabled = enabled

    async def snapshot(self, page, step: str) -> Optional[str]:
        if not self.enabled:
            return None
        logger.info(f"[debug] === {step} ===")
        try:
            logger.info(f"[debug] URL: {page.url}")
            logger.info(f"[debug] Title: {await page.title()}")
            logins = await page.locator('input[type="email"], input[type="password"]').count()
            inputs = await page.locator("input").count()
            buttons = await page.locator('button, [role="button"]').count()
            logger.info(f"[debug] login fields={logins} inputs={inputs} buttons={buttons}")

            slug = re.sub(r"\W+", "-", step.lower()).strip("-")
            stem = self.root / f"debug-{slug}-{int(time.time() * 1000)}"
            self.root.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=f"{stem}.png", full_page=True)
            with open(f"{stem}.html", "w", encoding="utf-8") as f:
                f.write(await page.content())
            return f"{stem}.png"
        except Exception as e:
            logger.debug(f"[debug] snapshot failed at {step}: {e}")
            return None
