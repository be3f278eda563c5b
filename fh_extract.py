"""
Certificate field extraction from the rendered detail view.

Each field walks its own cascade: a structural label/value lookup over
table cells, definition lists and label siblings, then several full-text
regular expressions. The first strategy that yields a value wins for that
field only. Missing data is never an error.
"""
import logging
import re
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from fh_models import CertificateRecord

logger = logging.getLogger("fortified.extract")

DATE = r"(\d{1,2}[/-]\d{1,2}[/-]\d{4})"
_DATE_RX = re.compile(DATE)
_SEP = r"\s*[:#\-]?\s*"

# Collects [label, value] pairs from the usual layouts. Works for a Page
# (root undefined) and for an element handle passed by Locator.evaluate.
PAIRS_JS = """
(root) => {
  root = root || document.body;
  const clean = (s) => (s || '').replace(/\\s+/g, ' ').trim();
  const pairs = [];
  root.querySelectorAll('tr').forEach((tr) => {
    const cells = Array.from(tr.querySelectorAll('th, td'));
    for (let i = 0; i + 1 < cells.length; i += 2) {
      pairs.push([clean(cells[i].innerText), clean(cells[i + 1].innerText)]);
    }
  });
  root.querySelectorAll('dt').forEach((dt) => {
    const dd = dt.nextElementSibling;
    if (dd && dd.tagName === 'DD') pairs.push([clean(dt.innerText), clean(dd.innerText)]);
  });
  root.querySelectorAll('label, strong, b, th, [class*="label" i]').forEach((el) => {
    const sib = el.nextElementSibling;
    if (sib) pairs.push([clean(el.innerText), clean(sib.innerText)]);
  });
  return { pairs: pairs, text: root.innerText || '' };
}
"""

# ---------------------------
# Field definitions
# ---------------------------
LABELS: Dict[str, Tuple[str, ...]] = {
    "fh_number": ("fh number", "fh #", "certificate number", "certificate #", "certificate id", "evaluation id"),
    "approved_at": ("approved at", "approval date", "date approved", "approved on", "approved"),
    "expiration_date": ("expiration date", "expiration", "expires on", "expires", "expiry date", "valid through"),
    "building_address": ("building address", "property address", "address", "location"),
    "program": ("program", "fortified program"),
    "designation": ("designation", "designation level", "designation type"),
}

PATTERNS: Dict[str, List[Pattern]] = {
    "fh_number": [
        re.compile(r"\b(FH\d{6,})\b"),
        re.compile(r"\bFH\s*(?:Number|No\.?|#)" + _SEP + r"([A-Z]{0,3}\d{5,})", re.I),
        re.compile(r"Certificate\s*(?:Number|No\.?|#|ID)" + _SEP + r"([A-Z]{1,3}\d{5,})", re.I),
    ],
    "approved_at": [
        re.compile(r"Approved\s*(?:At|On)" + _SEP + DATE, re.I),
        re.compile(r"Approval\s*Date" + _SEP + DATE, re.I),
        re.compile(r"Date\s*Approved" + _SEP + DATE, re.I),
        re.compile(r"\bApproved\b[^\d\n]{0,20}" + DATE, re.I),
    ],
    "expiration_date": [
        re.compile(r"Expiration\s*Date" + _SEP + DATE, re.I),
        re.compile(r"Expires?\s*(?:On)?" + _SEP + DATE, re.I),
        re.compile(r"Valid\s*(?:Through|Until)" + _SEP + DATE, re.I),
        re.compile(r"\bExpir\w*\b[^\d\n]{0,20}" + DATE, re.I),
    ],
    "building_address": [
        re.compile(r"(?:Building|Property)\s*Address" + _SEP + r"([^\n]+)", re.I),
        re.compile(r"^\s*Address\b" + _SEP + r"([^\n]+)", re.I | re.M),
        re.compile(r"\b(\d+\s+[A-Za-z0-9 .'-]+,\s*[A-Za-z .'-]+,\s*[A-Z]{2}\s+\d{5}(?:-\d{4})?)"),
    ],
    "program": [
        re.compile(r"^\s*Program\b" + _SEP + r"([^\n]+)", re.I | re.M),
        re.compile(r"\b(FORTIFIED\s+(?:Home|Commercial|Multifamily)(?:\s*[-™]\s*\w+)?)", re.I),
    ],
    "designation": [
        re.compile(r"\bDesignation\b(?!\s*(?:Date|Expir))\s*(?:Level|Type)?" + _SEP + r"([^\n]+)", re.I),
        re.compile(r"\b((?:FORTIFIED\s+)?(?:Roof|Silver|Gold))\s+(?:designation|level)\b", re.I),
        re.compile(r"\b(Roof|Silver|Gold)\b(?=[^\n]{0,40}\b(?:designation|certificate)\b)", re.I),
    ],
}

DATE_FIELDS = ("approved_at", "expiration_date")


def _clean_label(label: str) -> str:
    return re.sub(r"\s+", " ", label or "").strip().rstrip(":").strip().lower()


def _clean_value(field_name: str, value: Optional[str]) -> Optional[str]:
    value = re.sub(r"\s+", " ", (value or "")).strip().strip(":").strip()
    if not value or value in ("-", "--", "n/a", "N/A"):
        return None
    if field_name in DATE_FIELDS:
        m = _DATE_RX.search(value)
        return m.group(1) if m else None
    if field_name == "fh_number" and not re.search(r"\d", value):
        return None
    return value[:300]


# ---------------------------
# Strategies
# ---------------------------
Strategy = Callable[[str, Sequence[Sequence[str]], str], Optional[str]]


def structural_lookup(field_name: str, pairs: Sequence[Sequence[str]], text: str) -> Optional[str]:
    """Value from a cell next to a recognised label, synonyms tried in order."""
    labels = LABELS[field_name]
    cleaned = [(_clean_label(p[0]), p[1]) for p in pairs if len(p) >= 2]
    for synonym in labels:
        for label, value in cleaned:
            if label == synonym:
                v = _clean_value(field_name, value)
                if v:
                    return v
    return None


def text_patterns(field_name: str, pairs: Sequence[Sequence[str]], text: str) -> Optional[str]:
    for rx in PATTERNS[field_name]:
        m = rx.search(text or "")
        if m:
            v = _clean_value(field_name, m.group(1))
            if v:
                return v
    return None


DEFAULT_STRATEGIES: Tuple[Strategy, ...] = (structural_lookup, text_patterns)


def extract_fields(
    pairs: Sequence[Sequence[str]],
    text: str,
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
) -> CertificateRecord:
    record = CertificateRecord()
    for name in CertificateRecord.field_names():
        for strategy in strategies:
            try:
                value = strategy(name, pairs, text)
            except Exception as e:
                logger.debug(f"[extract] {strategy.__name__} on {name}: {e}")
                continue
            if value:
                setattr(record, name, value)
                break
    return record


class FieldExtractor:
    def __init__(self, strategies: Sequence[Strategy] = DEFAULT_STRATEGIES):
        self.strategies = tuple(strategies)

    async def read_view(self, view) -> Tuple[List[List[str]], str]:
        try:
            data = await view.evaluate(PAIRS_JS)
        except Exception as e:
            logger.debug(f"[extract] structural scan failed: {e}")
            data = None
        if isinstance(data, dict):
            pairs = [list(p) for p in data.get("pairs") or [] if isinstance(p, (list, tuple))]
            return pairs, str(data.get("text") or "")
        try:
            text = await view.inner_text("body") if hasattr(view, "goto") else await view.inner_text()
        except Exception as e:
            logger.debug(f"[extract] text read failed: {e}")
            text = ""
        return [], text or ""

    async def extract(self, view) -> CertificateRecord:
        """Never raises; absent fields stay None."""
        pairs, text = await self.read_view(view)
        record = extract_fields(pairs, text, self.strategies)
        found = record.found()
        logger.info(f"[extract] {len(found)} fields: {', '.join(sorted(found)) or 'none'}")
        return record
