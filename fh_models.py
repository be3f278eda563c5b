import json
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

# ---------------------------
# Status vocabulary
# ---------------------------
ResultStatus = Literal[
    "downloaded",
    "no_results",
    "navigation_error",
    "no_certificate",
    "empty_artifact",
    "transport_error",
    "failed",
]

LEDGER_SUCCESS = "success"

_UNIT_TOKEN = re.compile(r"(?:\b(?:apt|apartment|ste|suite|unit)\b|#)\s*[a-z0-9]+")
_PUNCT = re.compile(r"[^a-z0-9#\s]+")
_SPACES = re.compile(r"\s+")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_address(raw: str) -> str:
    """Canonical ledger key: lower-cased, punctuation and unit/suite markers dropped.

    normalize_address(normalize_address(x)) == normalize_address(x) for any x.
    """
    s = (raw or "").lower()
    s = _PUNCT.sub(" ", s)
    s = _SPACES.sub(" ", s)
    # removing one marker can expose another ("unit#5" -> "unit")
    prev = None
    while prev != s:
        prev = s
        s = _SPACES.sub(" ", _UNIT_TOKEN.sub(" ", s))
    s = s.replace("#", " ")
    return _SPACES.sub(" ", s).strip()


def sanitize_file_name(name: str) -> str:
    return re.sub(r'[\\/:*?"<>|]+', "_", name)[:180]


def kv_safe_key(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9!\-_.'()]+", "-", name or "")[:250]


# ---------------------------
# Records
# ---------------------------
@dataclass(frozen=True)
class AddressQuery:
    raw: str
    normalized_key: str

    @classmethod
    def from_raw(cls, raw: str) -> "AddressQuery":
        raw = (raw or "").strip()
        return cls(raw=raw, normalized_key=normalize_address(raw))


@dataclass
class CertificateRecord:
    fh_number: Optional[str] = None
    approved_at: Optional[str] = None
    expiration_date: Optional[str] = None
    building_address: Optional[str] = None
    program: Optional[str] = None
    designation: Optional[str] = None

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    def found(self) -> Dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Artifact:
    data: bytes = b""
    content_type: Optional[str] = None
    suggested_file_name: Optional[str] = None
    channel: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data or b"")

    @property
    def is_empty(self) -> bool:
        return self.size_bytes == 0

    @classmethod
    def empty(cls) -> "Artifact":
        return cls()


@dataclass
class ProcessingEntry:
    key: str
    status: str
    timestamp: str
    extracted_fields: Dict[str, Any] = field(default_factory=dict)
    artifact_ref: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == LEDGER_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ResultRecord:
    address: str
    normalized_key: str
    status: ResultStatus
    processed_at: str = field(default_factory=utc_now_iso)
    error: Optional[str] = None
    fh_number: Optional[str] = None
    approved_at: Optional[str] = None
    expiration_date: Optional[str] = None
    building_address: Optional[str] = None
    program: Optional[str] = None
    designation: Optional[str] = None
    selection_policy: Optional[str] = None
    artifact_ref: Optional[Dict[str, Any]] = None
    artifact_created_at: Optional[str] = None

    def apply_certificate(self, cert: CertificateRecord) -> None:
        for name in CertificateRecord.field_names():
            setattr(self, name, getattr(cert, name))

    def certificate(self) -> CertificateRecord:
        return CertificateRecord(**{n: getattr(self, n) for n in CertificateRecord.field_names()})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    def ledger_entry(self) -> ProcessingEntry:
        return ProcessingEntry(
            key=self.normalized_key,
            status=LEDGER_SUCCESS if self.status == "downloaded" else self.status,
            timestamp=self.processed_at,
            extracted_fields=self.certificate().found(),
            artifact_ref=self.artifact_ref,
            error=self.error,
        )
