import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from fh_errors import ConfigError

# ---------------------------
# Configuration & Logging
# ---------------------------
BASE_DIR = Path(__file__).parent
DEFAULT_LOGIN_URL = "https://app.ibhs.org/fh"
DEFAULT_LANDMARK = "text=/Certificates?|Search/i"
DEFAULT_WIZARD_STEPS = ("New Evaluation", "Redesignation")

# Global timeouts (ms)
LOGIN_TIMEOUT = 30_000
NAV_TIMEOUT = 60_000
CAPTURE_TIMEOUT = 60_000
SHORT_TIMEOUT = 10_000
POLL_INTERVAL = 2_000
POLL_ATTEMPTS = 5

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


AddressInput = Union[None, str, Iterable[str]]


def parse_addresses(*values: AddressInput) -> List[str]:
    """Flatten single strings, lists and newline-delimited blobs into address strings."""
    out: List[str] = []
    for value in values:
        if value is None:
            continue
        items = re.split(r"\r?\n", value) if isinstance(value, str) else list(value)
        for item in items:
            if item is None:
                continue
            item = str(item).strip()
            if item:
                out.append(item)
    return out


def parse_steps(value: Optional[str]) -> Tuple[str, ...]:
    if value is None:
        return DEFAULT_WIZARD_STEPS
    return tuple(s.strip() for s in value.split(",") if s.strip())


@dataclass
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


def resolve_credentials(username: Optional[str] = None, password: Optional[str] = None) -> Credentials:
    username = username or os.getenv("IBHS_USERNAME")
    password = password or os.getenv("IBHS_PASSWORD")
    if not username or not password:
        raise ConfigError("Missing credentials. Set IBHS_USERNAME and IBHS_PASSWORD environment variables.")
    return Credentials(username=username, password=password)


@dataclass
class RunConfig:
    addresses: List[str]
    credentials: Credentials
    login_url: str = DEFAULT_LOGIN_URL
    max_items: int = 25
    polite_delay_ms: int = 800
    jitter_ms: int = 350
    type_delay_ms: int = 150
    headless: bool = True
    debug: bool = False
    artifacts_dir: Path = BASE_DIR / "artifacts"
    ledger_path: Optional[Path] = None
    results_path: Optional[Path] = None
    wizard_steps: Tuple[str, ...] = DEFAULT_WIZARD_STEPS
    landmark_selector: str = DEFAULT_LANDMARK
    drive_folder_id: Optional[str] = None
    drive_service_account_file: Optional[str] = None
    clear_ledger: bool = False
    user_agent: str = field(
        default="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/119 Safari/537.36"
    )

    def __post_init__(self):
        self.artifacts_dir = Path(self.artifacts_dir)
        if self.ledger_path is None:
            self.ledger_path = self.artifacts_dir / "processed.json"
        if self.results_path is None:
            self.results_path = self.artifacts_dir / "results.jsonl"
        if self.max_items < 1:
            raise ConfigError("max_items must be at least 1")
        if not self.addresses:
            raise ConfigError('No address provided. Use "address" or "addresses".')

    @classmethod
    def from_env(
        cls,
        addresses: AddressInput = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        **overrides,
    ) -> "RunConfig":
        """Build a config from environment variables; explicit keyword values win."""
        addrs = parse_addresses(addresses) or parse_addresses(os.getenv("ADDRESS"), os.getenv("ADDRESSES"))
        values = dict(
            login_url=os.getenv("FH_LOGIN_URL", DEFAULT_LOGIN_URL),
            max_items=_env_int("MAX_ITEMS", 25),
            polite_delay_ms=_env_int("POLITE_DELAY_MS", 800),
            type_delay_ms=_env_int("TYPE_DELAY_MS", 150),
            headless=_env_bool("HEADLESS", True),
            debug=_env_bool("DEBUG", False),
            artifacts_dir=Path(os.getenv("ARTIFACTS_DIR", str(BASE_DIR / "artifacts"))),
            wizard_steps=parse_steps(os.getenv("WIZARD_STEPS")),
            landmark_selector=os.getenv("FH_LANDMARK", DEFAULT_LANDMARK),
            drive_folder_id=os.getenv("DRIVE_FOLDER_ID") or None,
            drive_service_account_file=os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE") or None,
        )
        if os.getenv("LEDGER_PATH"):
            values["ledger_path"] = Path(os.environ["LEDGER_PATH"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        # credentials resolve last so a missing address is reported first
        if not addrs:
            raise ConfigError('No address provided. Use "address" or "addresses".')
        return cls(addresses=addrs, credentials=resolve_credentials(username, password), **values)
