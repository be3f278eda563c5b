import argparse
import asyncio
import logging
import sys
import time
from typing import Iterable, List, Optional

from dotenv import load_dotenv
from playwright.async_api import TimeoutError as PlaywrightTimeoutError, async_playwright

from drive_upload import DriveUploader
from fh_browser import launch_browser, polite_pause
from fh_capture import ArtifactCapture
from fh_config import SHORT_TIMEOUT, Credentials, RunConfig, configure_logging, parse_addresses
from fh_errors import AuthError, ConfigError, NavigationError, NoResultsError, TransportError
from fh_extract import FieldExtractor
from fh_ledger import ProcessingLedger
from fh_locator import RecordLocator
from fh_models import AddressQuery, Artifact, ResultRecord, kv_safe_key, sanitize_file_name
from fh_session import SessionManager
from fh_sinks import ArtifactStore, DiagnosticsSink, ResultSink

logger = logging.getLogger("fortified")


# ---------------------------
# Orchestrator
# ---------------------------
class Orchestrator:
    """Runs addresses one at a time through locate -> extract -> capture -> persist."""

    def __init__(
        self,
        *,
        session: SessionManager,
        locator: RecordLocator,
        extractor: FieldExtractor,
        capture: ArtifactCapture,
        ledger: ProcessingLedger,
        store: ArtifactStore,
        results: ResultSink,
        credentials: Credentials,
        mirror: Optional[DriveUploader] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        max_items: int = 25,
        polite_delay_ms: int = 800,
        jitter_ms: int = 350,
    ):
        self.session = session
        self.locator = locator
        self.extractor = extractor
        self.capture = capture
        self.ledger = ledger
        self.store = store
        self.results = results
        self.credentials = credentials
        self.mirror = mirror
        self.diagnostics = diagnostics
        self.max_items = max_items
        self.polite_delay_ms = polite_delay_ms
        self.jitter_ms = jitter_ms

    async def run(self, addresses: Iterable[str]) -> List[ResultRecord]:
        emitted: List[ResultRecord] = []
        seen = set()
        authenticated = False

        for raw in addresses:
            query = AddressQuery.from_raw(raw)
            key = query.normalized_key
            if not key:
                logger.warning(f"Skipping blank address {raw!r}")
                continue
            if key in seen:
                logger.info(f"Skipping duplicate address in this run: {raw!r}")
                continue
            seen.add(key)

            prior = self.ledger.get(key)
            if prior is not None and prior.succeeded:
                logger.info(f"[ledger] Already processed {key!r} at {prior.timestamp}; skipping")
                continue
            if len(emitted) >= self.max_items:
                logger.warning(f"Per-run cap of {self.max_items} reached; remaining addresses left for next run")
                break

            if not authenticated:
                await self.session.ensure(self.credentials)
                authenticated = True

            record = await self.process(query, reset=bool(emitted))
            self.ledger.put(key, record.ledger_entry())
            self.results.emit(record)
            emitted.append(record)
            await polite_pause(self.polite_delay_ms, self.jitter_ms)

        return emitted

    async def process(self, query: AddressQuery, reset: bool = False) -> ResultRecord:
        logger.info(f"Processing address: {query.raw}")
        record = ResultRecord(address=query.raw, normalized_key=query.normalized_key, status="failed")
        step = "reset"
        try:
            if reset:
                await self.locator.reset(self.session.home_url)

            step = "locate"
            handle = await self.locator.locate(query)
            record.selection_policy = handle.policy

            step = "detail"
            await self.locator.open_detail(handle)

            step = "extract"
            view = await self.locator.detail_view()
            record.apply_certificate(await self.extractor.extract(view))

            step = "capture"
            control = await self.locator.find_download_control()
            if control is None:
                record.status = "no_certificate"
                record.error = "Download control not found on the certificate view"
                logger.warning(f"{query.raw}: {record.error}")
                return record

            async def trigger():
                await control.click(timeout=SHORT_TIMEOUT)

            await polite_pause(self.polite_delay_ms, self.jitter_ms)
            artifact = await self.capture.capture(trigger)
            if artifact.is_empty:
                record.status = "empty_artifact"
                record.error = "No delivery channel produced document bytes"
                return record

            step = "persist"
            record.artifact_ref = self.persist(query, artifact)
            record.artifact_created_at = record.artifact_ref["savedAt"]
            record.status = "downloaded"
            logger.info(f"Certificate stored for {query.raw}: {record.artifact_ref['path']}")
        except NoResultsError as e:
            record.status = "no_results"
            record.error = str(e)
            logger.warning(f"{query.raw}: {e}")
        except NavigationError as e:
            record.status = "navigation_error"
            record.error = str(e)
            logger.warning(f"{query.raw}: navigation failed: {e}")
        except TransportError as e:
            record.status = "transport_error"
            record.error = str(e)
            logger.warning(f"{query.raw}: {e}")
        except PlaywrightTimeoutError as e:
            record.status = "transport_error"
            record.error = str(TransportError(step, str(e)))
            logger.warning(f"{query.raw}: timeout during {step}: {e}")
        except AuthError:
            raise
        except Exception as e:
            record.status = "failed"
            record.error = f"{step}: {type(e).__name__}: {e}"
            logger.error(f"{query.raw}: unexpected failure during {step}: {type(e).__name__}: {e}")
        if record.status != "downloaded" and self.diagnostics is not None:
            await self.diagnostics.snapshot(self.locator.page, f"FAILED_{record.status}")
        return record

    def persist(self, query: AddressQuery, artifact: Artifact) -> dict:
        key = kv_safe_key(f"{query.normalized_key}-certificate.pdf")
        ref = self.store.put(key, artifact.data, artifact.content_type)
        ref["fileName"] = sanitize_file_name(f"IBHS_Certificate_{query.normalized_key}_{int(time.time() * 1000)}.pdf")
        ref["channel"] = artifact.channel
        if self.mirror is not None:
            uploaded = self.mirror.upload(artifact.data, ref["fileName"], ref["contentType"])
            if uploaded:
                ref["drive"] = uploaded
        return ref


# ---------------------------
# Main workflow
# ---------------------------
async def run_workflow(config: RunConfig) -> List[ResultRecord]:
    ledger = ProcessingLedger(config.ledger_path)
    if config.clear_ledger:
        ledger.clear()
    store = ArtifactStore(config.artifacts_dir)
    results = ResultSink(config.results_path)
    diagnostics = DiagnosticsSink(config.artifacts_dir / "debug", enabled=config.debug)
    mirror = DriveUploader(config.drive_folder_id, config.drive_service_account_file)

    logger.info(f"Starting IBHS certificate run for {len(config.addresses)} address(es)")
    async with async_playwright() as pw:
        browser, context, page = await launch_browser(pw, config)
        try:
            orchestrator = Orchestrator(
                session=SessionManager(
                    page,
                    config.login_url,
                    landmark_selector=config.landmark_selector,
                    polite_delay_ms=config.polite_delay_ms,
                    diagnostics=diagnostics,
                ),
                locator=RecordLocator(
                    page,
                    wizard_steps=config.wizard_steps,
                    type_delay_ms=config.type_delay_ms,
                    polite_delay_ms=config.polite_delay_ms,
                    diagnostics=diagnostics,
                ),
                extractor=FieldExtractor(),
                capture=ArtifactCapture(page),
                ledger=ledger,
                store=store,
                results=results,
                credentials=config.credentials,
                mirror=mirror if mirror.configured else None,
                diagnostics=diagnostics,
                max_items=config.max_items,
                polite_delay_ms=config.polite_delay_ms,
                jitter_ms=config.jitter_ms,
            )
            return await orchestrator.run(config.addresses)
        finally:
            await context.close()
            await browser.close()


# ---------------------------
# CLI + Main
# ---------------------------
def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Fetch IBHS FORTIFIED certificates for one or more addresses")
    p.add_argument("addresses", nargs="*", help="Address(es) to look up")
    p.add_argument("--addresses-file", help="Newline-delimited file of addresses")
    p.add_argument("--login-url", help="Login URL of the certificate application")
    p.add_argument("--max-items", type=int, help="Per-run cap on processed addresses")
    p.add_argument("--polite-delay-ms", type=int, help="Base delay between network-sensitive actions")
    p.add_argument("--headed", dest="headless", action="store_false", help="Show the browser window")
    p.add_argument("--debug", action="store_true", default=None, help="Save screenshots/HTML at checkpoints")
    p.add_argument("--clear-ledger", action="store_true", default=None, help="Forget all previous outcomes first")
    p.set_defaults(headless=None)
    return p.parse_args(argv)


async def main(argv=None) -> int:
    load_dotenv()
    configure_logging()
    args = parse_args(argv)

    blob = None
    if args.addresses_file:
        with open(args.addresses_file, encoding="utf-8") as f:
            blob = f.read()
    try:
        config = RunConfig.from_env(
            addresses=parse_addresses(args.addresses, blob) or None,
            login_url=args.login_url,
            max_items=args.max_items,
            polite_delay_ms=args.polite_delay_ms,
            headless=args.headless,
            debug=args.debug,
            clear_ledger=args.clear_ledger,
        )
    except ConfigError as e:
        logger.error(str(e))
        return 2

    try:
        records = await run_workflow(config)
    except AuthError as e:
        logger.error(f"Run aborted: {e}")
        return 3

    print("\n-- Run complete --")
    for r in records:
        print(f"{r.status:16} {r.address}" + (f"  ({r.error})" if r.error else ""))
    if not records:
        print("Nothing to process (all addresses already handled or capped).")
    return 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
