#!/usr/bin/env python3
"""
Module Page Downloader

Downloads the page images of every module of a course document from the
online reader, binds them into a single PDF and, when a WAHA relay is
configured, sends the PDF to a WhatsApp recipient.

Configuration comes from config/config.yaml (tunables) and from the
environment or a .env file (session id, document location, relay keys).
"""

__version__ = "1.0"

# External imports
import argparse
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional

import requests

# Local imports
from delivery import WahaDeliverySink
from pdf_builder import PdfAssembler
from reporting import LoggingReporter, ProgressReporter
from schemas import EventKind, ProgressEvent, RunConfig, RunStatus
from scraper import build_scanner
from utils import (
    AssemblyError,
    ConfigError,
    DeliveryError,
    ScraperError,
    StorageError,
    add_file_handler,
    ensure_directories,
    load_config,
    load_environment,
    mask_secret,
    resolve_run_config,
    setup_logger,
)

# ─── LOGGER & CONFIG ────────────────────────────────────────────────────────────────
config = load_config()
logger = setup_logger(__name__, config)

NO_FILES_HINTS = [
    "PHPSESSID has expired",
    "SUBFOLDER is wrong",
    "the IP address is temporarily blocked",
]


def _config_summary(run_config: RunConfig) -> List[str]:
    lines = [
        f"Base URL   : {run_config.base_url}",
        f"Subfolder  : {run_config.subfolder}",
        f"Output PDF : {run_config.output_path}",
        f"Max page   : {run_config.max_page}",
        f"Modules    : {', '.join(run_config.modules)}",
        f"Cookie     : PHPSESSID={mask_secret(run_config.session_id)}",
    ]
    if run_config.delivery_enabled:
        lines.append(f"WhatsApp   : {run_config.delivery.recipient}")
    else:
        lines.append("WhatsApp   : not configured")
    return lines


def _elapsed(start: float) -> str:
    return f"{round(time.monotonic() - start)}s"


def run_pipeline(
    run_config: RunConfig,
    reporter: ProgressReporter,
    delivery_sink: Optional[WahaDeliverySink] = None,
    session: Optional[requests.Session] = None,
    workdir: Optional[Path] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunStatus:
    """Run download, assembly and delivery, strictly one phase after the other.

    Args:
        run_config (RunConfig): Resolved configuration for this run.
        reporter (ProgressReporter): Receives every progress event.
        delivery_sink (Optional[WahaDeliverySink]): Used only when the relay
            configuration is complete. None disables delivery.
        session (Optional[requests.Session]): HTTP session for page requests. A new
            one is created and closed when omitted.
        workdir (Optional[Path]): Directory for the scratch folder and output PDF.
            Defaults to the current working directory.
        sleep (Callable[[float], None]): Used for request pacing.

    Returns:
        RunStatus: The terminal state of the run. A delivery error still leaves the
            finished PDF in place.
    """
    workdir = Path(workdir) if workdir else Path.cwd()
    output_path = workdir / run_config.output_path
    start = time.monotonic()

    for line in _config_summary(run_config):
        reporter.report(ProgressEvent(kind=EventKind.CONFIG, message=line))

    try:
        ensure_directories([workdir])
        scratch_dir = Path(tempfile.mkdtemp(prefix=f"{run_config.scratch_prefix}_", dir=workdir))
    except (StorageError, OSError) as e:
        reporter.report(ProgressEvent(kind=EventKind.RUN_SUMMARY, message=f"cannot create scratch directory: {e}"))
        return RunStatus.STORAGE_ERROR

    # ─── FETCH ────────────────────────────────────────────────────────────────
    own_session = session is None
    http = session or requests.Session()
    try:
        scanner = build_scanner(run_config, http, scratch_dir, reporter, sleep=sleep)
        document_set = scanner.run(run_config.modules, run_config.max_page)
    except StorageError as e:
        reporter.report(ProgressEvent(kind=EventKind.RUN_SUMMARY, message=f"storage error: {e}"))
        return RunStatus.STORAGE_ERROR
    finally:
        if own_session:
            http.close()

    reporter.report(ProgressEvent(
        kind=EventKind.FETCH_DONE,
        message=f"download finished in {_elapsed(start)}, {len(document_set)} file(s)",
        data={"files": len(document_set), "per_module": {m.module_id: m.page_count for m in document_set.modules}},
    ))

    if len(document_set) == 0:
        reporter.report(ProgressEvent(
            kind=EventKind.NO_FILES,
            message="no files downloaded. Likely causes: " + "; ".join(NO_FILES_HINTS),
        ))
        shutil.rmtree(scratch_dir, ignore_errors=True)
        return RunStatus.NO_FILES

    # ─── ASSEMBLY ────────────────────────────────────────────────────────────────
    assembler = PdfAssembler(run_config, reporter)
    try:
        assembler.assemble(document_set.files, output_path)
    except AssemblyError as e:
        # scratch directory is kept for inspection
        reporter.report(ProgressEvent(
            kind=EventKind.RUN_SUMMARY,
            message=f"assembly error: {e} (page images kept in {scratch_dir})",
        ))
        return RunStatus.ASSEMBLY_ERROR

    shutil.rmtree(scratch_dir, ignore_errors=True)
    reporter.report(ProgressEvent(kind=EventKind.SCRATCH_REMOVED, message=f"removed {scratch_dir}"))

    # ─── DELIVERY ────────────────────────────────────────────────────────────────
    status = RunStatus.COMPLETED
    if delivery_sink is not None and run_config.delivery_enabled:
        try:
            delivery_sink.deliver(output_path, run_config.delivery.recipient, run_config.output_name)
        except DeliveryError as e:
            reporter.report(ProgressEvent(
                kind=EventKind.RUN_SUMMARY,
                message=f"delivery error: {e} ({output_path} is kept)",
                data={"status_code": e.status_code},
            ))
            status = RunStatus.DELIVERY_ERROR

    reporter.report(ProgressEvent(
        kind=EventKind.RUN_SUMMARY,
        message=f"{status.value} in {_elapsed(start)}: {output_path}",
        data={"status": status.value, "output": str(output_path)},
    ))
    return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modul-pdf",
        description="Download module pages from the online reader and bind them into one PDF.",
    )
    parser.add_argument("--env-file", default=None, help="Path to the .env file (default: ./.env)")
    parser.add_argument("--config", default=None, help="Path to a config.yaml overriding the bundled one")
    parser.add_argument("--log-file", default=None, help="Also write the log to this file")
    parser.add_argument("--no-delivery", action="store_true", help="Do not send the PDF even if WAHA is configured")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the module downloader.

    Returns 0 when the run completed, 1 for every other terminal state.
    """
    args = build_parser().parse_args(argv)

    try:
        load_environment(args.env_file)
        file_config = load_config(args.config) if args.config else config
        if args.log_file:
            add_file_handler(args.log_file)
        run_logger = setup_logger(__name__, file_config)
        run_config = resolve_run_config(file_config)
    except (FileNotFoundError, ValueError, ConfigError) as e:
        logger.error("[%s] %s", RunStatus.CONFIG_ERROR.value, e)
        return 1

    run_logger.info("Module downloader v%s starting up", __version__)
    reporter = LoggingReporter(run_logger)

    sink = None
    if run_config.delivery_enabled and not args.no_delivery:
        sink = WahaDeliverySink(run_config.delivery, reporter)

    try:
        status = run_pipeline(run_config, reporter, delivery_sink=sink)
    except ScraperError as e:
        run_logger.error("A critical error occurred: %s", e)
        return 1

    return 0 if status is RunStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
