"""
Page image scraper

Fetches the per-page JPEG images of a document set from the viewer service,
one module at a time, and keeps the accepted pages in a scratch directory
until the PDF is assembled.
"""

import time
from pathlib import Path
from typing import Callable, Optional, Sequence
from urllib.parse import urlencode

import requests

from reporting import ProgressReporter
from schemas import (
    DocumentSet,
    EventKind,
    FetchOutcome,
    FetchRequest,
    FetchStatus,
    ModuleResult,
    ProgressEvent,
    RunConfig,
    StopReason,
)
from utils import StorageError, load_config, setup_logger

# ─── LOGGER & CONFIG ────────────────────────────────────────────────────────────────
config = load_config()
logger = setup_logger(__name__, config)

PAGE_FILE_TEMPLATE = "{module_id}_page_{page:03d}.jpg"


def page_file_name(module_id: str, page: int) -> str:
    """Scratch file name for a page, e.g. ``M1_page_007.jpg``."""
    return PAGE_FILE_TEMPLATE.format(module_id=module_id, page=page)


def _discard(file_path: Path) -> None:
    try:
        file_path.unlink(missing_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot remove partial page file {file_path}: {e}")


# ─── PAGE FETCHER ────────────────────────────────────────────────────────────────
class PageFetcher:
    def __init__(self, run_config: RunConfig, session: requests.Session, scratch_dir: Path):
        self.config = run_config
        self.session = session
        self.scratch_dir = Path(scratch_dir)

    def build_request(self, module_id: str, page: int) -> FetchRequest:
        query = urlencode(
            {
                "doc": module_id,
                "format": "jpg",
                "subfolder": self.config.subfolder,
                "page": page,
            },
            safe="/",
        )
        return FetchRequest(
            module_id=module_id,
            page_number=page,
            target_url=f"{self.config.base_url}?{query}",
            auth_token=self.config.session_id,
        )

    def page_path(self, module_id: str, page: int) -> Path:
        return self.scratch_dir / page_file_name(module_id, page)

    def fetch(self, request: FetchRequest) -> FetchOutcome:
        """Fetch one page and classify the response.

        A 200 response is streamed straight into the scratch directory. Bodies
        under the minimum payload size are the viewer's error page served with
        a 200 (usually an expired PHPSESSID), so they end the module like a 404.
        A body that breaks off mid-download ends the module the same way.

        Args:
            request (FetchRequest): The page to fetch.

        Returns:
            FetchOutcome: Accepted, retryable failure or terminal stop. Only an
                accepted outcome leaves a file behind.

        Raises:
            StorageError: If the page file cannot be written to the scratch directory.
        """
        headers = {
            "User-Agent": self.config.user_agent,
            "Referer": self.config.referer,
            "Cookie": f"PHPSESSID={request.auth_token}",
            "Accept": self.config.accept,
        }
        file_path = self.page_path(request.module_id, request.page_number)

        try:
            with self.session.get(
                request.target_url, headers=headers, timeout=self.config.timeout, stream=True
            ) as response:
                if response.status_code == 404:
                    return FetchOutcome.terminal(StopReason.NOT_FOUND, status_code=404)

                if response.status_code != 200:
                    return FetchOutcome.terminal(
                        StopReason.UNEXPECTED_STATUS,
                        status_code=response.status_code,
                        detail=f"status {response.status_code}",
                    )

                try:
                    size = self._write_body(response, file_path)
                except requests.exceptions.RequestException as e:
                    # body broke off after a 200, the module ends here
                    _discard(file_path)
                    return FetchOutcome.terminal(
                        StopReason.PAYLOAD_TOO_SMALL,
                        status_code=200,
                        detail=f"body interrupted: {type(e).__name__}: {e}",
                    )

        except requests.exceptions.RequestException as e:
            _discard(file_path)
            logger.debug("Transport error for %s page %d: %s", request.module_id, request.page_number, e)
            return FetchOutcome.retryable(f"{type(e).__name__}: {e}")

        if size < self.config.min_payload_bytes:
            _discard(file_path)
            return FetchOutcome.terminal(
                StopReason.PAYLOAD_TOO_SMALL,
                status_code=200,
                detail=f"{size} bytes, session probably expired",
            )

        return FetchOutcome.accepted(size, file_path)

    def _write_body(self, response: requests.Response, file_path: Path) -> int:
        size = 0
        try:
            with open(file_path, "wb") as f:
                for chunk in response.iter_content(self.config.chunk_size):
                    size += f.write(chunk)
        except requests.exceptions.RequestException:
            # RequestException subclasses OSError
            raise
        except OSError as e:
            _discard(file_path)
            raise StorageError(f"Cannot write page file {file_path}: {e}")
        return size


# ─── MODULE SCANNER ────────────────────────────────────────────────────────────────
class ModuleScanner:
    """Walks the pages of one module until the viewer says there are no more."""

    def __init__(
        self,
        fetcher: PageFetcher,
        run_config: RunConfig,
        reporter: ProgressReporter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fetcher = fetcher
        self.config = run_config
        self.reporter = reporter
        self.sleep = sleep

    def scan(self, module_id: str, page_budget: int) -> ModuleResult:
        if page_budget < 1:
            raise ValueError("page_budget must be a positive integer")

        result = ModuleResult(module_id=module_id)
        consecutive_errors = 0
        page = 0

        for page in range(1, page_budget + 1):
            outcome = self.fetcher.fetch(self.fetcher.build_request(module_id, page))

            if outcome.status is FetchStatus.TERMINAL:
                result.stop_reason = outcome.stop_reason.value
                self.reporter.report(ProgressEvent(
                    kind=EventKind.PAGE_STOP,
                    module_id=module_id,
                    page_number=page,
                    message=outcome.stop_reason.value + (f" ({outcome.detail})" if outcome.detail else ""),
                    data={"reason": outcome.stop_reason.value, "status_code": outcome.status_code},
                ))
                break

            if outcome.is_accepted:
                result.page_files.append(outcome.file_path)
                consecutive_errors = 0
                self.reporter.report(ProgressEvent(
                    kind=EventKind.PAGE_OK,
                    module_id=module_id,
                    page_number=page,
                    message=f"{outcome.bytes_written} bytes",
                    data={"bytes": outcome.bytes_written},
                ))
            else:
                consecutive_errors += 1
                self.reporter.report(ProgressEvent(
                    kind=EventKind.PAGE_ERROR,
                    module_id=module_id,
                    page_number=page,
                    message=outcome.detail,
                    data={"consecutive_errors": consecutive_errors},
                ))
                if consecutive_errors >= self.config.max_consecutive_errors:
                    result.stop_reason = "consecutive-errors"
                    break

            self.sleep(self.config.request_delay)
        else:
            result.stop_reason = "page-budget"

        self.reporter.report(ProgressEvent(
            kind=EventKind.MODULE_DONE,
            module_id=module_id,
            message=f"{result.page_count} page(s), stopped at page {page} ({result.stop_reason})",
            data={"pages": result.page_count, "stop_reason": result.stop_reason},
        ))
        return result


# ─── DOCUMENT SET SCANNER ────────────────────────────────────────────────────────────────
class DocumentSetScanner:
    def __init__(
        self,
        module_scanner: ModuleScanner,
        run_config: RunConfig,
        reporter: ProgressReporter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.module_scanner = module_scanner
        self.config = run_config
        self.reporter = reporter
        self.sleep = sleep

    def run(self, module_ids: Sequence[str], page_budget: Optional[int] = None) -> DocumentSet:
        """Scan every module in order, one after the other.

        A module that yields nothing does not stop the run; every configured
        module is attempted.
        """
        if page_budget is None:
            page_budget = self.config.max_page

        document_set = DocumentSet()
        for index, module_id in enumerate(module_ids):
            if index > 0:
                self.reporter.report(ProgressEvent(
                    kind=EventKind.MODULE_PAUSE,
                    message=f"pausing {self.config.module_pause:g}s before {module_id}",
                ))
                self.sleep(self.config.module_pause)

            self.reporter.report(ProgressEvent(kind=EventKind.MODULE_START, module_id=module_id, message="scanning"))
            document_set.modules.append(self.module_scanner.scan(module_id, page_budget))

        return document_set


def build_scanner(
    run_config: RunConfig,
    session: requests.Session,
    scratch_dir: Path,
    reporter: ProgressReporter,
    sleep: Callable[[float], None] = time.sleep,
) -> DocumentSetScanner:
    """Wire a fetcher, module scanner and document set scanner together."""
    fetcher = PageFetcher(run_config, session, scratch_dir)
    module_scanner = ModuleScanner(fetcher, run_config, reporter, sleep=sleep)
    return DocumentSetScanner(module_scanner, run_config, reporter, sleep=sleep)
