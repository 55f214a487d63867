from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─── CONFIGURATION ────────────────────────────────────────────────────────────────
class DeliveryConfig(BaseModel):
    """Relay settings. Delivery only happens when all four connection values are set."""
    api_url: str = ""
    api_key: str = ""
    session: str = ""
    recipient: str = ""
    timeout: float = 600
    chunk_size: int = Field(default=65536, gt=0)
    caption_template: str = "{name}"

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("caption_template")
    @classmethod
    def caption_template_uses_only_name(cls, v: str) -> str:
        try:
            v.format(name="")
        except (KeyError, IndexError, AttributeError, ValueError) as e:
            raise ValueError(f"caption_template may only contain the {{name}} placeholder: {e!r}")
        return v

    @property
    def enabled(self) -> bool:
        return all([self.api_url, self.api_key, self.session, self.recipient])


class RunConfig(BaseModel):
    """Everything one run needs, resolved before the pipeline starts."""
    base_url: str
    subfolder: str = ""
    session_id: str
    output_name: str = "output"
    max_page: int = 0
    user_agent: str = ""
    referer: str = ""
    accept: str = ""

    modules: List[str] = Field(default_factory=lambda: [f"M{i}" for i in range(1, 10)])
    default_max_page: int = Field(default=200, gt=0)
    request_delay: float = Field(default=1, ge=0)
    module_pause: float = Field(default=3, ge=0)
    max_consecutive_errors: int = Field(default=5, gt=0)
    min_payload_bytes: int = Field(default=2000, ge=0)
    timeout: float = Field(default=60, gt=0)
    chunk_size: int = Field(default=8192, gt=0)
    scratch_prefix: str = "temp_images"

    page_width_mm: float = Field(default=210, gt=0)
    page_height_mm: float = Field(default=297, gt=0)
    margin_mm: float = Field(default=5, ge=0)
    progress_every: int = Field(default=10, gt=0)

    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    @field_validator("session_id")
    @classmethod
    def session_id_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("PHPSESSID must not be empty")
        return v.strip()

    @field_validator("output_name")
    @classmethod
    def output_name_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("OUTPUT_NAME must not be empty")
        if any(c in v for c in "\"\r\n"):
            raise ValueError("OUTPUT_NAME must not contain quotes or line breaks")
        return v.strip()

    @field_validator("subfolder")
    @classmethod
    def subfolder_trailing_slash(cls, v: str) -> str:
        if not v.endswith("/"):
            v += "/"
        return v

    @field_validator("max_page", mode="before")
    @classmethod
    def parse_max_page(cls, v: Any) -> int:
        try:
            return int(v)
        except (TypeError, ValueError):
            return 0

    @model_validator(mode="after")
    def apply_default_max_page(self) -> "RunConfig":
        if self.max_page <= 0:
            self.max_page = self.default_max_page
        if self.margin_mm * 2 >= min(self.page_width_mm, self.page_height_mm):
            raise ValueError("margin leaves no drawing area on the page")
        return self

    @property
    def delivery_enabled(self) -> bool:
        return self.delivery.enabled

    @property
    def cookie(self) -> str:
        return f"PHPSESSID={self.session_id}"

    @property
    def output_path(self) -> Path:
        return Path(f"{self.output_name}.pdf")


# ─── FETCH PHASE ────────────────────────────────────────────────────────────────
class FetchStatus(Enum):
    """Classification of a single page fetch."""
    ACCEPTED = "accepted"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class StopReason(Enum):
    NOT_FOUND = "not-found"
    UNEXPECTED_STATUS = "unexpected-status"
    PAYLOAD_TOO_SMALL = "payload-too-small"


class FetchRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    module_id: str = Field(min_length=1)
    page_number: int = Field(ge=1)
    target_url: str
    auth_token: str


class FetchOutcome(BaseModel):
    """Result of one page fetch: Accepted, RetryableFailure or TerminalStop."""
    model_config = ConfigDict(frozen=True)

    status: FetchStatus
    bytes_written: int = 0
    file_path: Optional[Path] = None
    stop_reason: Optional[StopReason] = None
    status_code: Optional[int] = None
    detail: str = ""

    @classmethod
    def accepted(cls, bytes_written: int, file_path: Path) -> "FetchOutcome":
        return cls(status=FetchStatus.ACCEPTED, bytes_written=bytes_written, file_path=file_path)

    @classmethod
    def retryable(cls, detail: str) -> "FetchOutcome":
        return cls(status=FetchStatus.RETRYABLE, detail=detail)

    @classmethod
    def terminal(cls, reason: StopReason, status_code: Optional[int] = None, detail: str = "") -> "FetchOutcome":
        return cls(status=FetchStatus.TERMINAL, stop_reason=reason, status_code=status_code, detail=detail)

    @property
    def is_accepted(self) -> bool:
        return self.status is FetchStatus.ACCEPTED


class ModuleResult(BaseModel):
    module_id: str
    page_files: List[Path] = Field(default_factory=list)
    stop_reason: Optional[str] = None

    @property
    def page_count(self) -> int:
        return len(self.page_files)


class DocumentSet(BaseModel):
    """Page files of every module, in module order."""
    modules: List[ModuleResult] = Field(default_factory=list)

    @property
    def files(self) -> List[Path]:
        return [f for m in self.modules for f in m.page_files]

    def __len__(self) -> int:
        return sum(m.page_count for m in self.modules)


# ─── ASSEMBLY PHASE ────────────────────────────────────────────────────────────────
class PageImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    width_pixels: int = Field(gt=0)
    height_pixels: int = Field(gt=0)

    @property
    def aspect_ratio(self) -> float:
        return self.width_pixels / self.height_pixels


class Placement(BaseModel):
    """Image rectangle on the output page, in millimetres from the top-left corner."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float


# ─── PROGRESS EVENTS ────────────────────────────────────────────────────────────────
class EventKind(Enum):
    CONFIG = "config"
    MODULE_START = "module-start"
    PAGE_OK = "page-ok"
    PAGE_ERROR = "page-error"
    PAGE_STOP = "page-stop"
    MODULE_DONE = "module-done"
    MODULE_PAUSE = "module-pause"
    FETCH_DONE = "fetch-done"
    NO_FILES = "no-files"
    ASSEMBLY_START = "assembly-start"
    ASSEMBLY_PROGRESS = "assembly-progress"
    PAGE_SKIPPED = "page-skipped"
    ASSEMBLY_DONE = "assembly-done"
    SCRATCH_REMOVED = "scratch-removed"
    DELIVERY_START = "delivery-start"
    DELIVERY_DONE = "delivery-done"
    RUN_SUMMARY = "run-summary"


class ProgressEvent(BaseModel):
    kind: EventKind
    message: str = ""
    module_id: Optional[str] = None
    page_number: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class RunStatus(Enum):
    """Terminal state of one run."""
    COMPLETED = "completed"
    NO_FILES = "no-files"
    ASSEMBLY_ERROR = "assembly-error"
    DELIVERY_ERROR = "delivery-error"
    STORAGE_ERROR = "storage-error"
    CONFIG_ERROR = "config-error"
