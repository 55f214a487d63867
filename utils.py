
import logging
import os
from pathlib import Path
from typing import List, Optional, Dict, Any, Mapping
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError
from tqdm import tqdm

from schemas import RunConfig, DeliveryConfig

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d %(message)s"

# ─── CUSTOM EXCEPTIONS ────────────────────────────────────────────────────────────────
class ScraperError(Exception):
    """Base exception for all scraper-related errors."""
    pass

class ConfigError(ScraperError):
    """Raised when the run configuration is missing or invalid."""
    pass

class DownloadError(ScraperError):
    """Raised when fetching page images fails in a way the fetch policy cannot absorb."""
    pass

class StorageError(DownloadError):
    """Raised when the scratch directory or a page file cannot be written."""
    pass

class AssemblyError(ScraperError):
    """Raised when the output PDF cannot be produced."""
    pass

class DeliveryError(ScraperError):
    """Raised when the messaging relay rejects or fails to receive the PDF."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

# ─── CONFIGURATION ──────────────────────────────────────────────────────────
def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the tunables from config.yaml.

    Only non-sensitive values live in the YAML file. The session id, relay key
    and the other per-run values are read from the environment by
    resolve_run_config().

    Args:
        config_path (Optional[str]): Path to custom config file. If None, uses default location.

    Returns:
        Dict[str, Any]: Dictionary containing configuration data.

    Raises:
        FileNotFoundError: If the configuration file is not found.
        ValueError: If the configuration file contains invalid YAML.

    Example:
        >>> config = load_config()
        >>> print(config['scraper']['modules'])
    """
    if config_path:
        main_config_path = Path(config_path)
    else:
        main_config_path = Path(__file__).resolve().parent / "config" / "config.yaml"

    try:
        with open(main_config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
        return config
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Configuration file not found: {e}")
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing configuration file: {e}")

def load_environment(env_file: Optional[str] = None) -> bool:
    """Load variables from a .env file into os.environ, if the file exists.

    Variables already present in the environment are not overridden.
    """
    path = Path(env_file) if env_file else Path.cwd() / ".env"
    if not path.exists():
        return False
    return load_dotenv(dotenv_path=path, override=False)

def _env(env: Mapping[str, str], key: str, default: str = "") -> str:
    # empty variables count as unset
    value = env.get(key, "")
    return value if value else default

def resolve_run_config(config: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> RunConfig:
    """
    Merge the YAML tunables with the environment into a validated RunConfig.

    Args:
        config (Dict[str, Any]): Dictionary returned by load_config().
        env (Optional[Mapping[str, str]]): Environment mapping, defaults to os.environ.

    Returns:
        RunConfig: Fully resolved configuration for one run.

    Raises:
        ConfigError: If a required value is missing or a value fails validation.
    """
    if env is None:
        env = os.environ

    scraper_cfg = config.get("scraper", {})
    pdf_cfg = config.get("pdf", {})
    delivery_cfg = config.get("delivery", {})
    defaults = config.get("defaults", {})

    try:
        return RunConfig(
            base_url=_env(env, "BASE_URL"),
            subfolder=_env(env, "SUBFOLDER"),
            session_id=_env(env, "PHPSESSID"),
            output_name=_env(env, "OUTPUT_NAME", "output"),
            max_page=_env(env, "MAX_PAGE", "0"),
            user_agent=_env(env, "USER_AGENT", defaults.get("user_agent", "")),
            referer=_env(env, "REFERER"),
            accept=_env(env, "ACCEPT", defaults.get("accept", "")),
            modules=scraper_cfg.get("modules", [f"M{i}" for i in range(1, 10)]),
            default_max_page=scraper_cfg.get("default_max_page", 200),
            request_delay=scraper_cfg.get("request_delay_seconds", 1),
            module_pause=scraper_cfg.get("module_pause_seconds", 3),
            max_consecutive_errors=scraper_cfg.get("max_consecutive_errors", 5),
            min_payload_bytes=scraper_cfg.get("min_payload_bytes", 2000),
            timeout=scraper_cfg.get("timeout_seconds", 60),
            chunk_size=scraper_cfg.get("chunk_size", 8192),
            scratch_prefix=scraper_cfg.get("scratch_prefix", "temp_images"),
            page_width_mm=pdf_cfg.get("page_width_mm", 210),
            page_height_mm=pdf_cfg.get("page_height_mm", 297),
            margin_mm=pdf_cfg.get("margin_mm", 5),
            progress_every=pdf_cfg.get("progress_every", 10),
            delivery=DeliveryConfig(
                api_url=_env(env, "WAHA_API_URL"),
                api_key=_env(env, "WAHA_API_KEY"),
                session=_env(env, "WAHA_SESSION", defaults.get("waha_session", "default")),
                recipient=_env(env, "WAHA_RECIPIENT"),
                timeout=delivery_cfg.get("timeout_seconds", 600),
                chunk_size=delivery_cfg.get("chunk_size", 65536),
                caption_template=delivery_cfg.get("caption_template", "{name}"),
            ),
        )
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")

# ─── LOGGER ────────────────────────────────────────────────────────────────
class TqdmLoggingHandler(logging.Handler):
    """
    Custom logging handler that works with tqdm progress bars.

    This handler ensures that log messages don't interfere with tqdm progress bars
    by using tqdm.write() instead of print().
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, end='\n')
            self.flush()
        except Exception:
            self.handleError(record)

def setup_logger(name: str, config: Dict[str, Any], level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return a logger that works with tqdm progress bars.

    Calling it again for the same name does not stack a second console handler.

    Args:
        name (str): Name of the logger (typically __name__).
        config (Dict[str, Any]): Configuration dictionary containing logger settings.
        level (Optional[str]): Optional log level override.

    Returns:
        logging.Logger: Configured logger instance.

    Example:
        >>> logger = setup_logger(__name__, config)
        >>> logger.info("Processing started")
    """
    logger = logging.getLogger(name)
    if level is None:
        logger.setLevel(getattr(logging, config["logger"]["level"]))
    else:
        logger.setLevel(getattr(logging, level))

    if not any(isinstance(h, TqdmLoggingHandler) for h in logger.handlers):
        console_handler = TqdmLoggingHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

    return logger

def add_file_handler(log_file: str) -> logging.Handler:
    """Mirror every record that reaches the root logger into a log file."""
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
    return file_handler

# ─── DIRECTORY MANAGEMENT ──────────────────────────────────────────────────
def ensure_directories(directories: List[Path]) -> None:
    """
    Ensure all specified directories exist, creating them if necessary.

    Args:
        directories (List[Path]): List of Path objects representing directories to create.

    Raises:
        StorageError: If a directory cannot be created.
    """
    for directory in directories:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create directory {directory}: {e}")

def mask_secret(value: str, visible: int = 10) -> str:
    """Show only the first characters of a credential, e.g. for the config summary."""
    return value[:min(visible, len(value))] + "..."
