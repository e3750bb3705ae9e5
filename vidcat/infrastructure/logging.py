import logging
import sys
from pathlib import Path
from typing import Optional


def setup_logging(log_path: Optional[Path] = None, debug: bool = False, process_name: str = "vidcat") -> logging.Logger:
    """
    Setup logging configuration for a vidcat process.

    Always logs to stderr (container friendly); also logs to a file when
    log_path is given, creating its parent directory.
    Returns configured logger instance.

    Args:
        log_path: Optional path to log file
        debug: If True, enable DEBUG level logging (includes encoder stderr lines)
        process_name: Name used in the startup line (worker, db-consumer, ...)
    """
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_path:
        log_file = Path(log_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        handlers=handlers,
        force=True  # Override any existing configuration
    )
    # pika is chatty at INFO (connection/channel lifecycle)
    logging.getLogger("pika").setLevel(logging.DEBUG if debug else logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {process_name} file={log_path or '-'} (debug={'ON' if debug else 'OFF'})")

    return logger
