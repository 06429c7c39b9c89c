"""DICAL logging setup."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console()

FILE_FORMAT = "[%(asctime)s] %(levelname)-8s %(message)s"


def setup_logging(log_dir: Optional[str] = None, level: str = "INFO", use_rich: bool = True) -> logging.Logger:
    """
    Setup logging with rich console output and optional file output.

    Parameters
    ----------
    log_dir : str, optional
        Directory to write a timestamped log file to; no file when None.
    level : str
        Logging level name.
    use_rich : bool
        Use a rich console handler instead of a plain stream handler.

    Returns
    -------
    logger : logging.Logger
        The configured "dical" logger.
    """
    logger = logging.getLogger("dical")
    logger.setLevel(level)
    logger.handlers.clear()

    if log_dir is not None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = Path(log_dir) / f"dical_run_{timestamp}.log"
        fh = logging.FileHandler(log_file)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%H:%M:%S"))
        logger.addHandler(fh)

    if use_rich:
        ch = RichHandler(console=console, show_time=True, show_path=False)
    else:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%H:%M:%S"))
    ch.setLevel(level)
    logger.addHandler(ch)

    return logger
