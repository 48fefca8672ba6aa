import logging
import os
import sys
import time
from typing import Optional

from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm

FILE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

_LEVEL_COLORS = {
    logging.DEBUG: Style.DIM,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}


class TqdmHandler(logging.StreamHandler):
    """Console handler that prints above any active tqdm bar."""

    def __init__(self, stream=None, color: bool = False):
        super().__init__(stream or sys.stderr)
        self.color = color

    def format(self, record):
        text = super().format(record)
        color = _LEVEL_COLORS.get(record.levelno) if self.color else None
        if color:
            return color + text + Style.RESET_ALL
        return text

    def emit(self, record):
        try:
            tqdm.write(self.format(record), file=self.stream)
            self.flush()
        except Exception:
            self.handleError(record)


def default_log_path(prefix: str = "scape") -> str:
    return f"{prefix}_{time.strftime('%Y-%m-%d_%H-%M-%S')}.log"


def setup_logging(log_file: Optional[str] = None, verbose: bool = False, color: Optional[bool] = None,
                  quiet: bool = False) -> logging.Logger:
    """Console (through tqdm) + optional log file on the root logger."""
    if color is None:
        color = sys.stderr.isatty() and os.environ.get("NO_COLOR") is None
    if color:
        # Windows-friendly colors; no-op elsewhere
        just_fix_windows_console()

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    console = TqdmHandler(color=color)
    console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    console.setLevel(logging.WARNING if quiet else logging.DEBUG)
    root.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(fh)

    # urllib3 chatter is not useful at debug level
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return root
