import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Chatty third-party loggers that drown out stage progress at INFO level
NOISY_LOGGERS = ("numba", "matplotlib", "fontTools", "h5py")


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Set up the root logger for one workflow stage.

    Installs a stream handler and, when ``logfile`` is given, a file handler
    that truncates the file. Handlers from a previous stage (or from Typer's
    test runner) are removed first so messages are not duplicated.
    """
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
