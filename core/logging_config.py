import logging, os, sys
from logging.handlers import RotatingFileHandler
from .config import settings


def configure_logging(component: str, log_dir: str = None, level: int = logging.INFO):
    """
    Sets up the root logger for one process of the pool.
    Console output always, plus logs/<component>.log when the directory is writable.
    """
    fmt = f"%(asctime)s - [{component.capitalize()}] - %(levelname)s - %(message)s"
    log_dir = log_dir or settings.LOG_DIR

    root = logging.getLogger()
    root.setLevel(level)
    # calling twice (tests, reloads) must not duplicate handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(fmt))
    root.addHandler(console)

    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        logging.getLogger(__name__).warning(
            "Could not create log directory %s, continuing without file handler", log_dir
        )
        return root

    file_handler = RotatingFileHandler(os.path.join(log_dir, f"{component}.log"),
                                       maxBytes=10_000_000, backupCount=5)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(file_handler)
    return root
