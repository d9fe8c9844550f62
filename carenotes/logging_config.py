"""
Logging configuration for carenotes.

Suppress verbose model-library output by default for better UX.
"""

import logging
import os
import sys
import warnings

# Set environment variables BEFORE the model libraries are imported
if not os.environ.get("CARENOTES_VERBOSE"):
    os.environ["HF_HUB_DISABLE_PROGRESS_BARS"] = "1"
    os.environ["TRANSFORMERS_VERBOSITY"] = "error"
    os.environ["TOKENIZERS_PARALLELISM"] = "false"
    os.environ["HF_HUB_DISABLE_TELEMETRY"] = "1"
    os.environ["HF_HUB_DISABLE_SYMLINKS_WARNING"] = "1"

_LIBRARY_LOGGERS = ("transformers", "sentence_transformers", "huggingface_hub", "httpx")


def configure_quiet_mode(quiet: bool = True):
    """
    Keep the console clean while the embedding model downloads and loads.

    Model-library and httpx loggers drop to ERROR and Python warnings are
    ignored. carenotes' own loggers are left alone, so the ops log still
    records indexing and sync activity.
    """
    if not quiet:
        return

    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("TRANSFORMERS_VERBOSITY", "error")
    warnings.filterwarnings("ignore")

    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    os.environ.pop("HF_HUB_DISABLE_PROGRESS_BARS", None)
    os.environ.pop("TRANSFORMERS_VERBOSITY", None)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("carenotes",) + _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a store.

    Writes to {store_path}/carenotes-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(store_path / "carenotes-ops.log"),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    app_logger = logging.getLogger("carenotes")
    app_logger.addHandler(handler)
    # Ensure INFO gets through even in quiet mode
    if app_logger.level == logging.NOTSET or app_logger.level > logging.INFO:
        app_logger.setLevel(logging.INFO)

    return handler
