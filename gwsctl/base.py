"""
BaseCommand — abstract base class for every gwsctl subcommand.

Provides:
  - Rotating file logger + stderr handler, under <config>/logs/gwsctl.log
  - Abstract run() method that must return a JSON-serialisable dict
  - execute(): runs the command, prints the result (JSON or text) to stdout
  - Automatic elapsed-time logging

Subclass usage:
    class ListThings(BaseCommand):
        name = "things list"

        def run(self) -> dict:
            self.logger.info("listing...")
            return {"things": []}
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from abc import ABC, abstractmethod
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, TextIO

from . import config

LOGGER_NAME = "gwsctl"


# ── Logging ───────────────────────────────────────────────────────────────────

def setup_logging(log_level: int = logging.WARNING, log_to_file: bool = True) -> logging.Logger:
    """
    Configure the package logger to write to both:
      - <config>/logs/gwsctl.log  (rotating, max 2 MB × 5 backups, always DEBUG+INFO)
      - stderr                    (at ``log_level``; stdout is reserved for results)
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Avoid adding duplicate handlers when main() runs more than once (tests)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)-8s] %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_to_file:
        try:
            config.logs_dir().mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                config.logs_dir() / "gwsctl.log",
                maxBytes=2_000_000,   # 2 MB per file
                backupCount=5,
                encoding="utf-8",
            )
        except OSError as e:
            # read-only home, sandbox, ...: keep going with stderr only
            sys.stderr.write(f"warning: file logging disabled: {e}\n")
        else:
            file_handler.setFormatter(fmt)
            file_handler.setLevel(min(log_level, logging.INFO))
            logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    stream_handler.setLevel(log_level)
    logger.addHandler(stream_handler)
    return logger


# ── Output ────────────────────────────────────────────────────────────────────

def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if value is None:
        return "-"
    if isinstance(value, (list, tuple)):
        return ", ".join(_format_value(v) for v in value) or "-"
    return str(value)


def emit(result: dict[str, Any], as_json: bool, out: Optional[TextIO] = None) -> None:
    """Print a command result as JSON, or as aligned ``key: value`` lines."""
    out = out or sys.stdout
    if as_json:
        out.write(json.dumps(result, indent=2, default=str) + "\n")
        return
    for key, value in result.items():
        if isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
            out.write(f"{key}:\n")
            for item in value:
                out.write("  " + "\t".join(_format_value(v) for v in item.values()) + "\n")
            continue
        out.write(f"{key}: {_format_value(value)}\n")


# ── Abstract interface ────────────────────────────────────────────────────────

class BaseCommand(ABC):
    """Abstract base for all gwsctl subcommands."""

    name: str = ""

    def __init__(self, args: argparse.Namespace) -> None:
        self.args = args
        self.logger: logging.Logger = logging.getLogger(f"{LOGGER_NAME}.cmd.{type(self).__name__.lower()}")

    @classmethod
    def add_arguments(cls, parser: argparse.ArgumentParser) -> None:
        """Register subcommand-specific flags."""

    @abstractmethod
    def run(self) -> dict[str, Any]:
        """
        Execute the command.

        Must return a dict that is JSON-serialisable (str keys, JSON-safe values).
        datetime objects are serialised via default=str.
        """

    def execute(self) -> int:
        t0 = time.monotonic()
        try:
            result = self.run()
        except Exception:
            self.logger.debug("%s failed after %.2fs", self.name, time.monotonic() - t0, exc_info=True)
            raise
        self.logger.debug("%s completed in %.2fs", self.name, time.monotonic() - t0)
        emit(result, getattr(self.args, "json", False))
        return 0
