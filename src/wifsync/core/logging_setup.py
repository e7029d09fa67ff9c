"""
Central logging for wifsync.

- Console handler: INFO..CRITICAL on stderr (stdout stays clean for reports)
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation)
- Action-based file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret redaction: masks bearer/OAuth tokens and passwords in msg and args
- UTC timestamps in ISO-8601
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


class MaskSecretsFilter(logging.Filter):
    """
    Redact common secrets (bearer tokens, Google access tokens, API keys,
    passwords) from log records.
    """

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._~+/-]+)", re.IGNORECASE),
        re.compile(r"(\bBearer\s+)([A-Za-z0-9._~+/-]{8,})", re.IGNORECASE),
        re.compile(r"()(\bya29\.[A-Za-z0-9._-]+)"),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\b(?:access_)?token\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_arg(v) for k, v in record.args.items()}
            else:
                record.args = tuple(self._mask_arg(a) for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True

    def _mask_arg(self, value: Any) -> Any:
        # keep numbers intact so %d / %.1f still format
        if isinstance(value, str):
            return self._mask(value)
        if isinstance(value, (int, float)) or value is None:
            return value
        return self._mask(str(value))


class _ContextDefaults(logging.Filter):
    """Fill context fields for records that did not go through an adapter."""

    _fields = ("run_id", "action", "project", "repository")

    def filter(self, record: logging.LogRecord) -> bool:
        for name in self._fields:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _level(name: str, fallback: int) -> int:
    return getattr(logging, str(name).upper(), fallback)


def _ensure_single_console_handler(
    base_logger: logging.Logger,
    *,
    console_level: str,
    formatter: logging.Formatter,
    mask: logging.Filter,
    context: logging.Filter,
) -> None:
    """
    Make sure there is exactly ONE StreamHandler bound to sys.stderr
    (pytest may close/replace stdio between runs; also avoid duplicates).
    """
    for h in list(base_logger.handlers):
        if type(h) is logging.StreamHandler:
            base_logger.removeHandler(h)
            h.close()

    sh = logging.StreamHandler(stream=sys.stderr)
    sh.setLevel(_level(console_level, logging.INFO))
    sh.setFormatter(formatter)
    sh.addFilter(mask)
    sh.addFilter(context)
    base_logger.addHandler(sh)


def _ensure_app_file_handler(
    base_logger: logging.Logger,
    *,
    base_dir: str,
    file_level: str,
    formatter: logging.Formatter,
    mask: logging.Filter,
    context: logging.Filter,
) -> None:
    """
    Ensure a single TimedRotatingFileHandler points to <base_dir>/app.log.
    A handler left over from another base directory is replaced.
    """
    _ensure_dir(base_dir)
    desired = os.path.abspath(os.path.join(base_dir, "app.log"))
    Path(desired).touch(exist_ok=True)

    for h in list(base_logger.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if os.path.abspath(h.baseFilename) != desired:
                base_logger.removeHandler(h)
                h.close()

    if not any(
        isinstance(h, logging.handlers.TimedRotatingFileHandler)
        and os.path.abspath(h.baseFilename) == desired
        for h in base_logger.handlers
    ):
        rh = logging.handlers.TimedRotatingFileHandler(
            desired,
            when="midnight",
            backupCount=14,
            encoding="utf-8",
            utc=True,
        )
        rh.setLevel(_level(file_level, logging.DEBUG))
        rh.setFormatter(formatter)
        rh.addFilter(mask)
        rh.addFilter(context)
        base_logger.addHandler(rh)


def build_logger(
    *,
    name: str = "wifsync",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter.

    Design:
      - A base logger `<name>` holds console + rotating file handlers.
      - A child logger `<name>.<action>.<run_id>` holds a per-run file handler.
      - Records propagate to the base logger so they appear in all sinks.
    """
    mask = MaskSecretsFilter()
    context = _ContextDefaults()

    fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "run=%(run_id)s action=%(action)s project=%(project)s repo=%(repository)s | "
        "%(message)s"
    )
    formatter = _utc_formatter(fmt)

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)

    _ensure_single_console_handler(
        base_logger=base,
        console_level=console_level,
        formatter=formatter,
        mask=mask,
        context=context,
    )
    _ensure_app_file_handler(
        base_logger=base,
        base_dir=base_dir,
        file_level=file_level,
        formatter=formatter,
        mask=mask,
        context=context,
    )

    # --- Child logger with per-run action file (configured once per action+run) ---
    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True

    if not getattr(child, "_wifsync_action_configured", False):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir = os.path.join(base_dir, today)
        _ensure_dir(dated_dir)

        fh = logging.FileHandler(os.path.join(dated_dir, f"{action}_{run_id}.log"), encoding="utf-8")
        fh.setLevel(_level(file_level, logging.DEBUG))
        fh.setFormatter(formatter)
        fh.addFilter(mask)
        fh.addFilter(context)

        child.addHandler(fh)
        child._wifsync_action_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(
        child,
        {
            "run_id": run_id,
            "action": action,
            "project": (extra or {}).get("project") or "-",
            "repository": (extra or {}).get("repository") or "-",
        },
    )
    adapter.debug("Logger initialised")
    return adapter
