from __future__ import annotations

import logging
import sys

from crmguard.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install a single stream handler so repeated app/CLI bootstraps do not duplicate output.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if any(getattr(handler, "_crmguard", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._crmguard = True  # type: ignore[attr-defined]
    root.addHandler(handler)
