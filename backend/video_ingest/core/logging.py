from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    # Idempotent: uvicorn reload and pytest both call create_app() more than once.
    if not any(getattr(h, "_video_ingest", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._video_ingest = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel((level or "INFO").upper())
