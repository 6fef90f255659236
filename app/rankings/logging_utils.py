from __future__ import annotations

from typing import Any

from .utils import log_line


def _ranking_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Emit a structured ``[RANKINGS][LABEL] key=value`` log line.

    ``phase`` doubles as the label when no label is given; otherwise it is
    emitted as part of the payload so the caller still captures the stage.
    """

    try:
        phase_label = label or (phase or "")
        if phase and label:
            fields.setdefault("phase", phase)
        payload = ", ".join(f"{k}={repr(v)}" for k, v in sorted(fields.items()))
        log_line(f"[RANKINGS][{phase_label.upper()}] {payload}")
    except Exception:
        # Never let logging break a crawl.
        return


__all__ = ["_ranking_event"]
