from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "taskflow-console"


def setup_logging(level: str = "INFO") -> None:
    """
    Один консольный хендлер на root-логгер.

    Повторный вызов только меняет уровень: чужие хендлеры (uvicorn, pytest)
    не трогаем.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for h in root.handlers:
        if h.get_name() == _HANDLER_NAME:
            return

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    ch = logging.StreamHandler(sys.stderr)
    ch.set_name(_HANDLER_NAME)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    logging.captureWarnings(True)
