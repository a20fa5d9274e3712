import logging

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("docrag")
    root.setLevel(level)
    if any(getattr(handler, "_docrag", False) for handler in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._docrag = True  # type: ignore[attr-defined]
    root.addHandler(handler)
