import logging
from typing import Iterable, List, Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

Hint = Union[str, BaseException]


def normalise_hints(hints: Optional[Union[Hint, Iterable[Hint]]]) -> List[str]:
    """Flatten a hint, a list of hints or exceptions into printable lines."""
    if not hints:
        return []
    if isinstance(hints, (str, BaseException)):
        hints = [hints]

    lines = []
    for hint in hints:
        if isinstance(hint, BaseException):
            lines.append(f"{type(hint).__name__}: {hint}")
        else:
            lines.append(str(hint))
    return lines


class HintFormatter(logging.Formatter):
    """Formatter that renders ``extra={"hints": [...]}`` below the message."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        hints = normalise_hints(getattr(record, "hints", None))
        if hints:
            text += "".join(f"\n    ↳ {line}" for line in hints)
        return text


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Configure root logging with hint rendering."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    for handler in logging.getLogger().handlers:
        handler.setFormatter(HintFormatter(LOG_FORMAT))

    # Third-party request logging is too chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
