import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# Records logged outside a session render with this placeholder.
_NO_SESSION = "-"

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level:<7}</level> "
    "<magenta>{extra[session_id]:.8}</magenta> <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level:<7} [{extra[session_id]}] {name}:{line} {message}"


def _has_session(record: dict) -> bool:
    return record["extra"].get("session_id", _NO_SESSION) != _NO_SESSION


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, sessions_only: bool = False):
        self._sessions_only = sessions_only

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format=_CONSOLE_FORMAT,
            filter=_has_session if self._sessions_only else None,
        )

    def describe(self, level: str) -> str:
        scope = "sessions" if self._sessions_only else "all"
        return f"console (stderr, {level}, {scope})"


class _RotatingFileConsumer:
    label = "file"
    serialize = False
    sessions_only = False

    def __init__(self, path: str, rotation: str = "10 MB", retention: int = 3):
        self.path = Path(path)
        self.rotation = rotation
        self.retention = retention

    def register(self, level: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        options: dict[str, Any] = {"serialize": True} if self.serialize else {"format": _FILE_FORMAT}
        if self.sessions_only:
            options["filter"] = _has_session
        logger.add(
            str(self.path),
            level=level,
            rotation=self.rotation,
            retention=self.retention,
            encoding="utf-8",
            **options,
        )

    def describe(self, level: str) -> str:
        return f"{self.label} ({self.path}, {level})"


class FileLogConsumer(_RotatingFileConsumer):
    def __init__(self, path: str = "compaction.log", **kwargs: Any):
        super().__init__(path, **kwargs)


class SessionJsonLogConsumer(_RotatingFileConsumer):
    """JSON lines holding only records bound to a compaction session."""

    label = "session json"
    serialize = True
    sessions_only = True

    def __init__(self, path: str = "sessions.jsonl", **kwargs: Any):
        super().__init__(path, **kwargs)


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "session_json": SessionJsonLogConsumer,
}

_DEFAULT_CONSUMERS: tuple[dict[str, Any], ...] = (
    {"type": "console"},
    {"type": "file"},
)


def _build_consumer(config: dict[str, Any]) -> LogConsumer | None:
    consumer_type = config.get("type", "")
    cls = _CONSUMER_TYPES.get(consumer_type)
    if cls is None:
        logger.warning(f"Skipping log consumer with unknown type {consumer_type!r}")
        return None
    options = {name: value for name, value in config.items() if name not in ("type", "level")}
    return cls(**options)


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers.

    Every record carries a ``session_id`` extra (``"-"`` unless bound), so the
    formats can show which compaction session a line belongs to. Returns a
    human-readable description per registered consumer.
    """
    logger.remove()
    logger.configure(extra={"session_id": _NO_SESSION})

    registered: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        consumer = _build_consumer(config)
        if consumer is None:
            continue
        consumer_level = config.get("level", level)
        consumer.register(consumer_level)
        registered.append(consumer.describe(consumer_level))
    return registered
