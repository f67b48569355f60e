"""
Process-wide logging for the relay.

Records from the "chatrelay" logger are written to one file per day under
logs/ (app-YYYY-MM-DD.log); everything, uvicorn included, also goes to the
console through the root logger.
"""

import datetime
import logging
from pathlib import Path
from typing import IO, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

APP_LOGGER_NAME = "chatrelay"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"

_configured = False


def _zone(name: Optional[str]) -> datetime.tzinfo:
    if name:
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError:
            logging.getLogger(APP_LOGGER_NAME).warning(
                "Unknown LOG_TIMEZONE %r, using local time", name
            )
    return datetime.datetime.now().astimezone().tzinfo or datetime.timezone.utc


class LocalTimezoneFormatter(logging.Formatter):
    """
    Renders %(asctime)s as ISO-8601 with milliseconds in LOG_TIMEZONE
    (system local time when unset or unknown).
    """

    def __init__(self, fmt: str = LOG_FORMAT, *, timezone_name: Optional[str] = None):
        super().__init__(fmt)
        self.tz = _zone(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self.tz)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat(timespec="milliseconds")


class AppRecordFilter(logging.Filter):
    """Lets through records of the application logger and its children."""

    def __init__(self) -> None:
        super().__init__(APP_LOGGER_NAME)


class DailyFileHandler(logging.Handler):
    """
    Appends to <log_dir>/<prefix>-<date>.log, switching files when the date
    changes and keeping only the newest `backup_count` files.
    """

    def __init__(
        self,
        log_dir: Path,
        filename_prefix: str = "app",
        backup_count: int = 7,
        encoding: str = "utf-8",
    ) -> None:
        super().__init__()
        self.log_dir = Path(log_dir)
        self.filename_prefix = filename_prefix
        self.backup_count = backup_count
        self.encoding = encoding
        self._day: Optional[datetime.date] = None
        self._fh: Optional[IO[str]] = None
        self._open_for(datetime.date.today())

    def path_for(self, day: datetime.date) -> Path:
        return self.log_dir / f"{self.filename_prefix}-{day.isoformat()}.log"

    def _open_for(self, day: datetime.date) -> None:
        if self._fh is not None:
            self._fh.close()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path_for(day), "a", encoding=self.encoding)
        self._day = day
        self._prune()

    def _prune(self) -> None:
        if self.backup_count <= 0:
            return
        dated = sorted(self.log_dir.glob(f"{self.filename_prefix}-*.log"))
        for stale in dated[: max(0, len(dated) - self.backup_count)]:
            # Missing files are fine; another worker may have pruned first.
            stale.unlink(missing_ok=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            today = datetime.date.today()
            if today != self._day or self._fh is None:
                self._open_for(today)
            self._fh.write(line + "\n")
            self._fh.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
        finally:
            self.release()
            super().close()


def _level(name: object) -> int:
    level = logging.getLevelName(str(name).upper()) if isinstance(name, str) else None
    return level if isinstance(level, int) else logging.INFO


def setup_logging(log_dir: Optional[Path] = None) -> None:
    """
    Configure logging once per process; repeated calls do nothing.
    """
    global _configured
    if _configured:
        return

    level = _level(settings.log_level)
    formatter = LocalTimezoneFormatter(timezone_name=settings.log_timezone)

    file_handler = DailyFileHandler(log_dir or Path("logs"))
    file_handler.setFormatter(formatter)
    file_handler.addFilter(AppRecordFilter())

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(level)
    app_logger.addHandler(file_handler)

    root = logging.getLogger()
    root.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    _configured = True


logger = logging.getLogger(APP_LOGGER_NAME)
