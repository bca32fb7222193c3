import json
import logging
import os
import sys

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers that are chatty at INFO and only interesting when debugging.
_NOISY_LOGGERS = ("urllib3", "requests")


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line.

    Keys: ``ts``, ``level``, ``logger``, ``msg``, plus ``exc`` with the
    formatted traceback when the record carries exception info.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _make_formatter(log_format: str, with_name: bool) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter(datefmt=DATE_FORMAT)
    name = " %(name)s" if with_name else ""
    return logging.Formatter(
        f"[%(asctime)s] [%(levelname)s]{name} %(message)s", datefmt=DATE_FORMAT
    )


def _resolve_level(debug: bool, level: str | None) -> int:
    if debug:
        return logging.DEBUG
    name = os.getenv("LOG_LEVEL", level or "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(
    debug: bool = False,
    log_file: str | None = None,
    log_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure logging for the tend CLI.

    Records go to stderr; stdout is reserved for reports.  With *log_file*
    every record is also appended to that file, tagged with its logger name.

    Args:
        debug: Force DEBUG regardless of any other setting.
        log_file: Optional file to append records to.
        log_format: "text" (default) or "json".
        level: Level name from the config file.

    Environment variables:
        LOG_LEVEL: Takes precedence over *level*.  Default: INFO.
    """
    log_level = _resolve_level(debug, level)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_make_formatter(log_format, with_name=False))
    handlers: list[logging.Handler] = [console]

    if log_file:
        to_file = logging.FileHandler(log_file, mode="a")
        to_file.setFormatter(_make_formatter(log_format, with_name=True))
        handlers.append(to_file)

    logging.basicConfig(level=log_level, handlers=handlers)

    if log_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
