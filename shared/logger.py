import logging
import datetime
import json

SWEEP_LOGGER_ROOT = "sweeper"


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }
        if record.exc_info:
            log_record["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }
        # logger.info("...", extra={"context": {...}})
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            log_record.update(context)
        return json.dumps(log_record, default=str)


def setup_logging(name: str = None, level: int = logging.INFO) -> logging.Logger:
    """Return a logger under the sweeper hierarchy with a JSON console handler.

    The handler is attached once to the hierarchy root so module loggers
    propagate into it instead of printing each line twice.
    """
    root = logging.getLogger(SWEEP_LOGGER_ROOT)
    if not root.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(JSONFormatter())
        root.addHandler(console_handler)
        root.setLevel(level)
    if not name:
        return root
    return logging.getLogger(f"{SWEEP_LOGGER_ROOT}.{name}")
