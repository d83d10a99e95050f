import json
import logging
import os
from logging.handlers import RotatingFileHandler

from quota_library.error_handler import is_unrecoverable_error


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
        }
        if isinstance(record.msg, dict):
            log_record.update(record.msg)
        else:
            log_record["message"] = record.getMessage()
        return json.dumps(log_record, default=str)


def setup_failure_logger() -> logging.Logger:
    """Sets up a dedicated JSON logger for accounts that failed to refresh."""
    logger = logging.getLogger("quota_app.failures")
    if any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        return logger

    log_dir = os.getenv("KUOTA_LOG_DIR") or "logs"
    os.makedirs(log_dir, exist_ok=True)

    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = RotatingFileHandler(
        os.path.join(log_dir, "refresh_failures.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=2,
    )
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger


def log_refresh_failure(account_id: int, error: Exception, *, trigger: str) -> None:
    """Logs a structured record for one isolated refresh failure. No credentials."""
    setup_failure_logger().error(
        {
            "account_id": account_id,
            "trigger": trigger,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "needs_user_action": is_unrecoverable_error(error),
        }
    )
