import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from chatloop_core.config.settings import settings


class JsonFormatter(logging.Formatter):
    def __init__(self, redact: bool = False):
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(log_dir: str | Path | None = None) -> logging.Logger:
    logger = logging.getLogger("chatloop_core")
    logger.setLevel(settings.log_level)
    # 重复 import / 测试里重复调用时不叠加 handler
    for handler in list(logger.handlers):
        if getattr(handler, "_chatloop_json", False):
            logger.removeHandler(handler)
            handler.close()
    target = Path(log_dir or settings.log_dir)
    target.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(target / "chatloop.log", encoding="utf-8")
    fh.setLevel(settings.log_level)
    fh.setFormatter(JsonFormatter(redact=settings.log_redact_content))
    fh._chatloop_json = True  # type: ignore[attr-defined]
    logger.addHandler(fh)
    return logger


logger = setup_logger()
