"""日志配置，所有输出都会屏蔽 bearer token"""

import logging
import re

REDACTED = "***REDACTED***"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)


def redact(text: str) -> str:
    """屏蔽文本里的 bearer token"""
    return _BEARER_RE.sub(rf"\g<1>{REDACTED}", text)


def redact_auth(headers: dict[str, str]) -> dict[str, str]:
    """返回 Authorization 已屏蔽的 headers 副本"""
    redacted = dict(headers)
    for key in list(redacted):
        if key.lower() == "authorization":
            redacted[key] = REDACTED
    return redacted


class RedactingFilter(logging.Filter):
    """在格式化之前屏蔽日志里的 token"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())
