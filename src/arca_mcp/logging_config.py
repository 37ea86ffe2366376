"""Logging setup with credential redaction."""

from __future__ import annotations

import logging
import re
import sys

LOGGER_NAME = "arca_mcp"


class CredentialRedactionFilter(logging.Filter):
    """Mask WSAA tokens, signs and PEM blocks before they reach a handler."""

    _patterns = [
        (re.compile(r"(<(token|sign)>)[^<]+(</\2>)", re.IGNORECASE), r"\1***\3"),
        (re.compile(r"((?:token|sign)=)[A-Za-z0-9+/=]{16,}"), r"\1***"),
        (
            re.compile(r"-----BEGIN ([A-Z ]*PRIVATE KEY)-----.*?-----END \1-----", re.DOTALL),
            r"[REDACTED \1]",
        ),
    ]

    def redact(self, text: str) -> str:
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self.redact(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            else:
                record.args = tuple(
                    self.redact(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        return True


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure the package logger.

    Output goes to stderr; stdout belongs to the MCP stdio transport.
    Calling this more than once does not stack handlers.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    if not any(getattr(h, "_arca_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler._arca_handler = True
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handler.addFilter(CredentialRedactionFilter())
        logger.addHandler(handler)

    if not any(isinstance(f, CredentialRedactionFilter) for f in logger.filters):
        logger.addFilter(CredentialRedactionFilter())
    return logger
