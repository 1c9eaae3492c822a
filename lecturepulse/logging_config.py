import logging
import re

from lecturepulse.config import settings

_TOKEN_RE = re.compile(r"(token[=:\s,\"']+)([A-Za-z0-9_\-\.]{8,})", re.IGNORECASE)


def mask_tokens_in_text(text: str) -> str:
    """Replace API tokens that leak into log lines with a short prefix."""
    return _TOKEN_RE.sub(lambda m: f"{m.group(1)}{m.group(2)[:4]}***", text)


class MaskTokensFilter(logging.Filter):
    """A logging filter that masks relay / provider tokens inside log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = mask_tokens_in_text(msg)
        if masked != msg:
            # Replace message AFTER formatting args to avoid breaking %-formatting
            record.msg = masked
            record.args = ()
        return True


def setup_logging(level: str | None = None) -> None:
    level_name = (level or settings.log_level).upper()

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    root = logging.getLogger()
    for handler in root.handlers:
        handler.addFilter(MaskTokensFilter())
