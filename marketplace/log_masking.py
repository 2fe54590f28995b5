"""
Log Masking — keep configured secrets out of log output

Secrets are masked by value: the server registers every secret it loads
(delegate key, auth secret, catalog API key) and the filter replaces those
literals wherever they show up. Keypairs written as 64-byte JSON arrays are
masked by shape. Public data such as transaction signatures and addresses is
left alone, so log lines stay traceable on a block explorer.
"""

import logging
import re
from typing import Optional

REDACTED = "[REDACTED]"

_KEYPAIR_ARRAY = re.compile(r'\[\s*(?:\d{1,3}\s*,\s*){63}\d{1,3}\s*\]')

# Short values would mask ordinary words
_MIN_SECRET_LENGTH = 8


class SecretMaskingFilter(logging.Filter):
    """Redact registered secrets and keypair byte arrays from log records."""

    def __init__(self, secrets=()):
        super().__init__()
        self._secrets: set[str] = set()
        for secret in secrets:
            self.add_secret(secret)

    def add_secret(self, secret: Optional[str]) -> None:
        secret = (secret or "").strip()
        if len(secret) >= _MIN_SECRET_LENGTH:
            self._secrets.add(secret)

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another is masked whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, REDACTED)
        return _KEYPAIR_ARRAY.sub(REDACTED, text)

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            redacted = self.redact(formatted)
            if redacted != formatted:
                record.msg = redacted
                record.args = None
        return True


def install(handlers=None, secrets=()) -> SecretMaskingFilter:
    """Attach one masking filter to the given handlers (default: root handlers)."""
    mask = SecretMaskingFilter(secrets)
    for handler in handlers if handlers is not None else logging.root.handlers:
        handler.addFilter(mask)
    return mask
