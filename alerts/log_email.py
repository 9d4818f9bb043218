"""Log-only e-mail sender used when no relay is configured."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from alerts.notifiers.base import EmailSender, NotifierTestResult

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LoggingEmailSender(EmailSender):
    """Records the e-mail in the log instead of delivering it."""

    name: str = "email-log"

    async def send_email(
        self,
        recipient: str,
        alert_name: str,
        message: str,
        evidence: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        LOGGER.info("E-mail to %s [%s]: %s", recipient, alert_name, message)
        return True

    async def self_test(self) -> NotifierTestResult:
        return NotifierTestResult(ok=True, detail="log only")


__all__ = ["LoggingEmailSender"]
