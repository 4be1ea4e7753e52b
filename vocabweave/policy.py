"""Per-pass error bookkeeping."""

from __future__ import annotations

import logging
from typing import List, Optional

from .errors import ErrorCategory, ErrorRecord

logger = logging.getLogger(__name__)


class ErrorPolicy:
    """Collects the errors of one processing pass.

    Segment-level failures never abort a pass; they are recorded here and
    reported through the pass summary.
    """

    def __init__(self) -> None:
        self.records: List[ErrorRecord] = []

    def handle_error(
        self,
        category: ErrorCategory,
        message: str,
        details: Optional[str] = None,
    ) -> None:
        """Record and log an error."""

        self.records.append(ErrorRecord(category=category, message=message, details=details))
        logger.error("%s", message)

    @property
    def errors(self) -> int:
        return len(self.records)

    @property
    def messages(self) -> List[str]:
        return [record.message for record in self.records]
