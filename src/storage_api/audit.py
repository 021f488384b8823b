"""Structured audit trail of storage operations, one JSON object per line."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

audit_logger = logging.getLogger("storage_api.audit")

SUCCESS = "success"
FAILURE = "failure"
DENIED = "denied"


def audit_log(caller: str, action: str, resource: str, status: str, details: Optional[str] = None) -> None:
    """
    Record one audited action.

    :param caller: Who asked, usually the client address.
    :param action: e.g. "list", "download", "upload", "delete", "transfer".
    :param resource: e.g. "local:local-0/models/a.bin" or "s3:bucket/key".
    :param status: One of "success", "failure" or "denied".
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "caller": caller,
        "action": action,
        "resource": resource,
        "status": status,
    }
    if details:
        entry["details"] = details
    audit_logger.info(json.dumps(entry))
