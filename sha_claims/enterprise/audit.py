import json
import logging
import time
from pathlib import Path

from sha_claims.config import settings

logger = logging.getLogger(__name__)


def log_action(actor: str, role: str, action: str, metadata: dict = None):
    """Append one entry to the JSONL audit log named by ``AUDIT_FILE``."""
    entry = {
        "timestamp": int(time.time()),
        "actor": actor,
        "role": role,
        "action": action,
        "metadata": metadata or {},
    }

    path = Path(settings.audit_file)
    with open(path, "a") as f:
        f.write(json.dumps(entry, default=str) + "\n")
    logger.debug("Audit %s by %s", action, actor)


def read_actions(limit: int = 100) -> list:
    """Most recent audit entries, newest first."""
    path = Path(settings.audit_file)
    if not path.exists():
        return []
    with open(path) as f:
        lines = [line for line in f if line.strip()]
    return [json.loads(line) for line in reversed(lines[-limit:])]
