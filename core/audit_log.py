"""
recipe-ops Core: Audit Logger

Structured JSONL trail of recipe executions, treasury refills and feed checks
for debugging and post-incident analysis.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only audit trail.

    Output format: JSONL (one JSON object per line). Audit writes are best
    effort: a failing write is logged and never interrupts the operation
    being audited.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_execution(self, recipe: str, fingerprint: str, status: str, gas_used: int,
                      gas_ceiling: int, reason: Optional[str] = None,
                      tx_hash: Optional[str] = None) -> None:
        self._write({
            "event": "recipe_execution",
            "recipe": recipe,
            "fingerprint": fingerprint,
            "status": status,
            "gas_used": gas_used,
            "gas_ceiling": gas_ceiling,
            "reason": reason,
            "tx_hash": tx_hash,
        })

    def log_refill(self, caller: str, recipient: str, amount: int, source: Optional[str],
                   result: str, error: Optional[str] = None) -> None:
        self._write({
            "event": "treasury_refill",
            "caller": caller,
            "recipient": recipient,
            "amount": str(amount),
            "source": source,
            "result": result,
            "error": error,
        })

    def log_discrepancies(self, network: str, discrepancies: Iterable[Any]) -> None:
        self._write({
            "event": "feed_check",
            "network": network,
            "discrepancies": [
                {"kind": d.kind.value, "feed": d.record.name, "details": d.details}
                for d in discrepancies
            ],
        })

    def _write(self, entry: Dict[str, Any]) -> None:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
            logger.debug(f"Audited {entry['event']}")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")
