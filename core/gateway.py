"""
recipe-ops Core: JSON-RPC Execution Gateway

Submits an encoded recipe as a single transaction from a node-managed sender
and waits for the receipt. Node rejections are mapped onto RawOutcome
(revert / out of gas) or TransportError (nonce, signature, fee problems that
a resubmission can fix).
"""

import logging
import re
import time
from typing import Any, Dict, Optional

from core.exceptions import RpcError, TransportError
from core.interfaces import RawOutcome
from infra.rpc_client import JsonRpcClient

logger = logging.getLogger(__name__)

TRANSPORT_MARKERS = (
    "nonce",
    "signature",
    "underpriced",
    "insufficient funds for gas",
    "replacement transaction",
    "already known",
)
OUT_OF_GAS_MARKERS = ("out of gas", "gas required exceeds", "intrinsic gas too low")
_REASON_RE = re.compile(r"reverted(?: with reason string)?[: ]+'?([^']*)'?", re.IGNORECASE)


class JsonRpcGateway:
    """ExecutionGateway backed by eth_sendTransaction + receipt polling."""

    def __init__(self, client: JsonRpcClient, sender: str, poll_interval: float = 1.0,
                 receipt_timeout: float = 120.0):
        self.client = client
        self.sender = sender
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout

    def submit(self, target: str, payload: bytes, gas_ceiling: int) -> RawOutcome:
        tx = {
            "from": self.sender,
            "to": target,
            "data": "0x" + payload.hex(),
            "gas": hex(gas_ceiling),
        }
        try:
            tx_hash = self.client.call("eth_sendTransaction", [tx])
        except RpcError as e:
            return self._classify_rejection(e, gas_ceiling)

        logger.info(f"Submitted tx {tx_hash} to {target} (gas ceiling {gas_ceiling})")
        receipt = self._wait_for_receipt(tx_hash)
        gas_used = int(receipt.get("gasUsed", "0x0"), 16)
        status = int(receipt.get("status", "0x1"), 16)

        if status == 1:
            data = tuple(_log_value(log) for log in receipt.get("logs") or [])
            return RawOutcome(reverted=False, gas_used=gas_used, return_data=data, tx_hash=tx_hash)

        return RawOutcome(
            reverted=True,
            gas_used=gas_used,
            revert_reason=None,
            out_of_gas=gas_used >= gas_ceiling,
            tx_hash=tx_hash,
        )

    def _classify_rejection(self, error: RpcError, gas_ceiling: int) -> RawOutcome:
        message = (error.message or "").lower()
        if any(marker in message for marker in TRANSPORT_MARKERS):
            raise TransportError(f"Submission rejected: {error.message}", original=error)
        if any(marker in message for marker in OUT_OF_GAS_MARKERS):
            return RawOutcome(reverted=True, gas_used=gas_ceiling, out_of_gas=True,
                              revert_reason=error.message)
        match = _REASON_RE.search(error.message or "")
        reason = match.group(1).strip() if match and match.group(1).strip() else error.message
        return RawOutcome(reverted=True, gas_used=0, revert_reason=reason)

    def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.receipt_timeout
        while True:
            receipt = self.client.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                return receipt
            if time.monotonic() >= deadline:
                raise TransportError(f"No receipt for {tx_hash} after {self.receipt_timeout}s")
            time.sleep(self.poll_interval)


def _log_value(log: Dict[str, Any]) -> Optional[int]:
    data = log.get("data") or "0x"
    if data in ("0x", ""):
        return None
    return int(data, 16)
