"""
JSON-RPC over HTTP with retry.

Retries 429 rate limits, 5xx server errors and network failures with
exponential backoff plus jitter. Client errors (other 4xx) are not retried.
Exhausted retries surface as TransportError; JSON-RPC error objects surface
as RpcError so callers can classify node rejections themselves.
"""

import itertools
import logging
import random
import time
from typing import Any, List, Optional

import requests

from core.exceptions import RpcError, TransportError

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client."""

    def __init__(self, url: str, timeout: float = 20.0, max_retries: int = 3,
                 backoff_base: float = 1.0, session: Optional[requests.Session] = None):
        if not url:
            raise ValueError("RPC url is required")
        self.url = url
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = backoff_base
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.post(self.url, json=body, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
                if "error" in data and data["error"]:
                    err = data["error"]
                    raise RpcError(int(err.get("code", -1)), str(err.get("message", "")), err.get("data"))
                return data.get("result")

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"RPC client error {status_code} on {method}")
                    raise TransportError(f"HTTP {status_code} from RPC on {method}", original=e) from e
                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {method}, attempt {attempt + 1}/{self.max_retries}")
                else:
                    logger.warning(f"Server error ({status_code}) on {method}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {method}: {e}, attempt {attempt + 1}/{self.max_retries}")
                last_exception = e

            except ValueError as e:
                # Body was not JSON
                raise TransportError(f"Invalid JSON-RPC response for {method}", original=e) from e

            if attempt < self.max_retries - 1:
                backoff = self.backoff_base * (2 ** attempt) + random.uniform(0, self.backoff_base)
                logger.info(f"Retrying {method} in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} retries exhausted for {method}")
        raise TransportError(f"RPC {method} failed after {self.max_retries} attempts", original=last_exception)
