"""Webhook alerting for failed recipes, treasury shortfalls and feed discrepancies."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: Optional[str], default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


@dataclass
class AlertRecord:
    fingerprint: str
    title: str
    first_seen: float
    last_seen: float
    count: int = 1


class AlertService:
    """
    Post alerts to a webhook.

    Identical alerts (same severity, title and message) are suppressed for
    `dedupe_seconds` after the first delivery. Delivery failures are logged
    and never raised into the caller's cycle.
    """

    def __init__(self, config: AlertConfig, session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._session = session or requests.Session()
        self._clock = clock
        self._history: Dict[str, AlertRecord] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]],
                    session: Optional[requests.Session] = None) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
            if "${" in webhook_url:
                webhook_url = None
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity"), AlertSeverity.WARNING),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        )
        return cls(config, session=session)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(self, severity: AlertSeverity, title: str, message: str,
               context: Optional[Dict[str, Any]] = None) -> bool:
        """Send an alert. Returns True when it was delivered (or logged in dry-run)."""
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False

        now = self._clock()
        fingerprint = self._fingerprint(severity, title, message)
        record = self._history.get(fingerprint)
        if record is not None and now - record.first_seen <= self._config.dedupe_seconds:
            record.count += 1
            record.last_seen = now
            logger.debug(f"Alert deduped: {title} (seen {record.count}x)")
            return False

        self._history[fingerprint] = AlertRecord(fingerprint, title, first_seen=now, last_seen=now)
        self._prune(now)
        return self._send(severity, title, message, context)

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        return hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()

    def _prune(self, now: float) -> None:
        horizon = self._config.dedupe_seconds * 2
        stale = [fp for fp, r in self._history.items() if now - r.last_seen > horizon]
        for fp in stale:
            del self._history[fp]

    def _send(self, severity: AlertSeverity, title: str, message: str,
              context: Optional[Dict[str, Any]]) -> bool:
        payload = self._build_payload(severity, title, message, context)
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return True

        try:
            response = self._session.post(self._config.webhook_url, json=payload, timeout=self._config.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False
        return True

    @staticmethod
    def _build_payload(severity: AlertSeverity, title: str, message: str,
                       context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            line_items.append(f"context={json.dumps(context, sort_keys=True, default=str)}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
