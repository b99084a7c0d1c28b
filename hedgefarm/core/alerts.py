"""
Alert System (Notification Sink).

Provides:
- Alert types and severity levels
- Alert creation, routing and deduplication
- Handlers: logging, callback, Telegram
- Alert history

Delivery is fire-and-forget: a failing handler is logged and never
propagates into trading logic.
"""

import logging
import re
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "info"  # Informational
    WARNING = "warning"  # Needs attention
    CRITICAL = "critical"  # Operator action required
    EMERGENCY = "emergency"  # Capital at immediate risk


class AlertType(Enum):
    """Types of engine alerts."""

    # Risk
    LIQUIDATION_PROXIMITY = auto()  # Leg close to liquidation, urgent close
    PNL_DIVERGENCE = auto()  # Legs' PnL no longer offsets
    POSITION_MISSING = auto()  # Venue no longer reports an open leg

    # Lifecycle
    STRATEGY_OPENED = auto()
    STRATEGY_CLOSED = auto()
    STRATEGY_ROLLED_BACK = auto()  # Open failed, legs unwound
    STRATEGY_FAILED = auto()  # Unwind failed, legs may be live
    CLOSE_FAILED = auto()  # Legs left outstanding after retries

    # System
    API_ERROR = auto()  # Venue connectivity issue
    MONITOR_ERROR = auto()  # Position refresh failed
    RECOVERY = auto()  # Restart recovery action
    GENERAL = auto()


@dataclass
class Alert:
    """A single alert instance."""

    alert_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any]
    timestamp: datetime = field(default_factory=_now)
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "alert_type": self.alert_type.name,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "acknowledged": self.acknowledged,
        }

    def __str__(self) -> str:
        return f"[{self.severity.value.upper()}] {self.alert_type.name}: {self.message}"


class NotificationSink(Protocol):
    """What engine components depend on for alerting."""

    def notify(
        self,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        alert_type: AlertType = AlertType.GENERAL,
        dedup_key: Optional[str] = None,
    ) -> Optional[Alert]:
        ...


class AlertHandler(ABC):
    """Base class for alert handlers."""

    @abstractmethod
    def handle(self, alert: Alert) -> bool:
        """
        Handle an alert.

        Returns:
            True if handled successfully
        """
        pass

    @property
    @abstractmethod
    def min_severity(self) -> AlertSeverity:
        """Minimum severity this handler processes."""
        pass


class LoggingAlertHandler(AlertHandler):
    """Handler that logs alerts."""

    def __init__(self, min_severity: AlertSeverity = AlertSeverity.INFO):
        self._min_severity = min_severity

    @property
    def min_severity(self) -> AlertSeverity:
        return self._min_severity

    def handle(self, alert: Alert) -> bool:
        log_method = {
            AlertSeverity.INFO: logger.info,
            AlertSeverity.WARNING: logger.warning,
            AlertSeverity.CRITICAL: logger.error,
            AlertSeverity.EMERGENCY: logger.critical,
        }[alert.severity]

        log_method(f"[ALERT] {alert.alert_type.name}: {alert.message} | Details: {alert.details}")
        return True


class CallbackAlertHandler(AlertHandler):
    """Handler that calls a callback function."""

    def __init__(
        self,
        callback: Callable[[Alert], None],
        min_severity: AlertSeverity = AlertSeverity.WARNING,
    ):
        self._callback = callback
        self._min_severity = min_severity

    @property
    def min_severity(self) -> AlertSeverity:
        return self._min_severity

    def handle(self, alert: Alert) -> bool:
        try:
            self._callback(alert)
            return True
        except Exception as e:
            logger.error(f"Alert callback failed: {e}")
            return False


_MARKDOWN_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown(text: str) -> str:
    """Escape Telegram MarkdownV2 special characters."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


class TelegramAlertHandler(AlertHandler):
    """
    Sends alerts to a Telegram chat.

    Messages are posted from a background thread so a slow or unreachable
    Telegram API never delays the caller.
    """

    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    SEVERITY_ICONS = {
        AlertSeverity.INFO: "ℹ️",
        AlertSeverity.WARNING: "⚠️",
        AlertSeverity.CRITICAL: "\U0001f6a8",
        AlertSeverity.EMERGENCY: "\U0001f525",
    }

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        min_severity: AlertSeverity = AlertSeverity.WARNING,
        timeout: float = 10.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        if not bot_token or not chat_id:
            raise ValueError("Telegram bot token and chat id are required")
        self._url = self.API_URL.format(token=bot_token)
        self._chat_id = chat_id
        self._min_severity = min_severity
        self._timeout = timeout
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="telegram"
        )
        self._session = requests.Session()

    @property
    def min_severity(self) -> AlertSeverity:
        return self._min_severity

    def format_message(self, alert: Alert) -> str:
        icon = self.SEVERITY_ICONS[alert.severity]
        lines = [
            f"{icon} *{escape_markdown(alert.alert_type.name)}*",
            "",
            escape_markdown(alert.message),
        ]
        for key, value in alert.details.items():
            lines.append(f"• *{escape_markdown(str(key))}:* `{escape_markdown(str(value))}`")
        lines.append("")
        lines.append(escape_markdown(alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")))
        return "\n".join(lines)

    def _send(self, text: str) -> bool:
        try:
            response = self._session.post(
                self._url,
                json={"chat_id": self._chat_id, "text": text, "parse_mode": "MarkdownV2"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Telegram delivery failed: {e}")
            return False

    def handle(self, alert: Alert) -> bool:
        self._executor.submit(self._send, self.format_message(alert))
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self._session.close()


class AlertManager:
    """
    Central alert management system.

    Handles:
    - Alert creation and routing
    - Deduplication (don't spam same alert)
    - Handler registration
    - Alert history

    Usage:
        alert_mgr = AlertManager()
        alert_mgr.add_handler(LoggingAlertHandler())

        alert_mgr.notify(
            AlertSeverity.WARNING,
            "PnL divergence 6.2% on strat_ab12",
            {"strategy_id": "strat_ab12", "divergence_pct": 6.2},
            alert_type=AlertType.PNL_DIVERGENCE,
            dedup_key="divergence:strat_ab12",
        )
    """

    # Deduplication windows by severity
    DEDUP_WINDOWS = {
        AlertSeverity.INFO: timedelta(minutes=5),
        AlertSeverity.WARNING: timedelta(minutes=2),
        AlertSeverity.CRITICAL: timedelta(seconds=30),
        AlertSeverity.EMERGENCY: timedelta(seconds=0),  # Always send
    }

    SEVERITY_ORDER = [
        AlertSeverity.INFO,
        AlertSeverity.WARNING,
        AlertSeverity.CRITICAL,
        AlertSeverity.EMERGENCY,
    ]

    def __init__(self, max_history: int = 1000):
        self._handlers: List[AlertHandler] = []
        self._alert_history: List[Alert] = []
        self._last_alert_times: Dict[str, datetime] = {}
        self._alert_counter = 0
        self._max_history = max_history

    def add_handler(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)
        logger.debug(f"Added alert handler: {handler.__class__.__name__}")

    def remove_handler(self, handler: AlertHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def create_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None,
        force: bool = False,
    ) -> Optional[Alert]:
        """
        Create and dispatch an alert.

        Args:
            alert_type: Type of alert
            severity: Severity level
            message: Human-readable message
            details: Additional context
            dedup_key: Deduplication key (defaults to the alert type)
            force: Bypass deduplication

        Returns:
            Alert if created, None if deduplicated
        """
        key = dedup_key or alert_type.name
        if not force and not self._should_send(key, severity):
            logger.debug(f"Alert deduplicated: {key}")
            return None

        self._alert_counter += 1
        now = _now()
        alert = Alert(
            alert_id=f"alert_{self._alert_counter}_{int(now.timestamp())}",
            alert_type=alert_type,
            severity=severity,
            message=message,
            details=details or {},
            timestamp=now,
        )

        self._last_alert_times[key] = now
        self._alert_history.append(alert)
        if len(self._alert_history) > self._max_history:
            self._alert_history = self._alert_history[-self._max_history:]

        self._dispatch(alert)
        return alert

    def notify(
        self,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        alert_type: AlertType = AlertType.GENERAL,
        dedup_key: Optional[str] = None,
    ) -> Optional[Alert]:
        """Fire-and-forget entry point; never raises."""
        try:
            return self.create_alert(alert_type, severity, message, details, dedup_key)
        except Exception as e:
            logger.error(f"Failed to raise alert '{message}': {e}")
            return None

    def _should_send(self, key: str, severity: AlertSeverity) -> bool:
        if severity == AlertSeverity.EMERGENCY:
            return True
        last_time = self._last_alert_times.get(key)
        if last_time is None:
            return True
        return _now() - last_time > self.DEDUP_WINDOWS[severity]

    def _dispatch(self, alert: Alert) -> None:
        alert_severity_idx = self.SEVERITY_ORDER.index(alert.severity)

        for handler in self._handlers:
            if alert_severity_idx >= self.SEVERITY_ORDER.index(handler.min_severity):
                try:
                    handler.handle(alert)
                except Exception as e:
                    logger.error(f"Handler {handler.__class__.__name__} failed: {e}")

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alert in self._alert_history:
            if alert.alert_id == alert_id:
                alert.acknowledged = True
                return True
        return False

    def get_recent_alerts(
        self,
        since: Optional[datetime] = None,
        alert_type: Optional[AlertType] = None,
        min_severity: Optional[AlertSeverity] = None,
    ) -> List[Alert]:
        """Get recent alerts with optional filters."""
        alerts = self._alert_history
        if since:
            alerts = [a for a in alerts if a.timestamp >= since]
        if alert_type:
            alerts = [a for a in alerts if a.alert_type == alert_type]
        if min_severity:
            min_idx = self.SEVERITY_ORDER.index(min_severity)
            alerts = [a for a in alerts if self.SEVERITY_ORDER.index(a.severity) >= min_idx]
        return alerts

    def get_stats(self) -> Dict[str, Any]:
        severity_counts = {s.value: 0 for s in AlertSeverity}
        for alert in self._alert_history:
            severity_counts[alert.severity.value] += 1

        return {
            "total_alerts": len(self._alert_history),
            "unacknowledged": sum(1 for a in self._alert_history if not a.acknowledged),
            "by_severity": severity_counts,
            "handler_count": len(self._handlers),
        }

    def shutdown(self) -> None:
        """Flush handlers that deliver in the background."""
        for handler in self._handlers:
            if isinstance(handler, TelegramAlertHandler):
                handler.shutdown()
