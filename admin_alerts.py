"""
Admin alert system for the ENS acquisition bot

Operator notifications for failures that users cannot fix themselves: a
saga continuation that crashed, an RPC endpoint or quote service that is
down, a rejected webhook signature.

Features:
- Severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting to prevent alert spam
- Suppression of duplicate alerts inside a window
- ADMIN_USER_ID / ADDITIONAL_ADMIN_USER_IDS recipients
- Bounded in-memory history for the health endpoint
"""

import os
import logging
import hashlib
import json
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional, Any, Union
from enum import Enum
from dataclasses import dataclass, asdict

from chain_config import get_settings

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CONFIGURATION
# ====================================================================

class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


_SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]


class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    DOMAIN_REGISTRATION = "domain_registration"
    BRIDGE = "bridge"
    SYSTEM_HEALTH = "system_health"
    SECURITY = "security"
    EXTERNAL_API = "external_api"
    WEBHOOK = "webhook"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = _utcnow()
        if self.fingerprint is None:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Generate a unique fingerprint for alert deduplication"""
        content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
        return hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data

# ====================================================================
# ADMIN ALERT CONFIGURATION
# ====================================================================

class AdminAlertConfig:
    """Alert thresholds from the environment; recipients come from Settings"""

    def __init__(self, admin_user_ids: Optional[List[int]] = None):
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'
        if admin_user_ids is None:
            admin_user_ids = get_settings().admin_user_ids
        self.admin_user_ids = list(admin_user_ids)

        if not self.admin_user_ids:
            logger.warning("⚠️ No admin user IDs configured - alerts will be logged only")
        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"admins={len(self.admin_user_ids)}, min_severity={self.min_severity.value}")


# ====================================================================
# ADMIN ALERT SYSTEM - MAIN CLASS
# ====================================================================

class AdminAlertSystem:
    """Main admin alert system with rate limiting and deduplication"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, history_size: int = 200):
        self.config = config or AdminAlertConfig()
        self._alert_history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []
        self._bot_application = None

    def set_bot_application(self, application):
        """Set the bot application for sending alerts"""
        self._bot_application = application
        logger.info("✅ Bot application set for admin alerts")

    def _is_rate_limited(self) -> bool:
        cutoff = _utcnow() - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if _utcnow() > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _suppress_alert(self, fingerprint: str):
        self._suppressed_alerts[fingerprint] = _utcnow() + timedelta(seconds=self.config.suppression_window)

    def _format_alert_message(self, alert: Alert) -> str:
        """Format alert for Telegram message"""
        severity_icons = {
            AlertSeverity.CRITICAL: "🔴",
            AlertSeverity.ERROR: "🟠",
            AlertSeverity.WARNING: "🟡",
            AlertSeverity.INFO: "🔵",
        }
        category_icons = {
            AlertCategory.DOMAIN_REGISTRATION: "🌐",
            AlertCategory.BRIDGE: "🌉",
            AlertCategory.SYSTEM_HEALTH: "🏥",
            AlertCategory.SECURITY: "🛡️",
            AlertCategory.EXTERNAL_API: "🔗",
            AlertCategory.WEBHOOK: "📡",
        }

        icon = severity_icons.get(alert.severity, "⚠️")
        cat_icon = category_icons.get(alert.category, "📋")
        timestamp_str = alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.timestamp else "Unknown"

        message_parts = [
            f"{icon} <b>ADMIN ALERT - {alert.severity.value}</b>",
            f"{cat_icon} <b>Category:</b> {alert.category.value.replace('_', ' ').title()}",
            f"🔧 <b>Component:</b> {alert.component}",
            f"📝 <b>Message:</b> {alert.message}",
            f"🕐 <b>Time:</b> {timestamp_str}",
        ]

        if alert.details:
            message_parts.append("📊 <b>Details:</b>")
            for key, value in alert.details.items():
                if isinstance(value, dict):
                    value = json.dumps(value, indent=2)
                elif isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                message_parts.append(f"   • <b>{key}:</b> {value}")

        return "\n".join(message_parts)

    async def _send_alert_to_admin(self, admin_id: int, alert: Alert) -> bool:
        if not self._bot_application or not self._bot_application.bot:
            logger.warning("⚠️ Bot application not available for admin alerts")
            return False

        try:
            await self._bot_application.bot.send_message(
                chat_id=admin_id,
                text=self._format_alert_message(alert),
                parse_mode='HTML'
            )
            logger.info(f"✅ Admin alert sent to {admin_id}: {alert.severity.value} - {alert.component}")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to send admin alert to {admin_id}: {e}")
            return False

    def _record(self, alert: Alert, sent: bool):
        entry = alert.to_dict()
        entry['sent'] = sent
        self._alert_history.append(entry)

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an admin alert with rate limiting and deduplication

        Args:
            severity: Alert severity level
            category: Alert category
            component: Component that generated the alert
            message: Human-readable alert message
            details: Additional structured data

        Returns:
            bool: True if alert was sent to at least one admin
        """
        try:
            if not self.config.alerts_enabled:
                logger.debug(f"Admin alerts disabled - skipping: {component}: {message}")
                return False

            if isinstance(severity, str):
                severity = AlertSeverity(severity.upper())
            if isinstance(category, str):
                category = AlertCategory(category.lower())

            if _SEVERITY_ORDER.index(severity) < _SEVERITY_ORDER.index(self.config.min_severity):
                logger.debug(f"Alert below minimum severity ({self.config.min_severity.value}) - skipping: {message}")
                return False

            alert = Alert(severity=severity, category=category, component=component,
                          message=message, details=details)

            if alert.fingerprint and self._is_suppressed(alert.fingerprint):
                logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
                self._record(alert, sent=False)
                return False

            if self._is_rate_limited():
                logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
                self._record(alert, sent=False)
                return False

            sent_count = 0
            for admin_id in self.config.admin_user_ids:
                if await self._send_alert_to_admin(admin_id, alert):
                    sent_count += 1

            log_level = getattr(logging, severity.value.upper(), logging.WARNING)
            logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

            if sent_count > 0:
                self._rate_limit_tracker.append(_utcnow())
                if alert.fingerprint:
                    self._suppress_alert(alert.fingerprint)
                self._record(alert, sent=True)
                return True

            self._record(alert, sent=False)
            return False

        except ValueError as e:
            logger.error(f"❌ Admin alert rejected: {e}")
            logger.error(f"🚨 ALERT (failed to send): [{component}] {message}")
            return False

    def get_alert_stats(self) -> Dict[str, Any]:
        """Counts by severity over the retained history"""
        by_severity: Dict[str, int] = {}
        for entry in self._alert_history:
            by_severity[entry['severity']] = by_severity.get(entry['severity'], 0) + 1
        return {
            'enabled': self.config.alerts_enabled,
            'admin_count': len(self.config.admin_user_ids),
            'min_severity': self.config.min_severity.value,
            'recent': by_severity,
            'suppressed': sum(1 for entry in self._alert_history if not entry['sent']),
            'currently_suppressed': len(self._suppressed_alerts),
        }

# ====================================================================
# GLOBAL ADMIN ALERT INSTANCE
# ====================================================================

_admin_alert_system = None


def get_admin_alert_system() -> AdminAlertSystem:
    """Get or create the global admin alert system instance"""
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
        logger.info("✅ Admin alert system initialized")
    return _admin_alert_system


def set_admin_alert_bot_application(application):
    get_admin_alert_system().set_bot_application(application)

# ====================================================================
# CONVENIENCE FUNCTIONS FOR EASY INTEGRATION
# ====================================================================

async def send_critical_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    """Send a critical admin alert"""
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)


async def send_error_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    """Send an error admin alert"""
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)


async def send_warning_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    """Send a warning admin alert"""
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)

