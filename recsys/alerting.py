"""
Alerting for operator-visible faults.

Faults routed here:
- Model load / warm-up failures (registry keeps the previous Active version)
- Privacy budget exhaustion (federated coordinator halts)
- Federated rounds cancelled for lack of quorum

Every alert is written to the alert log. Warning and critical alerts also
go to Slack when a webhook is configured. A repeat of the same alert
within ``cooldown_seconds`` is kept in history but not re-delivered.

Usage:
    >>> from recsys.alerting import AlertManager
    >>> alert_mgr = AlertManager()
    >>> alert_mgr.send_alert("Model Load Failure", "graph v12 produced NaN scores", "critical")
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
import yaml

logger = logging.getLogger(__name__)

DEFAULT_ALERT_CONFIG_PATH = "config/alerts_config.yaml"
ALERT_LOG_PATH = "logs/service/alerts.log"

SEVERITY_LEVELS = {
    'info': logging.INFO,
    'warning': logging.WARNING,
    'critical': logging.ERROR,
}
SLACK_SEVERITIES = ('warning', 'critical')
SLACK_EMOJI = {'warning': ':warning:', 'critical': ':rotating_light:'}

DEFAULT_ALERT_CONFIG: Dict[str, Any] = {
    'slack': {'enabled': False, 'webhook_url': None, 'timeout_seconds': 10},
    'logging': {'enabled': True},
    'cooldown_seconds': 900,
}


@dataclass
class Alert:
    subject: str
    message: str
    severity: str = 'info'
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat(timespec='seconds'))
    suppressed: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.subject, json.dumps(self.metadata, sort_keys=True, default=str))


def load_alert_config(config_path: str) -> Dict[str, Any]:
    """Merge the YAML file (if any) over ``DEFAULT_ALERT_CONFIG`` one level deep."""
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in DEFAULT_ALERT_CONFIG.items()}
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Alert config not found at {config_path}, using defaults")
        return merged
    with open(path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f) or {}
    for key, value in raw.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


# ============================================================================
# Alert Manager
# ============================================================================

class AlertManager:
    """
    Routes alerts to the alert log and Slack.

    ``history`` keeps every alert raised during the process lifetime,
    suppressed repeats included.

    Args:
        config_path: Path to alerts config YAML
        alert_log_path: Dedicated alert log file (None = no file handler)
        clock: Monotonic time source for the cooldown window
    """

    def __init__(
        self,
        config_path: str = DEFAULT_ALERT_CONFIG_PATH,
        alert_log_path: Optional[str] = ALERT_LOG_PATH,
        clock=time.monotonic
    ):
        self.config = load_alert_config(config_path)
        self.cooldown_seconds = float(self.config.get('cooldown_seconds') or 0)
        self.history: List[Alert] = []
        self._clock = clock
        self._last_sent: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self.alert_logger = self._alert_logger(alert_log_path)

    @staticmethod
    def _alert_logger(alert_log_path: Optional[str]) -> logging.Logger:
        alert_logger = logging.getLogger('recsys.alerts')
        alert_logger.setLevel(logging.INFO)
        if not alert_log_path:
            return alert_logger

        Path(alert_log_path).parent.mkdir(parents=True, exist_ok=True)
        target = str(Path(alert_log_path).resolve())
        if not any(getattr(h, 'baseFilename', None) == target for h in alert_logger.handlers):
            fh = logging.FileHandler(alert_log_path, encoding='utf-8')
            fh.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)s | %(message)s', '%Y-%m-%d %H:%M:%S'
            ))
            alert_logger.addHandler(fh)
        return alert_logger

    def _is_repeat(self, alert: Alert) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(alert.key)
            if last is not None and now - last < self.cooldown_seconds:
                return True
            self._last_sent[alert.key] = now
            return False

    def send_alert(
        self,
        subject: str,
        message: str,
        severity: str = 'info',
        metadata: Optional[Dict] = None
    ) -> Dict[str, bool]:
        """
        Send alert via configured channels.

        Delivery failures are logged and reported in the returned dict;
        they never propagate to the caller.

        Returns:
            Dict with success status for each channel; empty when the
            alert was suppressed as a repeat
        """
        alert = Alert(subject, message, severity, dict(metadata or {}))
        alert.suppressed = self._is_repeat(alert)
        with self._lock:
            self.history.append(alert)
        if alert.suppressed:
            logger.debug(f"Suppressed repeat alert: {subject}")
            return {}

        results = {}
        if self.config['logging'].get('enabled', True):
            level = SEVERITY_LEVELS.get(severity, logging.INFO)
            self.alert_logger.log(level, json.dumps(asdict(alert), ensure_ascii=False, default=str))
            results['log'] = True

        slack = self.config['slack']
        if slack.get('enabled') and severity in SLACK_SEVERITIES:
            try:
                results['slack'] = self._post_slack(alert, slack)
            except requests.RequestException as e:
                logger.error(f"Failed to send Slack alert: {e}")
                results['slack'] = False

        return results

    def _post_slack(self, alert: Alert, slack: Dict[str, Any]) -> bool:
        webhook_url = slack.get('webhook_url')
        if not webhook_url:
            logger.warning("Slack webhook URL not configured")
            return False

        header = f"{SLACK_EMOJI.get(alert.severity, '')} [{alert.severity.upper()}] {alert.subject}"
        blocks = [
            {'type': 'header', 'text': {'type': 'plain_text', 'text': header.strip()}},
            {'type': 'section', 'text': {'type': 'mrkdwn', 'text': alert.message}},
        ]
        if alert.metadata:
            fields = ", ".join(f"`{k}`={v}" for k, v in sorted(alert.metadata.items()))
            blocks.append({'type': 'context', 'elements': [{'type': 'mrkdwn', 'text': fields}]})

        payload = {'text': f"[{alert.severity.upper()}] {alert.subject}", 'blocks': blocks}
        if slack.get('channel'):
            payload['channel'] = slack['channel']

        response = requests.post(webhook_url, json=payload, timeout=slack.get('timeout_seconds', 10))
        response.raise_for_status()
        logger.info(f"Slack alert sent: {alert.subject}")
        return True


# ============================================================================
# Convenience Functions
# ============================================================================

_alert_manager: Optional[AlertManager] = None
_alert_manager_lock = threading.Lock()


def get_alert_manager() -> AlertManager:
    """Get singleton AlertManager instance."""
    global _alert_manager
    with _alert_manager_lock:
        if _alert_manager is None:
            _alert_manager = AlertManager()
        return _alert_manager


def set_alert_manager(manager: Optional[AlertManager]) -> None:
    """Replace the process-wide AlertManager (None resets to lazy default)."""
    global _alert_manager
    with _alert_manager_lock:
        _alert_manager = manager


def send_alert(subject: str, message: str, severity: str = 'info', metadata: Optional[Dict] = None):
    """Send alert using default manager."""
    return get_alert_manager().send_alert(subject, message, severity, metadata)


def alert_model_load_failure(strategy: str, version: int, error: str):
    """Send model load failure alert."""
    send_alert(
        subject="Model Load Failure",
        message=f"{strategy} v{version} failed to load and was marked failed: {error}. "
                f"Previous active version remains in service.",
        severity="critical",
        metadata={'strategy': strategy, 'version': version}
    )


def alert_privacy_budget_exhausted(spent: Tuple[float, float], ceiling: Tuple[float, float]):
    """Send privacy budget exhaustion alert; federated training is halted."""
    send_alert(
        subject="Privacy Budget Exhausted",
        message=f"Federated training halted: spent (eps={spent[0]:.3f}, delta={spent[1]:.2e}), "
                f"ceiling (eps={ceiling[0]:.3f}, delta={ceiling[1]:.2e}).",
        severity="critical",
        metadata={'spent': list(spent), 'ceiling': list(ceiling)}
    )


def alert_quorum_not_met(round_id: str, received: int, required: int):
    """Send alert for a cancelled federated round."""
    send_alert(
        subject="Federated Round Cancelled",
        message=f"Round {round_id} received {received} valid uploads, {required} required. "
                f"No update applied; retrying next cycle.",
        severity="warning",
        metadata={'round_id': round_id, 'received': received, 'required': required}
    )
