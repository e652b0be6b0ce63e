"""
Audit logging for import activity.

Every import event (preview, commit, cancel, reload) is written to the
application log. When a webhook URL is configured the same event is also
POSTed as JSON so an external audit store can record who triggered what.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from flask import has_request_context, request

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Record user activity for the import workflow.

    A failing webhook never fails the request that triggered the event; the
    failure is logged and ``log_activity`` returns False.
    """

    def __init__(self, webhook_url: Optional[str] = None, enabled: bool = False,
                 app_name: Optional[str] = None, timeout: float = 10):
        self.webhook_url = webhook_url.rstrip('/') if webhook_url else None
        self.enabled = enabled and bool(self.webhook_url)
        self.app_name = app_name or os.getenv('APP_NAME', 'MeasureImport')
        self.timeout = timeout
        logger.debug(f"[AUDIT] Initialized audit logger (webhook {'on' if self.enabled else 'off'})")

    def log_activity(
        self,
        activity_type: str,
        actor: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record one activity.

        Args:
            activity_type: e.g. 'ImportPreview', 'ImportCommit'
            actor: User info dict from ``get_current_user()`` (name, email)
            details: Event-specific fields

        Returns:
            True if the event was recorded everywhere it was meant to go
        """
        event = self._build_event(activity_type, actor, details)
        logger.info(
            f"[AUDIT] {activity_type} by {event['userName']} "
            f"{json.dumps(details or {}, default=str, sort_keys=True)}"
        )

        if not self.enabled:
            return True

        try:
            response = requests.post(
                self.webhook_url,
                json=event,
                headers={'Accept': 'application/json', 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[AUDIT] Network error posting audit event: {e}", exc_info=True)
            return False

        if response.status_code in [200, 201, 202, 204]:
            logger.debug(f"[AUDIT] Webhook accepted {activity_type}")
            return True

        logger.error(
            f"[AUDIT] Failed to post audit event. Status: {response.status_code}, "
            f"Response: {response.text[:500]}"
        )
        return False

    def _build_event(self, activity_type: str, actor: Optional[Dict[str, Any]],
                     details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        actor = actor or {}
        event = {
            'activityType': activity_type,
            'application': self.app_name,
            'userName': actor.get('name') or 'anonymous',
            'userEmail': actor.get('email') or '',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'details': details or {},
        }
        if has_request_context():
            event['ipAddress'] = self._get_client_ip()
            event['userAgent'] = request.headers.get('User-Agent', '')
        return event

    def _get_client_ip(self) -> str:
        """
        Get the client's IP address, accounting for proxies.
        """
        forwarded_for = request.headers.get('X-Forwarded-For')
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, take the first one
            return forwarded_for.split(',')[0].strip()

        client_ip = request.headers.get('X-Client-IP')
        if client_ip:
            return client_ip

        return request.remote_addr or 'Unknown'
