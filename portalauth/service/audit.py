from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Optional

from portalauth.logging import get_logger
from portalauth.service.fingerprint import DeviceInfo
from portalauth.service.roles import Portal
from portalauth.storage.models import AccessLogEntry

logger = get_logger(__name__)


class AuditEvent(str, Enum):
    LOGIN = "LOGIN"
    SIGNUP = "SIGNUP"
    LOGOUT = "LOGOUT"
    REFRESH = "REFRESH"
    REUSE_DETECTED = "REUSE_DETECTED"
    ROLE_SWITCHED = "ROLE_SWITCHED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    ROLE_ADDED = "ROLE_ADDED"


class AuditRecorder:
    """Builds and appends access-log entries.

    Entries that must land together with a token mutation are built with
    ``entry`` and handed to the store's transactional method; standalone
    events go through ``record``. Storage failures propagate.
    """

    def __init__(self, store) -> None:
        self.store = store

    @staticmethod
    def entry(
        event: AuditEvent,
        *,
        user_id: Optional[str],
        success: bool = True,
        portal: Optional[Portal] = None,
        device: Optional[DeviceInfo] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AccessLogEntry:
        return AccessLogEntry(
            id=str(uuid.uuid4()),
            event_type=event.value,
            success=success,
            user_id=user_id,
            portal=portal.value if portal else None,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            device_info=device.description if device else None,
            device_type=device.device_type if device else None,
            metadata=dict(metadata or {}),
        )

    def record(
        self,
        event: AuditEvent,
        *,
        user_id: Optional[str],
        success: bool = True,
        portal: Optional[Portal] = None,
        device: Optional[DeviceInfo] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AccessLogEntry:
        entry = self.entry(
            event,
            user_id=user_id,
            success=success,
            portal=portal,
            device=device,
            metadata=metadata,
        )
        self.store.append_access_log(entry)
        logger.info(
            "audit_recorded",
            audit_event=entry.event_type,
            user_id=user_id,
            success=success,
            portal=entry.portal,
        )
        return entry
