from typing import Any, Dict, List, Optional
import json
import logging
import os
import uuid

from firebase_admin import messaging, credentials, initialize_app, _apps  # type: ignore
from sqlalchemy.orm import sessionmaker

from .config import ReminderSettings
from .interfaces import ChannelResult, NotificationDispatcher
from .repository import get_tokens_for_user

logger = logging.getLogger(__name__)

_APNS_PRIORITY = {"normal": "5", "high": "10", "critical": "10"}


def ensure_firebase_initialized(project_id: Optional[str], credentials_json: Optional[str]) -> bool:
    """Initialize the default Firebase app once. Returns whether an app exists."""
    if _apps:
        return True

    env_gac_json = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
    env_gac = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    creds_json: Optional[str] = credentials_json or env_gac_json or env_gac
    options = {"projectId": project_id} if project_id else None

    logger.info(
        f"[FCM] Initializing Firebase | project_id={project_id} "
        f"REMINDER_FCM_CREDENTIALS_JSON set={bool(credentials_json)}, "
        f"GOOGLE_APPLICATION_CREDENTIALS_JSON set={bool(env_gac_json)}, "
        f"GOOGLE_APPLICATION_CREDENTIALS set={bool(env_gac)}"
    )

    try:
        if creds_json and creds_json.strip().startswith("{"):
            initialize_app(credentials.Certificate(json.loads(creds_json)), options=options)
            logger.info("[FCM] Firebase app initialized (inline JSON)")
        elif creds_json and os.path.exists(creds_json):
            initialize_app(credentials.Certificate(creds_json), options=options)
            logger.info("[FCM] Firebase app initialized (file)")
        elif project_id:
            initialize_app(options=options)
            logger.info("[FCM] Firebase app initialized (projectId only)")
        else:
            logger.warning("[FCM] No credentials provided - push notifications are disabled")
            return False
    except Exception as e:
        logger.error(f"[FCM] Failed to initialize Firebase: {e!r}")
        return False
    return True


def build_message(token: str, priority: str, payload: Dict[str, Any]) -> messaging.Message:
    notification_id = str(uuid.uuid4())
    # FCM data values must be strings
    data = {k: "" if v is None else str(v) for k, v in payload.items()}
    data["notification_id"] = notification_id
    return messaging.Message(
        token=token,
        notification=messaging.Notification(
            title=payload.get("title") or "Medication reminder",
            body=payload.get("message") or "It's time to take your medication",
        ),
        data=data,
        android=messaging.AndroidConfig(priority="normal" if priority == "normal" else "high"),
        apns=messaging.APNSConfig(
            headers={
                "apns-push-type": "alert",
                "apns-priority": _APNS_PRIORITY.get(priority, "10"),
                "apns-collapse-id": notification_id,  # Prevent iOS from collapsing repeated reminders
            }
        ),
    )


class FcmPushDispatcher(NotificationDispatcher):
    """Push-only dispatcher over Firebase Cloud Messaging.

    Other channels are reported as failed so a composite dispatcher (or a
    deployment-specific factory) can cover SMS, voice and email.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        project_id: Optional[str] = None,
        credentials_json: Optional[str] = None,
        dry_run: bool = False,
    ):
        self.session_factory = session_factory
        self.project_id = project_id
        self.credentials_json = credentials_json
        self.dry_run = dry_run

    def send(
        self,
        recipient_id: str,
        channels: List[str],
        priority: str,
        payload: Dict[str, Any],
    ) -> Dict[str, ChannelResult]:
        results = {}
        for channel in channels:
            if channel == "push":
                results[channel] = self._send_push(recipient_id, priority, payload)
            else:
                results[channel] = ChannelResult(channel, False, "channel not supported by FCM dispatcher")
        return results

    def _send_push(self, recipient_id: str, priority: str, payload: Dict[str, Any]) -> ChannelResult:
        if not ensure_firebase_initialized(self.project_id, self.credentials_json):
            return ChannelResult("push", False, "firebase not initialized")

        db = self.session_factory()
        try:
            tokens = get_tokens_for_user(db, recipient_id)
        finally:
            db.close()
        if not tokens:
            logger.warning(f"[FCM] No FCM token found for user {recipient_id}")
            return ChannelResult("push", False, "no device token")

        sent, errors = 0, []
        for token in tokens:
            try:
                result = messaging.send(build_message(token, priority, payload), dry_run=self.dry_run)
                logger.info(f"[FCM] Notification sent to {recipient_id} ({token[:20]}...): {result}")
                sent += 1
            except Exception as e:
                logger.warning(f"[FCM] Failed to send to {recipient_id} ({token[:20]}...): {e!r}")
                errors.append(repr(e))

        if sent:
            return ChannelResult("push", True, f"{sent}/{len(tokens)} devices")
        return ChannelResult("push", False, "; ".join(errors))


def build_fcm_dispatcher(settings: ReminderSettings, session_factory: sessionmaker) -> FcmPushDispatcher:
    return FcmPushDispatcher(
        session_factory,
        project_id=settings.FCM_PROJECT_ID,
        credentials_json=settings.FCM_CREDENTIALS_JSON,
    )
