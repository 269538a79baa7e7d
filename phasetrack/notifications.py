"""
Desktop notifications for phasetrack.

Uses notify-send (freedesktop compliant) for notifications.
Purely observational: failures are logged and never reach the engine.
"""

import logging
import shutil
import subprocess

from phasetrack.workflow.changes import ChangeSet, EngineEvent, EventType

logger = logging.getLogger(__name__)


VALID_URGENCIES = ("low", "normal", "critical")

MAX_NOTIFICATION_LENGTH = 200

# Events worth a desktop notification, with their urgency
EVENT_URGENCY = {
    EventType.PHASE_ADVANCED: "normal",
    EventType.ADVANCE_PENDING: "normal",
    EventType.ITEM_AUTO_COMPLETED: "low",
    EventType.TRIGGER_NOTIFY: "low",
    EventType.NEXT_PHASE_REQUESTED: "low",
    EventType.TRIGGER_ESCALATE: "critical",
}


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    if len(message) > MAX_NOTIFICATION_LENGTH:
        message = message[:MAX_NOTIFICATION_LENGTH] + "..."

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "phasetrack",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


class DesktopNotifier:
    """Notification collaborator turning engine events into desktop notifications."""

    def __init__(self, project_id: str, send=notify):
        self.project_id = project_id
        self._send = send

    def notify(self, event: EngineEvent) -> None:
        urgency = EVENT_URGENCY.get(event.type)
        if urgency is None:
            return
        try:
            self._send(f"phasetrack: {self.project_id}", event.summary, urgency)
        except Exception as e:
            logger.warning(f"Notification failed for {event.type.value}: {e}")

    def notify_changes(self, changes: ChangeSet) -> None:
        for event in changes.events:
            self.notify(event)
