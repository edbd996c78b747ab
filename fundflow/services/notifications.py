"""Notification delivery for the approval workflow.

Handles:
- In-app notifications (rows in the ``notifications`` table)
- Templated email over SMTP, gated by user preferences

In-app and email are independent channels. A failure on either is logged
and never propagated: notifications are best-effort read markers.
Delivery is async so it can run after the HTTP response is sent.
"""

import logging
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

import aiosmtplib
from jinja2 import Environment, StrictUndefined
from sqlalchemy.orm import Session

from fundflow.core.config import Settings, get_settings
from fundflow.core.approval.fanout import (
    NotificationPlan,
    TEMPLATE_SUBMITTED,
    TEMPLATE_FINANCE_APPROVED,
    TEMPLATE_APPROVED,
    TEMPLATE_REJECTED,
)
from fundflow.db.models import Notification, NotificationPreference

logger = logging.getLogger(__name__)

_env = Environment(autoescape=True, undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True)

_DETAILS = """
<ul>
  <li><strong>Activity SN:</strong> {{ activity_sn }}</li>
  <li><strong>Activity:</strong> {{ activity_title }}</li>
  <li><strong>Estimated Spend:</strong> {{ estimated_spend }}</li>
{% if reason is defined and reason %}
  <li><strong>Reason:</strong> {{ reason }}</li>
{% endif %}
</ul>
<p><a href="{{ approval_url }}">View approval</a></p>
"""

# Email templates
EMAIL_TEMPLATES = {
    TEMPLATE_SUBMITTED: {
        "subject": "New Approval Pending: {{ activity_title }}",
        "body": """
<h1>New Approval Request</h1>
<p><strong>{{ actor_name }}</strong> has submitted a {{ target_label }} that requires your review.</p>
""" + _DETAILS,
    },
    TEMPLATE_FINANCE_APPROVED: {
        "subject": "Finance Approved: {{ activity_title }}",
        "body": """
<h1>Awaiting Committee Review</h1>
<p>A {{ target_label }} was approved by <strong>{{ actor_name }}</strong> and now needs committee approval.</p>
""" + _DETAILS,
    },
    TEMPLATE_APPROVED: {
        "subject": "Approval Approved: {{ activity_title }}",
        "body": """
<h1>Approval Completed</h1>
<p>Your {{ target_label }} has been fully approved by <strong>{{ actor_name }}</strong>.</p>
""" + _DETAILS,
    },
    TEMPLATE_REJECTED: {
        "subject": "Approval Rejected: {{ activity_title }}",
        "body": """
<h1>Approval Rejected</h1>
<p>Your {{ target_label }} was rejected by <strong>{{ actor_name }}</strong>.</p>
""" + _DETAILS,
    },
}


def render_email(template_name: str, variables: Dict[str, Any]) -> tuple[str, str]:
    """
    Render an email template.

    Returns:
        Tuple of (subject, html body)

    Raises:
        KeyError: If the template name is unknown
    """
    template = EMAIL_TEMPLATES[template_name]
    subject = _env.from_string(template["subject"]).render(**variables)
    body = _env.from_string(template["body"]).render(**variables)
    return subject.strip(), body.strip()


class Notifier(ABC):
    """
    Delivery interface used by the approval engine.

    Implementations provide the two channels; ``dispatch`` applies the
    error isolation between them.
    """

    @abstractmethod
    def create_in_app(self, user_id: UUID, type: str, title: str, message: str, link: Optional[str]) -> None:
        ...

    @abstractmethod
    async def send_templated_email(self, template_name: str, variables: Dict[str, Any], recipients: Sequence[str]) -> bool:
        """Send one email to ``recipients``; return False if nothing was sent."""

    def email_allowed(self, user_id: UUID, category: str) -> bool:
        return True

    def flush_in_app(self) -> None:
        """Persist queued in-app notifications, if the channel batches them."""

    def discard_in_app(self) -> None:
        """Drop queued in-app notifications after a failure."""

    def mark_email_sent(self, user_ids: Sequence[UUID]) -> None:
        """Record that the email reached these users."""

    async def dispatch(self, plan: NotificationPlan) -> None:
        """Deliver a plan; never raises."""
        if not plan:
            return

        try:
            for message in plan.messages:
                self.create_in_app(message.user_id, message.category, message.title, message.body, message.link)
            self.flush_in_app()
        except Exception:
            logger.exception("Failed to create in-app notifications for %s", plan.recipient_ids)
            try:
                self.discard_in_app()
            except Exception:
                logger.exception("Failed to discard in-app notifications")

        if not plan.email_template:
            return
        try:
            categories = {m.user_id: m.category for m in plan.messages}
            allowed = [
                (user_id, address)
                for user_id, address in plan.email_recipients
                if self.email_allowed(user_id, categories.get(user_id, ""))
            ]
            if not allowed:
                return
            sent = await self.send_templated_email(
                plan.email_template,
                plan.email_variables,
                [address for _, address in allowed],
            )
            if sent:
                self.mark_email_sent([user_id for user_id, _ in allowed])
        except Exception:
            logger.exception("Failed to send %s email", plan.email_template)


class NotificationService(Notifier):
    """
    Database-backed in-app notifications plus SMTP email.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        """
        Initialize notification service.

        Args:
            db: Database session used for notification rows and preferences
            settings: Application settings (SMTP, email toggle)
        """
        self.db = db
        self.settings = settings or get_settings()
        self._pending: Dict[UUID, Notification] = {}

    async def dispatch(self, plan: NotificationPlan) -> None:
        try:
            await super().dispatch(plan)
        finally:
            self._pending = {}

    def create_in_app(self, user_id: UUID, type: str, title: str, message: str, link: Optional[str]) -> None:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            link=link,
            is_read=False,
            is_email_sent=False,
        )
        self.db.add(notification)
        self._pending[user_id] = notification

    def flush_in_app(self) -> None:
        self.db.commit()

    def discard_in_app(self) -> None:
        self._pending = {}
        self.db.rollback()

    def email_allowed(self, user_id: UUID, category: str) -> bool:
        preference = self.db.query(NotificationPreference).filter(
            NotificationPreference.user_id == user_id
        ).first()
        return preference is None or preference.allows(category)

    async def send_templated_email(self, template_name: str, variables: Dict[str, Any], recipients: Sequence[str]) -> bool:
        if not self.settings.email_notifications_enabled:
            logger.info("Email notifications disabled, skipping %s", template_name)
            return False
        if not self.settings.smtp_configured:
            logger.warning("SMTP not configured, skipping email delivery")
            return False

        subject, body = render_email(template_name, variables)
        await self._deliver_email(list(recipients), subject, body)
        logger.info("Sent %s email to %d recipient(s)", template_name, len(recipients))
        return True

    def mark_email_sent(self, user_ids: Sequence[UUID]) -> None:
        marked = False
        for user_id in user_ids:
            notification = self._pending.get(user_id)
            if notification is not None:
                notification.is_email_sent = True
                marked = True
        if marked:
            self.db.commit()

    async def _deliver_email(self, recipients: List[str], subject: str, body: str) -> None:
        """Actually deliver the email via SMTP."""
        msg = MIMEMultipart("alternative")
        msg["From"] = f"{self.settings.smtp_from_name} <{self.settings.smtp_from_email}>"
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html"))

        await aiosmtplib.send(
            msg,
            sender=self.settings.smtp_from_email,
            recipients=recipients,
            hostname=self.settings.smtp_host,
            port=self.settings.smtp_port,
            username=self.settings.smtp_user,
            password=self.settings.smtp_password,
            start_tls=self.settings.smtp_use_tls,
            timeout=self.settings.smtp_timeout,
        )
