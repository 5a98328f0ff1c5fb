"""
Service d'emails SendGrid pour RatePro
- Invitations aux enquêtes (publication)
- Alertes actions urgentes
- Email de test (configuration plateforme)

Clé et expéditeur résolus via ConfigResolver (DB -> env -> défaut).
"""

import asyncio
import logging
from html import escape
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content

from config import FRONTEND_URL
from services.config_resolver import get_config
from services.errors import TransientError

logger = logging.getLogger("email_service")


class EmailService:
    """Service centralisé pour l'envoi d'emails"""

    async def _sender(self):
        api_key = await get_config("SENDGRID_API_KEY", sensitive=True)
        from_email = await get_config("FROM_EMAIL")
        from_name = await get_config("FROM_NAME")
        return api_key, from_email, from_name

    async def _send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        """Envoie un email via SendGrid. ConfigMissing remonte si la clé manque."""
        api_key, from_email, from_name = await self._sender()
        try:
            message = Mail(
                from_email=Email(from_email, from_name),
                to_emails=To(to_email),
                subject=subject,
                html_content=Content("text/html", html_content)
            )
            sg = SendGridAPIClient(api_key)
            response = await asyncio.to_thread(sg.send, message)

            if response.status_code in [200, 202]:
                logger.info(f"[EMAIL] sent subject='{subject}'")
                return True
            logger.error(f"[EMAIL] SendGrid returned {response.status_code}")
            return False

        except Exception as e:
            logger.error(f"[EMAIL] send failed: {type(e).__name__}: {e}")
            return False

    @staticmethod
    def _layout(title: str, body: str, link: str = None, link_label: str = None) -> str:
        button = ""
        if link:
            button = (
                f'<p style="text-align:center;margin:24px 0">'
                f'<a href="{escape(link)}" style="background:#2563eb;color:#fff;padding:12px 24px;'
                f'border-radius:6px;text-decoration:none">{escape(link_label or "Open")}</a></p>'
            )
        return f"""
        <!DOCTYPE html>
        <html>
        <body style="font-family: Arial, sans-serif; background:#f5f5f5; padding:20px">
            <div style="max-width:600px;margin:0 auto;background:#fff;border-radius:8px;padding:24px">
                <h2 style="margin-top:0">{escape(title)}</h2>
                {body}
                {button}
                <p style="color:#888;font-size:12px">RatePro</p>
            </div>
        </body>
        </html>
        """

    # ==================== INVITATIONS ====================

    async def send_survey_invitation(self, to_email: str, name: str, survey_title: str, token: str) -> bool:
        link = f"{FRONTEND_URL}/survey/respond?token={token}"
        body = (
            f"<p>Hello {escape(name or '')},</p>"
            f"<p>We would value your feedback on <strong>{escape(survey_title)}</strong>.</p>"
        )
        return await self._send_email(
            to_email,
            f"Your feedback: {survey_title}",
            self._layout(survey_title, body, link, "Answer the survey"),
        )

    # ==================== ALERTES ====================

    async def send_urgent_action(self, to_email: str, action: dict) -> bool:
        link = f"{FRONTEND_URL}/actions/{action['id']}"
        body = (
            f"<p>A high priority action needs attention.</p>"
            f"<ul><li><strong>Title:</strong> {escape(action.get('title', ''))}</li>"
            f"<li><strong>Due:</strong> {escape(action.get('dueDate') or '-')}</li>"
            f"<li><strong>Category:</strong> {escape(action.get('category') or '-')}</li></ul>"
        )
        return await self._send_email(
            to_email,
            f"Urgent action: {action.get('title', '')}",
            self._layout("Urgent action", body, link, "Open the action"),
        )

    # ==================== TEST ====================

    async def send_test_email(self, to_email: str) -> bool:
        sent = await self._send_email(
            to_email,
            "RatePro test email",
            self._layout("Email configuration OK", "<p>This test email confirms your SendGrid settings.</p>"),
        )
        if not sent:
            raise TransientError("Email provider rejected the test email")
        return True


email_service = EmailService()
