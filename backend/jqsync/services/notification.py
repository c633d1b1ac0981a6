"""
Failure notifications by email (Resend HTTP API).

Sending is best-effort: a missing configuration skips the email and any
delivery error is logged and reported as False, never raised.
"""
import html
import logging
from datetime import date
from typing import Any, Dict, Optional

import httpx

from jqsync.config import settings
from jqsync.utils.dates import utc_now

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


def build_failure_email(
    job_name: str,
    run_id: Optional[str],
    error: str,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
    """Subject and HTML body for a failed job"""
    context = context or {}
    target_date = context.get("target_date")
    subject = f"[jqsync] {job_name} failed"
    if target_date:
        subject += f" ({target_date})"

    rows = {
        "Job": job_name,
        "Run ID": run_id or "-",
        "Time (UTC)": utc_now().isoformat(timespec="seconds"),
        **{str(k): v for k, v in context.items()},
    }
    table = "".join(
        f"<tr><th align='left'>{html.escape(str(k))}</th><td>{html.escape(str(v))}</td></tr>"
        for k, v in rows.items()
    )
    body = (
        f"<h2>{html.escape(subject)}</h2>"
        f"<table>{table}</table>"
        f"<h3>Error</h3><pre>{html.escape(error)}</pre>"
    )
    return {"subject": subject, "html": body}


class EmailNotifier:
    """Sends job failure emails through Resend"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        to_address: Optional[str] = None,
        from_address: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.to_address = to_address if to_address is not None else settings.ALERT_EMAIL_TO
        self.from_address = from_address or settings.EMAIL_FROM
        self.http_client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.to_address)

    async def notify_failure(
        self,
        job_name: str,
        run_id: Optional[str],
        error: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a failure email.

        Returns:
            True if the email was accepted by Resend
        """
        if not self.enabled:
            logger.info(f"Email notification skipped for {job_name} (not configured)")
            return False

        context = {k: (v.isoformat() if isinstance(v, date) else v) for k, v in (context or {}).items()}
        message = build_failure_email(job_name, run_id, error, context)
        payload = {
            "from": self.from_address,
            "to": [self.to_address],
            "subject": message["subject"],
            "html": message["html"],
        }

        client = self.http_client or httpx.AsyncClient(timeout=10.0)
        try:
            response = await client.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send failure notification for {job_name}: {e}")
            return False
        finally:
            if self.http_client is None:
                await client.aclose()

        logger.info(f"Failure notification sent for {job_name} (run {run_id})")
        return True


def get_notifier() -> EmailNotifier:
    return EmailNotifier()
