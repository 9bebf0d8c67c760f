"""Delivery channels used by the dispatcher."""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Optional

import aiosmtplib

from .errors import SendError
from .smtp_pool import SMTPPool


class Sender:
    """Interface implemented by concrete delivery channels."""

    async def send(self, destination: str, subject: str, body: str) -> None:
        """Deliver a message or raise :class:`SendError` with the failure reason."""
        raise NotImplementedError


class SmtpSender(Sender):
    """Send plain-text messages through an SMTP server using pooled connections."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 25,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_addr: str = "noreply@localhost",
        pool: Optional[SMTPPool] = None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.from_addr = from_addr
        self.pool = pool or SMTPPool()
        self.timeout = timeout

    def build_message(self, destination: str, subject: str, body: str) -> EmailMessage:
        """Translate the arguments into an :class:`EmailMessage`."""
        msg = EmailMessage()
        msg["From"] = self.from_addr
        msg["To"] = destination
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    async def send(self, destination: str, subject: str, body: str) -> None:
        if not destination:
            raise SendError("missing destination")
        msg = self.build_message(destination, subject, body)
        try:
            smtp = await self.pool.get_connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            )
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            raise SendError(f"connection to {self.host}:{self.port} failed: {exc}") from exc

        try:
            async with asyncio.timeout(self.timeout):
                await smtp.send_message(msg, sender=self.from_addr)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            await self.pool.close(smtp)
            code = getattr(exc, "code", None)
            reason = f"{exc} (SMTP {code})" if code else (str(exc) or exc.__class__.__name__)
            raise SendError(reason) from exc

        await self.pool.release(smtp, self.host, self.port, self.user, use_tls=self.use_tls)
