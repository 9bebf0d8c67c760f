"""Asyncio-friendly SMTP connection pool keyed by server credentials."""

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

ConnectionKey = Tuple[str, int, Optional[str], bool]


class SMTPPool:
    """Keep one idle SMTP connection per server/user pair between sends.

    A connection is checked out by :meth:`get_connection` and handed back with
    :meth:`release`, so concurrent senders never share a session.
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0):
        """Create a pool whose idle connections expire after ``ttl`` seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: Dict[ConnectionKey, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: Optional[str], password: Optional[str], use_tls: bool) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # use_tls=True means implicit TLS (port 465); plain connections skip STARTTLS
        smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=use_tls, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    @staticmethod
    async def close(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            pass

    async def get_connection(self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool) -> aiosmtplib.SMTP:
        """Check out a connection for the given server, reconnecting when stale."""
        key: ConnectionKey = (host, port, user, use_tls)

        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self.close(smtp)

        return await self._connect(host, port, user, password, use_tls)

    async def release(self, smtp: aiosmtplib.SMTP, host: str, port: int, user: Optional[str], *, use_tls: bool) -> None:
        """Return a healthy connection to the pool; extra connections are closed."""
        key: ConnectionKey = (host, port, user, use_tls)
        async with self.lock:
            if key not in self.pool:
                self.pool[key] = (smtp, time.time())
                return
        await self.close(smtp)

    async def cleanup(self) -> None:
        """Close connections that are idle past ``ttl`` or no longer respond."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())
            self.pool.clear()

        for key, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                await self.close(smtp)
                continue
            async with self.lock:
                if key not in self.pool:
                    self.pool[key] = (smtp, last_used)
                    continue
            await self.close(smtp)
