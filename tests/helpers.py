import asyncio
import re
import uuid
from typing import List, Optional

from gatepass.delivery import Mailer, TicketEmail
from gatepass.render import Renderer

SECRET = "test-secret"
PNG = b"\x89PNG\r\n\x1a\nfake"


class StaticRenderer(Renderer):
    def __init__(self, fail_on: Optional[int] = None):
        self.calls: List[str] = []
        self.fail_on = fail_on

    async def render(self, token: str, size: int) -> bytes:
        self.calls.append(token)
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            raise RuntimeError("qr encoder exploded")
        return PNG


class RecordingMailer(Mailer):
    """Records sent mail; `fail_on=n` makes the n-th call raise."""

    def __init__(self, fail_on: Optional[int] = None, delay: float = 0.0):
        self.sent: List[TicketEmail] = []
        self.calls = 0
        self.fail_on = fail_on
        self.delay = delay

    async def deliver(self, email: TicketEmail) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on is not None and self.calls == self.fail_on:
            raise ConnectionError("smtp: connection refused")
        self.sent.append(email)

    def tokens(self) -> List[str]:
        out = []
        for email in self.sent:
            m = re.search(r"Backup code: (\S+)", email.text)
            out.append(m.group(1))
        return out


class SpyStore:
    """Wraps a store, records every call, optionally breaks one method."""

    def __init__(self, inner, fail: Optional[str] = None,
                 fail_after: int = 0):
        self.inner = inner
        self.calls: List[str] = []
        self.fail = fail
        self.fail_after = fail_after

    def __getattr__(self, name):
        attr = getattr(self.inner, name)

        async def call(*args, **kwargs):
            self.calls.append(name)
            if name == self.fail:
                if self.calls.count(name) > self.fail_after:
                    raise RuntimeError(f"{name}: database is on fire")
            return await attr(*args, **kwargs)
        return call


def uid(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"
