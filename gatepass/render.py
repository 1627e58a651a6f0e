from __future__ import annotations
import asyncio
import io
from abc import ABC, abstractmethod

import qrcode
from qrcode.constants import ERROR_CORRECT_M

QR_BORDER = 4


# ----------------------------
# Renderer Interface
# ----------------------------
class Renderer(ABC):
    @abstractmethod
    async def render(self, token: str, size: int) -> bytes: ...


class QRRenderer(Renderer):
    """PNG QR code, roughly `size` pixels wide."""

    def _render(self, token: str, size: int) -> bytes:
        qr = qrcode.QRCode(
            error_correction=ERROR_CORRECT_M, box_size=1, border=QR_BORDER
        )
        qr.add_data(token)
        qr.make(fit=True)
        modules = qr.modules_count + 2 * QR_BORDER
        qr.box_size = max(1, size // modules)

        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, "PNG")
        return buffer.getvalue()

    async def render(self, token: str, size: int) -> bytes:
        # CPU-bound; keep it off the event loop
        return await asyncio.to_thread(self._render, token, size)


class NullRenderer(Renderer):
    """QR_ENABLED=0: tickets go out with the text code only."""

    async def render(self, token: str, size: int) -> bytes:
        return b""
