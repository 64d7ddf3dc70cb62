from __future__ import annotations

import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M

QR_BOX_SIZE = 8
QR_BORDER = 2


class QRImageRenderer:
    def __init__(self, *, box_size: int = QR_BOX_SIZE, border: int = QR_BORDER) -> None:
        self._box_size = box_size
        self._border = border

    def render_png(self, data: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=ERROR_CORRECT_M,
            box_size=self._box_size,
            border=self._border,
        )
        qr.add_data(data)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()
