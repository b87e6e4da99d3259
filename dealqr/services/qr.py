import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def make_qr_bytes(payload: str, box_size: int = 10) -> bytes:
    """Return QR PNG bytes for a redemption payload.

    Medium error correction: codes are shown on cracked or dimmed phone
    screens more often than printed.
    """
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image().save(buf, format='PNG')
    return buf.getvalue()
