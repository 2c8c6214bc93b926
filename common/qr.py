import base64
import json
from io import BytesIO
from typing import Any, Dict

import qrcode


def qr_data_url(payload: Dict[str, Any]) -> str:
    """Render a JSON payload as a QR code PNG data URL"""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(json.dumps(payload, separators=(",", ":")))
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")

    img_base64 = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/png;base64,{img_base64}"
