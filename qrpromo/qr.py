import base64
import io
from concurrent.futures import ThreadPoolExecutor
from typing import List

import qrcode
from qrcode.constants import ERROR_CORRECT_H

TARGET_WIDTH = 512
BORDER = 2


def render_data_url(url: str) -> str:
    """PNG data URL of a high error-correction QR code, about TARGET_WIDTH pixels wide."""
    code = qrcode.QRCode(error_correction=ERROR_CORRECT_H, border=BORDER)
    code.add_data(url)
    code.make(fit=True)
    code.box_size = max(1, TARGET_WIDTH // (code.modules_count + 2 * BORDER))

    image = code.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer)
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def render_many(urls: List[str]) -> List[str]:
    with ThreadPoolExecutor(max_workers=len(urls) or 1) as pool:
        return list(pool.map(render_data_url, urls))
