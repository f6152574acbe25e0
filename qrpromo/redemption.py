from dataclasses import dataclass, field
from html import escape
from typing import Dict, Optional

import structlog

from qrpromo.errors import PersistenceError
from qrpromo.storage import ScanResult, Storage

logger = structlog.get_logger(__name__)

PLAIN = {"Content-Type": "text/plain; charset=utf-8"}

PAGE = """<!DOCTYPE html>
<html lang="pl">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>QR Promo</title>
    <style>
      body {{ margin: 0; font-family: system-ui, sans-serif; background: #0f172a; color: #f8fafc;
             display: flex; justify-content: center; align-items: center; min-height: 100vh; }}
      main {{ background: rgba(15, 23, 42, 0.85); border-radius: 16px; padding: 32px;
             max-width: 480px; width: calc(100% - 32px); }}
      .value {{ margin-top: 24px; font-weight: 600; }}
      .badge {{ display: inline-block; padding: 12px 18px; border-radius: 12px; background: #38bdf8;
               color: #0f172a; font-size: 1.5rem; font-weight: 700; }}
      .promo-image {{ width: 100%; border-radius: 12px; margin: 16px 0 24px; }}
      .cashier {{ margin-top: 16px; font-size: 0.95rem; opacity: 0.8; }}
      .test-badge {{ color: #bef264; font-weight: 600; text-transform: uppercase; font-size: 0.75rem; }}
    </style>
  </head>
  <body>
    <main>
      {test_banner}
      <h1>{heading}</h1>
      <p>{remaining}</p>
      {content}
      {cashier}
    </main>
  </body>
</html>"""


@dataclass(frozen=True)
class Redemption:
    status_code: int
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


def render_page(result: ScanResult) -> str:
    expired = result.status == "expired"

    if expired:
        remaining = "Promocja została zakończona."
    else:
        remaining = f"Pozostało <strong>{result.remaining_scans}</strong> użyć."

    if result.promotion_type == "promo_code" and result.promo_code:
        content = f'<p class="value">Kod promocyjny:</p><p class="badge">{escape(result.promo_code)}</p>'
    elif result.promotion_type == "image" and result.image_url:
        content = f'<img src="{escape(result.image_url)}" alt="Grafika promocji" class="promo-image" />'
    elif result.promotion_type == "redirect" and result.redirect_url:
        content = f'<p class="value">Promocja przekierowuje na:</p><p class="badge">{escape(result.redirect_url)}</p>'
    else:
        content = '<p class="value">Ta promocja jest chwilowo niedostępna.</p>'

    cashier = ""
    if result.cashier_code:
        cashier = f'<p class="cashier">Kod kasowy: <strong>{escape(result.cashier_code)}</strong></p>'

    test_banner = ""
    if result.is_test:
        test_banner = '<p class="test-badge">TRYB TESTOWY – licznik się nie zmniejsza</p>'

    return PAGE.format(
        test_banner=test_banner,
        heading="Promocja zakończona" if expired else "Promocja QR",
        remaining=remaining,
        content=content,
        cashier=cashier,
    )


class RedemptionGate:
    def __init__(self, storage: Storage):
        self.storage = storage

    def redeem(self, token: str) -> Redemption:
        if not token:
            return Redemption(404, "Nie znaleziono kodu", dict(PLAIN))

        try:
            result = self.storage.consume_scan(token)
        except PersistenceError as e:
            logger.error("scan_consume_failed", error=str(e))
            return Redemption(500, "Błąd serwera", dict(PLAIN))
        if result is None:
            return Redemption(404, "Nie znaleziono kodu", dict(PLAIN))

        logger.info(
            "scan_consumed",
            campaign_id=result.campaign_id,
            status=result.status,
            remaining_scans=result.remaining_scans,
            is_test=result.is_test,
        )

        headers = {"Cache-Control": "no-store"}
        if result.status != "expired" and result.promotion_type == "redirect" and result.redirect_url:
            headers["Location"] = result.redirect_url
            return Redemption(302, None, headers)

        headers["Content-Type"] = "text/html; charset=utf-8"
        return Redemption(410 if result.status == "expired" else 200, render_page(result), headers)
