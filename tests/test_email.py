import json

import httpx

from qrpromo.email import CampaignSummary, SummaryMailer, summary_text

SUMMARY = CampaignSummary(
    email="owner@kawiarnia.pl",
    public_url="https://app.test/qr/PUB",
    test_url="https://app.test/qr/TST",
    max_scans=50,
    promotion_type="promo_code",
    promo_code="SUMMER10",
)


def test_summary_text_lists_links_and_code():
    text = summary_text(SUMMARY)
    assert "Maksymalna liczba skanów: 50" in text
    assert "Link testowy: https://app.test/qr/TST" in text
    assert "Kod promocyjny: SUMMER10" in text
    assert "Kod kasowy" not in text


def test_mailer_disabled_without_credentials():
    assert SummaryMailer(api_key="", sender="").send(SUMMARY) is False


def test_mailer_posts_to_resend():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email-1"})

    mailer = SummaryMailer(api_key="re_key", sender="promo@kawiarnia.pl",
                           http_client=httpx.Client(transport=httpx.MockTransport(handler)))

    assert mailer.send(SUMMARY) is True
    assert seen["auth"] == "Bearer re_key"
    assert seen["body"]["subject"] == "Twoja kampania QR (promo_code)"
    assert seen["body"]["to"] == "owner@kawiarnia.pl"


def test_mailer_reports_rejection():
    mailer = SummaryMailer(api_key="re_key", sender="promo@kawiarnia.pl",
                           http_client=httpx.Client(transport=httpx.MockTransport(
                               lambda request: httpx.Response(422, json={"message": "bad"}))))

    assert mailer.send(SUMMARY) is False
