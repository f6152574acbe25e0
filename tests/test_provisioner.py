from conftest import campaign_spec_payload
from qrpromo.errors import PersistenceError, QrRenderError, ValidationError
from qrpromo.provisioner import CampaignProvisioner
from qrpromo.results import Err, Ok
from qrpromo.validation import CampaignSpec

BASE_URL = "https://app.test/"


def spec(**overrides):
    return CampaignSpec.model_validate(campaign_spec_payload(**overrides))


def test_provision_creates_campaign_with_two_tokens(provisioner, memory_storage, mailer):
    result = provisioner.provision(spec(), BASE_URL)

    assert isinstance(result, Ok)
    campaign = result.value
    assert campaign.campaign_id in memory_storage.campaigns
    assert campaign.public_qr.token != campaign.test_qr.token
    assert len(campaign.public_qr.token) == 12
    assert campaign.public_qr.url == f"https://app.test/qr/{campaign.public_qr.token}"
    assert campaign.test_qr.data_url.endswith(campaign.test_qr.url)

    tokens = memory_storage.get_qr_codes(campaign.campaign_id)
    assert sorted(code.is_test for code in tokens) == [False, True]
    mailer.send.assert_called_once()
    assert mailer.send.call_args.args[0].public_url == campaign.public_qr.url


def test_inconsistent_spec_is_rejected_before_persistence(provisioner, memory_storage, mailer):
    result = provisioner.provision(spec(promotionType="redirect"), BASE_URL)

    assert isinstance(result, Err)
    assert isinstance(result.error, ValidationError)
    assert memory_storage.campaigns == {}
    mailer.send.assert_not_called()


def test_failed_token_insert_rolls_back_campaign(provisioner, memory_storage):
    memory_storage.fail_qr_insert = True

    result = provisioner.provision(spec(), BASE_URL)

    assert isinstance(result, Err)
    assert isinstance(result.error, PersistenceError)
    assert memory_storage.campaigns == {}
    assert memory_storage.qr_codes == []


def test_partial_token_insert_rolls_back_campaign_and_tokens(provisioner, memory_storage):
    memory_storage.short_qr_insert = True

    result = provisioner.provision(spec(), BASE_URL)

    assert isinstance(result, Err)
    assert memory_storage.campaigns == {}
    assert memory_storage.qr_codes == []


def test_render_failure_is_terminal(memory_storage, mailer):
    def broken_renderer(urls):
        raise RuntimeError("encoder exploded")

    result = CampaignProvisioner(memory_storage, mailer=mailer, renderer=broken_renderer).provision(spec(), BASE_URL)

    assert isinstance(result, Err)
    assert isinstance(result.error, QrRenderError)
    # The caller decides whether to discard the stored campaign
    assert result.error.campaign_id in memory_storage.campaigns
    mailer.send.assert_not_called()


def test_email_failure_does_not_fail_provisioning(provisioner, mailer):
    mailer.send.side_effect = RuntimeError("smtp down")

    result = provisioner.provision(spec(), BASE_URL)

    assert isinstance(result, Ok)


def test_describe_rebuilds_result(provisioner, mailer):
    created = provisioner.provision(spec(), BASE_URL).value
    mailer.send.reset_mock()

    described = provisioner.describe(created.campaign_id, BASE_URL)

    assert isinstance(described, Ok)
    assert described.value.public_qr == created.public_qr
    mailer.send.assert_not_called()


def test_result_serialises_in_camel_case(provisioner):
    body = provisioner.provision(spec(), BASE_URL).value.to_dict()

    assert body["promoCode"] == "SUMMER10"
    assert set(body["publicQr"]) == {"token", "url", "dataUrl"}


def test_real_renderer_produces_png_data_url(memory_storage, mailer):
    result = CampaignProvisioner(memory_storage, mailer=mailer).provision(spec(), BASE_URL)

    assert result.value.public_qr.data_url.startswith("data:image/png;base64,")
