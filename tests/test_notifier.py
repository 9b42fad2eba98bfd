import base64
import threading
import time
import urllib.error
from unittest import mock

import botocore.exceptions
import pytest
import slack_sdk.webhook

from pipeline_monitor.events import parse_event
from pipeline_monitor.notifier import (
    DecryptedWebhookUrl,
    NotificationDispatcher,
    SendPipelineNotificationError,
    WebhookDecryptionError,
    build_message,
)

WEBHOOK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"
CIPHERTEXT = base64.b64encode(b"ciphertext").decode("ascii")


@pytest.fixture
def kms_client():
    client = mock.MagicMock()
    client.decrypt.return_value = {"Plaintext": WEBHOOK_URL.encode("utf-8")}

    return client


@pytest.fixture
def webhook_url(kms_client):
    return DecryptedWebhookUrl(
        kms_client=kms_client, ciphertext=CIPHERTEXT, function_name="dev-app-pipeline-monitor"
    )


@pytest.fixture
def webhook_client():
    with mock.patch("slack_sdk.webhook.WebhookClient") as client_class:
        client_class.return_value.send.return_value = mock.Mock(status_code=200, body="ok")

        yield client_class


@pytest.mark.parametrize(
    "state,phrase",
    [
        ("STARTED", "has entered the state *STARTED*"),
        ("SUCCEEDED", "has *SUCCEEDED*"),
        ("FAILED", "has *FAILED*"),
        ("CANCELED", "has been *CANCELED*"),
    ],
)
def test_known_state_messages(raw_event_factory, state, phrase):
    message = build_message(parse_event(raw_event_factory(state=state, execution_id="exec-1")))

    assert phrase in message
    assert "*dev-app-app-pipeline*" in message
    assert "*111111111111*" in message
    assert "*us-east-1*" in message
    assert "*exec-1*" in message


def test_unknown_state_message_contains_state(raw_event_factory):
    message = build_message(parse_event(raw_event_factory(state="PAUSED")))

    assert "PAUSED" in message
    assert "unknown state" in message


def test_decrypts_with_function_name_context(webhook_url, kms_client):
    assert webhook_url.get() == WEBHOOK_URL

    kms_client.decrypt.assert_called_once_with(
        CiphertextBlob=b"ciphertext",
        EncryptionContext={"LambdaFunctionName": "dev-app-pipeline-monitor"},
    )


def test_decrypts_once_per_process(webhook_url, kms_client):
    webhook_url.get()
    webhook_url.get()

    assert kms_client.decrypt.call_count == 1


def test_concurrent_first_use_decrypts_once(webhook_url, kms_client):
    def slow_decrypt(**kwargs):
        time.sleep(0.05)

        return {"Plaintext": WEBHOOK_URL.encode("utf-8")}

    kms_client.decrypt.side_effect = slow_decrypt

    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(webhook_url.get())

    threads = [threading.Thread(target=worker) for _ in range(8)]

    for thread in threads:
        thread.start()

    for thread in threads:
        thread.join()

    assert results == [WEBHOOK_URL] * 8
    assert kms_client.decrypt.call_count == 1


def test_decryption_failure_is_raised_and_not_cached(webhook_url, kms_client):
    kms_client.decrypt.side_effect = [
        botocore.exceptions.ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "Decrypt"
        ),
        {"Plaintext": WEBHOOK_URL.encode("utf-8")},
    ]

    with pytest.raises(WebhookDecryptionError):
        webhook_url.get()

    assert webhook_url.get() == WEBHOOK_URL


def test_invalid_ciphertext_is_decryption_failure(kms_client):
    webhook_url = DecryptedWebhookUrl(
        kms_client=kms_client, ciphertext="not base64!", function_name="f"
    )

    with pytest.raises(WebhookDecryptionError):
        webhook_url.get()

    kms_client.decrypt.assert_not_called()


def test_notify_posts_json_text(raw_event_factory, webhook_url, webhook_client):
    event = parse_event(raw_event_factory(state="SUCCEEDED"))

    NotificationDispatcher(webhook_url).notify(event)

    webhook_client.assert_called_once_with(url=WEBHOOK_URL, retry_handlers=[])
    webhook_client.return_value.send.assert_called_once_with(
        text=build_message(event), headers={"Content-Type": "application/json"}
    )


def test_notify_without_decrypted_url_sends_nothing(
    raw_event_factory, webhook_url, kms_client, webhook_client
):
    kms_client.decrypt.side_effect = botocore.exceptions.ClientError(
        {"Error": {"Code": "InvalidCiphertextException", "Message": "bad"}}, "Decrypt"
    )

    with pytest.raises(WebhookDecryptionError):
        NotificationDispatcher(webhook_url).notify(parse_event(raw_event_factory()))

    webhook_client.return_value.send.assert_not_called()


def test_rejected_notification_raises(raw_event_factory, webhook_url, webhook_client):
    webhook_client.return_value.send.return_value = mock.Mock(
        status_code=404, body="no_service"
    )

    with pytest.raises(SendPipelineNotificationError) as excinfo:
        NotificationDispatcher(webhook_url).notify(parse_event(raw_event_factory()))

    assert excinfo.value.status_code == 404


def test_network_failure_propagates(raw_event_factory, webhook_url, webhook_client):
    webhook_client.return_value.send.side_effect = urllib.error.URLError("timed out")

    with pytest.raises(urllib.error.URLError):
        NotificationDispatcher(webhook_url).notify(parse_event(raw_event_factory()))


def test_webhook_client_does_not_retry(raw_event_factory, webhook_url):
    clients = []

    def send(client, **kwargs):
        clients.append(client)

        return mock.Mock(status_code=200, body="ok")

    with mock.patch.object(
        slack_sdk.webhook.WebhookClient, "send", autospec=True, side_effect=send
    ):
        NotificationDispatcher(webhook_url).notify(parse_event(raw_event_factory()))

    (client,) = clients

    assert client.url == WEBHOOK_URL
    assert client.retry_handlers == []
