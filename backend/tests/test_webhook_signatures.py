from __future__ import annotations

import pytest

from fakes import FakeProvider, WEBHOOK_SECRET, event_body, make_settings, signed
from video_ingest.constants import EventKind
from video_ingest.core.errors import ErrorKind, WebhookRejected
from video_ingest.providers.signatures import compute_signature, signature_header, verify_signature

NOW = 1_760_000_000


def test_valid_signature_returns_timestamp() -> None:
    body = b'{"id":"e1"}'
    header = signature_header("s3cret", body, timestamp=NOW)
    assert verify_signature(header, body, secret="s3cret", tolerance_seconds=300, clock=lambda: NOW + 10) == NOW


def test_any_matching_v1_is_accepted_during_secret_rotation() -> None:
    body = b"{}"
    good = compute_signature("new", NOW, body)
    header = f"t={NOW},v1={'0' * 64},v1={good}"
    assert verify_signature(header, body, secret="new", tolerance_seconds=300, clock=lambda: NOW) == NOW


@pytest.mark.parametrize(
    "header,kind",
    [
        (None, ErrorKind.AUTH_FAILED),
        ("", ErrorKind.AUTH_FAILED),
        ("v1=abc", ErrorKind.MALFORMED),
        ("t=abc,v1=abc", ErrorKind.MALFORMED),
        (f"t={NOW}", ErrorKind.MALFORMED),
    ],
)
def test_bad_headers_are_rejected(header, kind) -> None:
    with pytest.raises(WebhookRejected) as exc:
        verify_signature(header, b"{}", secret="s", tolerance_seconds=300, clock=lambda: NOW)
    assert exc.value.kind is kind


def test_tampered_body_fails_auth() -> None:
    header = signature_header("s", b'{"a":1}', timestamp=NOW)
    with pytest.raises(WebhookRejected) as exc:
        verify_signature(header, b'{"a":2}', secret="s", tolerance_seconds=300, clock=lambda: NOW)
    assert exc.value.kind is ErrorKind.AUTH_FAILED


def test_timestamp_outside_tolerance_is_replay() -> None:
    body = b"{}"
    header = signature_header("s", body, timestamp=NOW - 301)
    with pytest.raises(WebhookRejected) as exc:
        verify_signature(header, body, secret="s", tolerance_seconds=300, clock=lambda: NOW)
    assert exc.value.kind is ErrorKind.REPLAY

    # Exactly on the boundary is still accepted.
    header = signature_header("s", body, timestamp=NOW - 300)
    assert verify_signature(header, body, secret="s", tolerance_seconds=300, clock=lambda: NOW) == NOW - 300


def test_wrong_secret_is_auth_failure_not_replay() -> None:
    # An old timestamp signed with the wrong key must not reveal the window.
    header = signature_header("other", b"{}", timestamp=NOW - 10_000)
    with pytest.raises(WebhookRejected) as exc:
        verify_signature(header, b"{}", secret="s", tolerance_seconds=300, clock=lambda: NOW)
    assert exc.value.kind is ErrorKind.AUTH_FAILED


def test_provider_verify_webhook_parses_signed_event() -> None:
    provider = FakeProvider(make_settings(), clock=lambda: NOW)
    body = event_body("progress", event_id="evt-1", upload_id="up-1", progress=42)
    event = provider.verify_webhook(signed(provider, body, timestamp=NOW), body)

    assert event.event_id == "evt-1"
    assert event.kind is EventKind.PROGRESS
    assert event.upload_id == "up-1"
    assert event.progress == 42


def test_provider_verify_webhook_rejects_non_json_and_bad_progress() -> None:
    provider = FakeProvider(make_settings(), clock=lambda: NOW)

    body = b"not json"
    with pytest.raises(WebhookRejected) as exc:
        provider.verify_webhook(signed(provider, body, timestamp=NOW), body)
    assert exc.value.kind is ErrorKind.MALFORMED

    body = event_body("progress", upload_id="up-1", progress=140)
    with pytest.raises(WebhookRejected) as exc:
        provider.verify_webhook(signed(provider, body, timestamp=NOW), body)
    assert exc.value.kind is ErrorKind.MALFORMED


def test_asset_ready_without_asset_id_is_malformed() -> None:
    provider = FakeProvider(make_settings(), clock=lambda: NOW)
    body = event_body("asset.ready", upload_id="up-1")
    with pytest.raises(WebhookRejected) as exc:
        provider.verify_webhook(signed(provider, body, timestamp=NOW), body)
    assert exc.value.kind is ErrorKind.MALFORMED


def test_verify_webhook_without_secret_rejects_everything() -> None:
    provider = FakeProvider(make_settings(PROVIDER_WEBHOOK_SECRET=None), clock=lambda: NOW)
    body = event_body("progress", upload_id="up-1", progress=1)
    with pytest.raises(WebhookRejected) as exc:
        provider.verify_webhook(signed(provider, body, secret=WEBHOOK_SECRET, timestamp=NOW), body)
    assert exc.value.kind is ErrorKind.AUTH_FAILED
