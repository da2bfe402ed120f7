"""BFL client: status normalization, backoff, polling budget and error mapping."""

import itertools

import pytest

from conftest import RESULT_URL, failed, pending, ready, unavailable
from tryon_api.core.exceptions import (
    InvalidRequestError,
    PollTimeoutError,
    ProtocolError,
    RemoteJobFailed,
    ServiceUnavailableError,
)
from tryon_api.services.bfl import RemoteState, backoff_delays, extract_result_url, normalize_status


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Ready", RemoteState.SUCCEEDED),
        ("succeeded", RemoteState.SUCCEEDED),
        ("Pending", RemoteState.PROCESSING),
        ("Queued", RemoteState.PROCESSING),
        ("Error", RemoteState.FAILED),
        ("Content Moderated", RemoteState.FAILED),
        ("Request Moderated", RemoteState.FAILED),
        ("Task not found", RemoteState.FAILED),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) is expected


@pytest.mark.parametrize("raw", ["Warming up", "", None, 3])
def test_normalize_status_rejects_unknown(raw):
    with pytest.raises(ProtocolError):
        normalize_status(raw)


def test_extract_result_url_prefers_sample():
    assert extract_result_url({"result": {"sample": "a", "url": "b"}}) == "a"
    assert extract_result_url({"result": {"image": "c"}}) == "c"
    assert extract_result_url({"result": {}}) is None
    assert extract_result_url({}) is None


def test_backoff_is_monotonic_and_capped():
    delays = list(itertools.islice(backoff_delays(2.0, 1.5, 30.0), 15))
    assert delays[:3] == [2.0, 3.0, 4.5]
    assert all(b >= a for a, b in zip(delays, delays[1:]))
    assert max(delays) == 30.0
    assert delays[-1] == 30.0


async def test_submit_returns_handle_and_sends_api_key(bfl_client, fake_bfl):
    result = await bfl_client.submit("flux-pro-1.1", {"prompt": "a model"})
    assert result.external_job_id == "ext-1"
    assert result.polling_url.endswith("get_result?id=ext-1")
    assert fake_bfl.submitted == [{"prompt": "a model"}]
    assert fake_bfl.submit_headers[0]["x-key"] == "test-bfl-key"


@pytest.mark.parametrize(
    "error,exc_type",
    [
        ((400, {"detail": "bad prompt"}), InvalidRequestError),
        ((422, {"detail": "invalid"}), InvalidRequestError),
        ((429, {"detail": "slow down"}), ServiceUnavailableError),
        ((500, {"detail": "boom"}), ServiceUnavailableError),
        ((503, {"detail": "overloaded"}), ServiceUnavailableError),
    ],
)
async def test_submit_error_mapping(bfl_client, fake_bfl, error, exc_type):
    fake_bfl.submit_error = error
    with pytest.raises(exc_type) as info:
        await bfl_client.submit("flux-pro-1.1", {"prompt": "x"})
    assert info.value.remote_status == error[0]


async def test_submit_without_polling_url_is_protocol_error(bfl_client, fake_bfl):
    fake_bfl.submit_error = (200, {"id": "abc"})
    with pytest.raises(ProtocolError):
        await bfl_client.submit("flux-pro-1.1", {"prompt": "x"})


async def test_poll_until_ready(bfl_client, fake_bfl, sleeps):
    url = fake_bfl.add_job("j1", [pending(0.1), pending(0.6), ready()])
    result = await bfl_client.poll_until_terminal(url, max_attempts=5, initial_delay=2.0)
    assert result.status is RemoteState.SUCCEEDED
    assert result.result_url == RESULT_URL
    assert fake_bfl.polls["j1"] == 3
    assert sleeps == [2.0, 3.0]


async def test_transient_errors_share_the_attempt_budget(bfl_client, fake_bfl, sleeps):
    url = fake_bfl.add_job("j2", [unavailable(), pending(), unavailable(), ready()])
    result = await bfl_client.poll_until_terminal(url, max_attempts=4, initial_delay=1.0)
    assert result.status is RemoteState.SUCCEEDED
    assert fake_bfl.polls["j2"] == 4
    assert len(sleeps) == 3


async def test_poll_exhaustion_raises_timeout_without_trailing_sleep(bfl_client, fake_bfl, sleeps):
    url = fake_bfl.add_job("j3", [pending()])
    with pytest.raises(PollTimeoutError) as info:
        await bfl_client.poll_until_terminal(url, max_attempts=4, initial_delay=2.0)
    assert info.value.attempts == 4
    assert fake_bfl.polls["j3"] == 4
    assert len(sleeps) == 3


async def test_poll_remote_failure(bfl_client, fake_bfl):
    url = fake_bfl.add_job("j4", [pending(), failed("moderated")])
    with pytest.raises(RemoteJobFailed) as info:
        await bfl_client.poll_until_terminal(url, max_attempts=5)
    assert info.value.detail == {"reason": "moderated"}


async def test_poll_unknown_status_aborts_immediately(bfl_client, fake_bfl):
    url = fake_bfl.add_job("j5", [(200, {"status": "Mystery"}), ready()])
    with pytest.raises(ProtocolError):
        await bfl_client.poll_until_terminal(url, max_attempts=5)
    assert fake_bfl.polls["j5"] == 1


async def test_download_does_not_send_api_key(bfl_client, fake_bfl):
    content, content_type = await bfl_client.download(RESULT_URL)
    assert content.startswith(b"\xff\xd8")
    assert content_type == "image/jpeg"
    assert "x-key" not in fake_bfl.download_headers[0]


async def test_download_missing_is_invalid_request(bfl_client):
    with pytest.raises(InvalidRequestError):
        await bfl_client.download("https://delivery.example.com/missing.jpg")
