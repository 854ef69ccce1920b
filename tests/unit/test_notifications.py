"""Tests for ringbroker.notifications (SMS and email senders)."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from ringbroker.notifications import HttpEmailSender, TwilioSmsSender, mask_destination

from helpers import mock_http_session, response_cm


def make_response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload or {})
    resp.text = AsyncMock(return_value=text)
    return resp


@pytest.fixture
def twilio():
    return TwilioSmsSender("AC123", "secret", "+15550000000", timeout=1.0, max_attempts=2)


@pytest.fixture
def email():
    return HttpEmailSender(
        "https://mail.example.com/emails", "key-1", "noreply@example.com", timeout=1.0, max_attempts=2
    )


class TestTwilioSmsSender:
    @pytest.mark.asyncio
    async def test_success(self, twilio):
        session = mock_http_session()
        session.post.return_value = response_cm(make_response(201, {"sid": "SM42"}))
        with patch("aiohttp.ClientSession", return_value=session):
            result = await twilio.send("+15551234567", "code is 1234")

        assert result.success
        assert result.provider_message_id == "SM42"
        url = session.post.call_args.args[0]
        assert "AC123" in url
        data = session.post.call_args.kwargs["data"]
        assert data == {"To": "+15551234567", "From": "+15550000000", "Body": "code is 1234"}

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, twilio):
        session = mock_http_session()
        session.post.return_value = response_cm(make_response(400, text="bad number"))
        with patch("aiohttp.ClientSession", return_value=session):
            result = await twilio.send("+1555", "hi")

        assert not result.success
        assert result.error == "HTTP 400: bad number"
        assert session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self, twilio):
        session = mock_http_session()
        session.post.side_effect = [
            response_cm(make_response(503, text="busy")),
            response_cm(make_response(201, {"sid": "SM43"})),
        ]
        with patch("aiohttp.ClientSession", return_value=session):
            result = await twilio.send("+15551234567", "hi")

        assert result.success
        assert session.post.call_count == 2

    @pytest.mark.asyncio
    async def test_connection_error_reported(self, twilio):
        session = mock_http_session()
        session.post.side_effect = aiohttp.ClientConnectionError("down")
        with patch("aiohttp.ClientSession", return_value=session):
            result = await twilio.send("+15551234567", "hi")

        assert not result.success
        assert "ClientConnectionError" in result.error
        assert session.post.call_count == 2

    @pytest.mark.asyncio
    async def test_unconfigured_never_calls_out(self):
        sender = TwilioSmsSender("", "", "")
        with patch("aiohttp.ClientSession") as client:
            result = await sender.send("+15551234567", "hi")
        assert not result.success
        assert "not configured" in result.error
        client.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_destination(self, twilio):
        result = await twilio.send("", "hi")
        assert result.error == "No destination given"


class TestHttpEmailSender:
    @pytest.mark.asyncio
    async def test_success(self, email):
        session = mock_http_session()
        session.post.return_value = response_cm(make_response(200, {"id": "em-1"}))
        with patch("aiohttp.ClientSession", return_value=session):
            result = await email.send("alice@x.com", "code is 1234")

        assert result.success
        assert result.provider_message_id == "em-1"
        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer key-1"
        assert kwargs["json"]["to"] == ["alice@x.com"]
        assert kwargs["json"]["text"] == "code is 1234"

    @pytest.mark.asyncio
    async def test_failure_body_truncated(self, email):
        session = mock_http_session()
        session.post.return_value = response_cm(make_response(422, text="x" * 500))
        with patch("aiohttp.ClientSession", return_value=session):
            result = await email.send("alice@x.com", "hi")

        assert result.error == "HTTP 422: " + "x" * 200


def test_mask_destination():
    assert mask_destination("+15551234567") == "***4567"
    assert mask_destination("abc") == "***"
