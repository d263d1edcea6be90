"""Tests for TwiML builders and the Twilio REST client."""

import asyncio
import xml.etree.ElementTree as ET

import aiohttp
import pytest

from voicebridge.errors import TelephonyError
from voicebridge.telephony import TwilioRestClient, build_hangup_twiml, build_stream_twiml


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return str(self._body)

    async def json(self, content_type=None):
        return self._body


class FakeSession:
    """Records posts; answers with a canned status and body."""

    def __init__(self, status=201, body=None, error=None):
        self.status = status
        self.body = body if body is not None else {"sid": "CA999"}
        self.error = error
        self.posts = []

    def post(self, url, data=None, auth=None, timeout=None):
        self.posts.append({"url": url, "data": data, "auth": auth, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status, self.body)


def _client(session):
    return TwilioRestClient(account_sid="AC123", auth_token="tok", session=session)


# ── TwiML ───────────────────────────────────────────────────────────


class TestTwiml:
    def test_stream_twiml(self):
        xml = build_stream_twiml("wss://bridge.example.com/twilio/stream", {
            "To": "+15550001111",
            "From": "+15557654321",
            "tenantId": "",
        })
        root = ET.fromstring(xml.split("?>", 1)[1])
        stream = root.find("Connect/Stream")
        assert stream.get("url") == "wss://bridge.example.com/twilio/stream"
        params = {p.get("name"): p.get("value") for p in stream.findall("Parameter")}
        assert params == {"To": "+15550001111", "From": "+15557654321"}

    def test_hangup_twiml_escapes_text(self):
        xml = build_hangup_twiml("Sorry & goodbye <3")
        root = ET.fromstring(xml.split("?>", 1)[1])
        assert root.find("Say").text == "Sorry & goodbye <3"
        assert root[-1].tag == "Hangup"


# ── REST client ─────────────────────────────────────────────────────


class TestTwilioRestClient:
    async def test_hangup_posts_twiml(self):
        session = FakeSession(status=200, body={"sid": "CA1"})
        ok = await _client(session).hangup_with_message("CA1", "We're sorry.")

        assert ok is True
        post = session.posts[0]
        assert post["url"].endswith("/Accounts/AC123/Calls/CA1.json")
        assert "<Say>We're sorry.</Say>" in post["data"]["Twiml"]
        assert post["auth"] == aiohttp.BasicAuth("AC123", "tok")

    async def test_hangup_without_credentials_is_noop(self):
        client = TwilioRestClient(account_sid="", auth_token="", session=FakeSession())
        assert client.configured is False
        assert await client.hangup_with_message("CA1", "bye") is False

    async def test_hangup_rejected(self):
        session = FakeSession(status=404, body={"message": "not found"})
        assert await _client(session).hangup_with_message("CA1", "bye") is False

    async def test_hangup_network_error(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("reset"))
        assert await _client(session).hangup_with_message("CA1", "bye") is False

    async def test_hangup_timeout(self):
        session = FakeSession(error=asyncio.TimeoutError())
        assert await _client(session).hangup_with_message("CA1", "bye") is False
        assert session.posts[0]["timeout"].total == 10.0

    async def test_create_call(self):
        session = FakeSession(status=201, body={"sid": "CA999"})
        sid = await _client(session).create_call(
            "+15559990000", "+15550001111", "https://bridge.example.com/twilio/voice?tenantId=t"
        )
        assert sid == "CA999"
        assert session.posts[0]["data"] == {
            "To": "+15559990000",
            "From": "+15550001111",
            "Url": "https://bridge.example.com/twilio/voice?tenantId=t",
        }

    async def test_create_call_rejected(self):
        session = FakeSession(status=400, body={"message": "invalid number"})
        with pytest.raises(TelephonyError) as exc_info:
            await _client(session).create_call("bad", "+15550001111", "https://x/twilio/voice")
        assert exc_info.value.status_code == 400

    async def test_create_call_timeout(self):
        session = FakeSession(error=asyncio.TimeoutError())
        with pytest.raises(TelephonyError):
            await _client(session).create_call("+15559990000", "+15550001111", "https://x/twilio/voice")

    async def test_create_call_unconfigured(self):
        client = TwilioRestClient(account_sid="", auth_token="")
        with pytest.raises(TelephonyError):
            await client.create_call("+15559990000", "+15550001111", "https://x/twilio/voice")
