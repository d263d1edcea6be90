"""Twilio call control: TwiML documents and the REST calls the bridge makes.

  build_stream_twiml()    <Connect><Stream> with routing <Parameter>s
  build_hangup_twiml()    <Say> apology followed by <Hangup/>
  TwilioRestClient        hang up a live call with a message, dial out
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from xml.etree.ElementTree import Element, SubElement, tostring

import aiohttp

from voicebridge.config import settings
from voicebridge.errors import TelephonyError
from voicebridge.session import redact_pii

log = logging.getLogger("voicebridge.telephony")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


def build_stream_twiml(stream_url: str, parameters: Optional[dict[str, str]] = None) -> str:
    """TwiML that connects the call to our Media Stream WebSocket.

    Parameters appear as ``customParameters`` on the stream's start frame.
    Empty values are left out.
    """
    response_el = Element("Response")
    connect_el = SubElement(response_el, "Connect")
    stream_el = SubElement(connect_el, "Stream")
    stream_el.set("url", stream_url)

    for name, value in (parameters or {}).items():
        if value:
            param_el = SubElement(stream_el, "Parameter")
            param_el.set("name", name)
            param_el.set("value", str(value))

    return tostring(response_el, encoding="unicode", xml_declaration=True)


def build_hangup_twiml(message: str) -> str:
    response_el = Element("Response")
    say_el = SubElement(response_el, "Say")
    say_el.text = message
    SubElement(response_el, "Hangup")
    return tostring(response_el, encoding="unicode", xml_declaration=True)


class TwilioRestClient:
    """Minimal Twilio REST client over aiohttp with basic auth."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ) -> None:
        self._account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self._auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token)

    def _url(self, path: str) -> str:
        return f"{TWILIO_API_BASE}/Accounts/{self._account_sid}/{path}"

    async def _post(self, path: str, data: dict[str, str]) -> tuple[int, dict]:
        auth = aiohttp.BasicAuth(self._account_sid, self._auth_token)
        if self._session is not None:
            return await self._do_post(self._session, path, data, auth)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            return await self._do_post(session, path, data, auth)

    async def _do_post(
        self,
        session: aiohttp.ClientSession,
        path: str,
        data: dict[str, str],
        auth: aiohttp.BasicAuth,
    ) -> tuple[int, dict]:
        async with session.post(
            self._url(path), data=data, auth=auth, timeout=self._timeout
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                log.error("Twilio %s failed (%d): %s", path, resp.status, body[:300])
                return resp.status, {}
            return resp.status, await resp.json(content_type=None)

    async def hangup_with_message(self, call_sid: str, message: str) -> bool:
        """Replace the live call's TwiML with a spoken message and a hangup.

        Best effort: returns False instead of raising when Twilio is not
        configured or the request fails.
        """
        if not self.configured or not call_sid:
            log.warning("Cannot hang up %s with message: Twilio not configured", call_sid or "-")
            return False
        try:
            status, _ = await self._post(
                f"Calls/{call_sid}.json", {"Twiml": build_hangup_twiml(message)}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("Twilio hangup request failed for %s: %s", call_sid, e)
            return False
        if status >= 400:
            return False
        log.info("Call %s redirected to apology and hangup", call_sid)
        return True

    async def create_call(self, to: str, from_: str, webhook_url: str) -> str:
        """Dial ``to`` and fetch TwiML from ``webhook_url`` on answer. Returns the call SID."""
        if not self.configured:
            raise TelephonyError("Twilio credentials are not configured")
        try:
            status, body = await self._post(
                "Calls.json", {"To": to, "From": from_, "Url": webhook_url}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TelephonyError(f"Twilio call request failed: {e}") from e
        if status >= 400 or "sid" not in body:
            raise TelephonyError(f"Twilio rejected the call ({status})", status_code=status)

        log.info("Outbound call %s to %s", body["sid"], redact_pii(to))
        return body["sid"]
