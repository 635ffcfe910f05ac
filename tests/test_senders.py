# tests/test_senders.py
"""Tests for the provider senders (Twilio, Upsend, VAPI) with the network mocked"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from twilio.base.exceptions import TwilioException, TwilioRestException

from rsvp_dispatch.config import settings
from rsvp_dispatch.core.errors import ProviderSendError
from rsvp_dispatch.transport import twilio_sender, upsend_sender, vapi_sender


def twilio_client(create=None):
    client = MagicMock()
    if create is None:
        create = MagicMock(return_value=MagicMock(
            sid="SM1234567890abcdef", status="queued", to="+972501111111",
            error_code=None, error_message=None,
        ))
    client.messages.create = create
    return client


def http_session(status=200, payload=None, json_error=None, post_error=None):
    """Session whose ``post`` yields a response usable as ``async with``"""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(side_effect=json_error) if json_error else AsyncMock(return_value=payload)

    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    if post_error is not None:
        session.post = MagicMock(side_effect=post_error)
    else:
        session.post = MagicMock(return_value=ctx)
    return session


@pytest.fixture
def twilio_settings(monkeypatch):
    monkeypatch.setattr(settings, "twilio_account_sid", "AC123")
    monkeypatch.setattr(settings, "twilio_auth_token", "token")
    monkeypatch.setattr(settings, "twilio_whatsapp_number", "+14155238886")
    monkeypatch.setattr(settings, "twilio_sms_number", "+14155550000")
    monkeypatch.setattr(settings, "twilio_messaging_service_sid", None)
    monkeypatch.setattr(settings, "sms_alpha_sender_id", None)


@pytest.fixture
def upsend_settings(monkeypatch):
    monkeypatch.setattr(settings, "upsend_username", "user")
    monkeypatch.setattr(settings, "upsend_api_token", "secret")
    monkeypatch.setattr(settings, "upsend_base_url", "https://upsend.test/api/v2/")
    monkeypatch.setattr(settings, "sms_alpha_sender_id", "RSVPDispatchers")
    monkeypatch.setattr(settings, "twilio_sms_number", None)


@pytest.fixture
def vapi_settings(monkeypatch):
    monkeypatch.setattr(settings, "vapi_api_key", "vapi-key")
    monkeypatch.setattr(settings, "vapi_assistant_id", "asst-1")
    monkeypatch.setattr(settings, "vapi_base_url", "https://vapi.test")


# ============================================================================
# Twilio
# ============================================================================

class TestTwilioWhatsApp:
    @pytest.mark.asyncio
    async def test_free_form_body(self, twilio_settings):
        client = twilio_client()
        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            result = await twilio_sender.send_whatsapp("+972501111111", body="Hello")

        assert result["sid"] == "SM1234567890abcdef"
        assert result["status"] == "queued"
        client.messages.create.assert_called_once_with(
            to="whatsapp:+972501111111", from_="whatsapp:+14155238886", body="Hello",
        )

    @pytest.mark.asyncio
    async def test_content_template(self, twilio_settings):
        client = twilio_client()
        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            await twilio_sender.send_whatsapp(
                "+972501111111", content_sid="HX42", content_variables={"1": "Avi", "2": "Dana & Yoni"},
            )

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["content_sid"] == "HX42"
        assert json.loads(kwargs["content_variables"]) == {"1": "Avi", "2": "Dana & Yoni"}
        assert "body" not in kwargs

    @pytest.mark.asyncio
    async def test_needs_sender_number(self, twilio_settings, monkeypatch):
        monkeypatch.setattr(settings, "twilio_whatsapp_number", None)

        with pytest.raises(ProviderSendError) as exc_info:
            await twilio_sender.send_whatsapp("+972501111111", body="Hello")

        assert exc_info.value.error_code == "CONFIGURATION"

    @pytest.mark.asyncio
    async def test_empty_message(self, twilio_settings):
        with patch.object(twilio_sender, "get_twilio_client", return_value=twilio_client()):
            with pytest.raises(ProviderSendError) as exc_info:
                await twilio_sender.send_whatsapp("+972501111111")

        assert exc_info.value.error_code == "EMPTY_MESSAGE"

    @pytest.mark.asyncio
    async def test_invalid_number_not_retryable(self, twilio_settings):
        error = TwilioRestException(400, "/Messages", msg="Invalid 'To' Phone Number", code=21211)
        client = twilio_client(create=MagicMock(side_effect=error))

        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            with pytest.raises(ProviderSendError) as exc_info:
                await twilio_sender.send_whatsapp("+972501111111", body="Hello")

        exc = exc_info.value
        assert exc.retryable is False
        assert exc.status == 400
        assert exc.error_code == "21211"
        assert exc.response["code"] == 21211
        assert str(exc) == "Invalid 'To' Phone Number"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code", [(429, 20429), (400, 63038), (503, None)])
    async def test_transient_errors_retryable(self, twilio_settings, status, code):
        error = TwilioRestException(status, "/Messages", msg="busy", code=code)
        client = twilio_client(create=MagicMock(side_effect=error))

        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            with pytest.raises(ProviderSendError) as exc_info:
                await twilio_sender.send_whatsapp("+972501111111", body="Hello")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_connection_error_retryable(self, twilio_settings):
        client = twilio_client(create=MagicMock(side_effect=TwilioException("connection reset")))

        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            with pytest.raises(ProviderSendError) as exc_info:
                await twilio_sender.send_whatsapp("+972501111111", body="Hello")

        assert exc_info.value.retryable is True
        assert exc_info.value.status == 0


class TestTwilioSms:
    @pytest.mark.asyncio
    async def test_messaging_service_preferred(self, twilio_settings, monkeypatch):
        monkeypatch.setattr(settings, "twilio_messaging_service_sid", "MG1")
        monkeypatch.setattr(settings, "sms_alpha_sender_id", "RSVP")
        client = twilio_client()

        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            await twilio_sender.send_sms("+972501111111", "Hi")

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["messaging_service_sid"] == "MG1"
        assert "from_" not in kwargs

    @pytest.mark.asyncio
    async def test_alpha_sender_truncated(self, twilio_settings, monkeypatch):
        monkeypatch.setattr(settings, "sms_alpha_sender_id", "RSVPDispatchers")
        client = twilio_client()

        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            await twilio_sender.send_sms("+972501111111", "Hi")

        assert client.messages.create.call_args.kwargs["from_"] == "RSVPDispatc"

    @pytest.mark.asyncio
    async def test_phone_number_sender(self, twilio_settings):
        client = twilio_client()

        with patch.object(twilio_sender, "get_twilio_client", return_value=client):
            await twilio_sender.send_sms("+972501111111", "Hi")

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["from_"] == "+14155550000"
        assert kwargs["to"] == "+972501111111"

    @pytest.mark.asyncio
    async def test_no_sender(self, twilio_settings, monkeypatch):
        monkeypatch.setattr(settings, "twilio_sms_number", None)

        with pytest.raises(ProviderSendError) as exc_info:
            await twilio_sender.send_sms("+972501111111", "Hi")

        assert exc_info.value.error_code == "CONFIGURATION"


class TestTwilioClient:
    def test_missing_credentials(self, monkeypatch):
        monkeypatch.setattr(twilio_sender, "_twilio_client", None)
        monkeypatch.setattr(settings, "twilio_account_sid", None)

        with pytest.raises(ProviderSendError) as exc_info:
            twilio_sender.get_twilio_client()

        assert exc_info.value.error_code == "CONFIGURATION"


# ============================================================================
# Upsend
# ============================================================================

class TestUpsendHelpers:
    @pytest.mark.parametrize("phone,expected", [
        ("+972501234567", "0501234567"),
        ("972-50-123-4567", "0501234567"),
        ("0501234567", "0501234567"),
        ("501234567", "0501234567"),
    ])
    def test_local_israeli_number(self, phone, expected):
        assert upsend_sender.local_israeli_number(phone) == expected

    def test_sender_id_alpha(self, upsend_settings):
        assert upsend_sender.sender_id() == "RSVPDispatc"

    def test_sender_id_from_number(self, upsend_settings, monkeypatch):
        monkeypatch.setattr(settings, "sms_alpha_sender_id", None)
        monkeypatch.setattr(settings, "twilio_sms_number", "+972-3-555-0000")

        assert upsend_sender.sender_id() == "97235550000"


class TestUpsendSend:
    @pytest.mark.asyncio
    async def test_success(self, upsend_settings):
        session = http_session(200, {"StatusId": 1, "RequestId": "req-1"})

        with patch.object(upsend_sender, "get_sender_session", return_value=session):
            result = await upsend_sender.send_sms("+972501234567", "Hello")

        assert result["RequestId"] == "req-1"
        args, kwargs = session.post.call_args
        assert args[0] == "https://upsend.test/api/v2/SMS/SendSms"
        data = kwargs["json"]["Data"]
        assert data["Recipients"] == [{"Phone": "0501234567"}]
        assert data["Settings"]["Sender"] == "RSVPDispatc"
        assert data["Message"] == "Hello"
        assert isinstance(kwargs["auth"], aiohttp.BasicAuth)

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, upsend_settings):
        session = http_session(200, {"StatusId": -14, "StatusDescription": "quota"})

        with patch.object(upsend_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await upsend_sender.send_sms("+972501234567", "Hello")

        exc = exc_info.value
        assert exc.error_code == "-14"
        assert exc.retryable is False
        assert str(exc).startswith("SMS gateway quota exceeded: ")
        assert exc.response["StatusId"] == -14

    @pytest.mark.asyncio
    async def test_generic_failure_retryable(self, upsend_settings):
        session = http_session(200, {"StatusId": -1})

        with patch.object(upsend_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await upsend_sender.send_sms("+972501234567", "Hello")

        assert exc_info.value.retryable is True
        assert str(exc_info.value) == "Failed to send message"

    @pytest.mark.asyncio
    async def test_unknown_code_uses_description(self, upsend_settings):
        session = http_session(200, {"StatusId": -99, "DetailedDescription": "Something odd"})

        with patch.object(upsend_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await upsend_sender.send_sms("+972501234567", "Hello")

        assert str(exc_info.value) == "Something odd"

    @pytest.mark.asyncio
    async def test_server_error_retryable(self, upsend_settings):
        session = http_session(502, json_error=ValueError("not json"))

        with patch.object(upsend_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await upsend_sender.send_sms("+972501234567", "Hello")

        assert exc_info.value.status == 502
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_network_error(self, upsend_settings):
        session = http_session(post_error=aiohttp.ClientConnectionError("refused"))

        with patch.object(upsend_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await upsend_sender.send_sms("+972501234567", "Hello")

        assert exc_info.value.status == 0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_missing_credentials(self, upsend_settings, monkeypatch):
        monkeypatch.setattr(settings, "upsend_api_token", None)

        with pytest.raises(ProviderSendError) as exc_info:
            await upsend_sender.send_sms("+972501234567", "Hello")

        assert exc_info.value.error_code == "CONFIGURATION"


# ============================================================================
# VAPI
# ============================================================================

class TestVapiCall:
    @pytest.mark.asyncio
    async def test_call_created(self, vapi_settings):
        session = http_session(201, {"id": "call-1", "status": "queued"})

        with patch.object(vapi_sender, "get_sender_session", return_value=session):
            call = await vapi_sender.create_call(
                "+972501111111", phone_number_id="pn-1", customer_name="Avi",
                variables={"guest_name": "Avi"}, metadata={"guestId": "g1"},
            )

        assert call["id"] == "call-1"
        args, kwargs = session.post.call_args
        assert args[0] == "https://vapi.test/call"
        assert kwargs["headers"]["Authorization"] == "Bearer vapi-key"
        payload = kwargs["json"]
        assert payload["phoneNumberId"] == "pn-1"
        assert payload["assistantId"] == "asst-1"
        assert payload["customer"] == {"number": "+972501111111", "name": "Avi"}
        assert payload["assistantOverrides"]["variableValues"] == {"guest_name": "Avi"}

    @pytest.mark.asyncio
    async def test_validation_messages_joined(self, vapi_settings):
        session = http_session(400, {"message": ["customer.number must be E.164", "name too long"]})

        with patch.object(vapi_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await vapi_sender.create_call("+972", phone_number_id="pn-1", customer_name="Avi")

        exc = exc_info.value
        assert str(exc) == "customer.number must be E.164; name too long"
        assert exc.error_code == "400"
        assert exc.retryable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_status_retryable(self, vapi_settings, status):
        session = http_session(status, {"message": "try later"})

        with patch.object(vapi_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await vapi_sender.create_call("+972501111111", phone_number_id="pn-1", customer_name="Avi")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout(self, vapi_settings):
        session = http_session(post_error=TimeoutError())

        with patch.object(vapi_sender, "get_sender_session", return_value=session):
            with pytest.raises(ProviderSendError) as exc_info:
                await vapi_sender.create_call("+972501111111", phone_number_id="pn-1", customer_name="Avi")

        assert exc_info.value.retryable is True
        assert str(exc_info.value) == "Network error: TimeoutError"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, vapi_settings, monkeypatch):
        monkeypatch.setattr(settings, "vapi_assistant_id", None)

        with pytest.raises(ProviderSendError) as exc_info:
            await vapi_sender.create_call("+972501111111", phone_number_id="pn-1", customer_name="Avi")

        assert exc_info.value.error_code == "CONFIGURATION"
