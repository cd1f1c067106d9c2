"""
Unit Tests for SMS and email connectors
"""
import smtplib

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from smartcomm.infrastructure.connectors.email import SMTPEmailProvider
from smartcomm.infrastructure.connectors.sms import (
    ElksSMSProvider,
    VonageSMSProvider,
    get_sms_provider,
)


@pytest.fixture
def vonage_env(monkeypatch):
    monkeypatch.setenv("VONAGE_API_KEY", "key")
    monkeypatch.setenv("VONAGE_API_SECRET", "secret")
    monkeypatch.setenv("VONAGE_FROM_NUMBER", "Handymate")


@pytest.fixture
def elks_env(monkeypatch):
    monkeypatch.setenv("ELKS_API_USER", "u123")
    monkeypatch.setenv("ELKS_API_PASSWORD", "pw")


@pytest.fixture
def smtp_env(monkeypatch):
    monkeypatch.setenv("SMTP_HOST", "smtp.example.se")
    monkeypatch.setenv("SMTP_USER", "noreply@example.se")
    monkeypatch.setenv("SMTP_PASSWORD", "pw")
    monkeypatch.setenv("SMTP_FROM_EMAIL", "noreply@example.se")


class TestNumberNormalization:
    """Tests for the shared number and sender helpers."""

    def test_swedish_numbers(self):
        provider = ElksSMSProvider()
        assert provider._normalize_number("070-123 45 67") == "+46701234567"
        assert provider._normalize_number("0046701234567") == "+46701234567"
        assert provider._normalize_number("+46701234567") == "+46701234567"

    def test_sender_id_truncated(self):
        assert ElksSMSProvider().sender_id("Anderssons Bygg AB") == "Anderssons"
        assert ElksSMSProvider(max_sender_length=5).sender_id("Anderssons") == "Ander"


class TestGetSmsProvider:
    """Tests for gateway selection."""

    def test_known_providers(self):
        assert isinstance(get_sms_provider("vonage"), VonageSMSProvider)
        assert isinstance(get_sms_provider("elks"), ElksSMSProvider)

    def test_factory_builds_a_fresh_gateway(self):
        assert get_sms_provider("vonage") is not get_sms_provider("vonage")

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown SMS provider"):
            get_sms_provider("carrier-pigeon")


class TestVonageSMSProvider:
    """Tests for VonageSMSProvider."""

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.delenv("VONAGE_API_KEY", raising=False)
        monkeypatch.delenv("VONAGE_API_SECRET", raising=False)

        result = await VonageSMSProvider().send_sms("0701234567", "Hej")

        assert result.success is False
        assert "not configured" in result.error

    @pytest.mark.asyncio
    async def test_successful_send(self, vonage_env):
        provider = VonageSMSProvider()
        message = MagicMock(status="0", message_id="msg-1", message_price="0.05")
        sms_client = MagicMock()
        sms_client.send.return_value = MagicMock(messages=[message])

        with patch("smartcomm.infrastructure.connectors.sms.vonage_sms.Vonage") as mock_vonage:
            mock_vonage.return_value.sms = sms_client
            result = await provider.send_sms("0701234567", "Hej Anna", from_number="Anderssons Bygg")

        assert result.success is True
        assert result.message_id == "msg-1"
        assert result.to_number == "+46701234567"
        sent = sms_client.send.call_args[0][0]
        assert sent.to == "46701234567"
        assert sent.text == "Hej Anna"

    @pytest.mark.asyncio
    async def test_rejected_send(self, vonage_env):
        provider = VonageSMSProvider()
        message = MagicMock(status="2", error_text="Missing params")
        with patch("smartcomm.infrastructure.connectors.sms.vonage_sms.Vonage") as mock_vonage:
            mock_vonage.return_value.sms.send.return_value = MagicMock(messages=[message])
            result = await provider.send_sms("0701234567", "Hej")

        assert result.success is False
        assert result.error == "Missing params"


class TestElksSMSProvider:
    """Tests for ElksSMSProvider."""

    def _client(self, response=None, side_effect=None):
        client = MagicMock()
        client.post = AsyncMock(return_value=response, side_effect=side_effect)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        return client

    @pytest.mark.asyncio
    async def test_successful_send(self, elks_env):
        request = httpx.Request("POST", "https://api.46elks.com/a1/sms")
        client = self._client(httpx.Response(200, json={"id": "s1", "cost": 3500}, request=request))

        with patch("smartcomm.infrastructure.connectors.sms.elks_sms.httpx.AsyncClient", return_value=client):
            result = await ElksSMSProvider().send_sms("0701234567", "Hej", from_number="Anderssons Bygg")

        assert result.success is True
        assert result.message_id == "s1"
        _, kwargs = client.post.call_args
        assert kwargs["auth"] == ("u123", "pw")
        assert kwargs["data"] == {"from": "Anderssons", "to": "+46701234567", "message": "Hej"}

    @pytest.mark.asyncio
    async def test_error_response(self, elks_env):
        request = httpx.Request("POST", "https://api.46elks.com/a1/sms")
        client = self._client(httpx.Response(403, text="Not enough credits", request=request))

        with patch("smartcomm.infrastructure.connectors.sms.elks_sms.httpx.AsyncClient", return_value=client):
            result = await ElksSMSProvider().send_sms("0701234567", "Hej")

        assert result.success is False
        assert result.error == "Not enough credits"

    @pytest.mark.asyncio
    async def test_network_error(self, elks_env):
        client = self._client(side_effect=httpx.ConnectError("connection refused"))

        with patch("smartcomm.infrastructure.connectors.sms.elks_sms.httpx.AsyncClient", return_value=client):
            result = await ElksSMSProvider().send_sms("0701234567", "Hej")

        assert result.success is False
        assert "connection refused" in result.error


class TestSMTPEmailProvider:
    """Tests for SMTPEmailProvider."""

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.delenv("SMTP_HOST", raising=False)

        result = await SMTPEmailProvider().send_email("anna@example.se", "Hej", "Text")

        assert result.success is False
        assert "SMTP not configured" in result.error

    @pytest.mark.asyncio
    async def test_successful_send(self, smtp_env):
        with patch("smartcomm.infrastructure.connectors.email.smtp.smtplib.SMTP") as mock_smtp:
            server = mock_smtp.return_value.__enter__.return_value
            result = await SMTPEmailProvider().send_email("anna@example.se", "Hej", "Text", from_name="Bygg AB")

        assert result.success is True
        assert result.message_id
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("noreply@example.se", "pw")
        args = server.sendmail.call_args[0]
        assert args[1] == ["anna@example.se"]

    @pytest.mark.asyncio
    async def test_smtp_error_returned(self, smtp_env):
        with patch("smartcomm.infrastructure.connectors.email.smtp.smtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.__enter__.return_value.login.side_effect = smtplib.SMTPAuthenticationError(
                535, b"bad credentials"
            )
            result = await SMTPEmailProvider().send_email("anna@example.se", "Hej", "Text")

        assert result.success is False
        assert result.error
