import json
import os
import tempfile
import unittest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import google.auth.exceptions
import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from rainbowcast.config import get_settings
from rainbowcast.errors import ConfigurationError
from rainbowcast.push import (
    FCM_SCOPE,
    ApnsSender,
    ApnsTokenSource,
    FcmSender,
    FcmTokenSource,
    build_senders,
)

from tests.common import FakeClock, utc


def recording_client(status_code=200, text="", raise_error=None):
    requests = []

    def handler(request):
        requests.append(request)
        if raise_error is not None:
            raise raise_error
        return httpx.Response(status_code, text=text)

    return httpx.Client(transport=httpx.MockTransport(handler)), requests


class StaticTokenSource:
    def __init__(self, value="secret"):
        self.value = value
        self.invalidated = 0

    def token(self):
        return self.value

    def invalidate(self):
        self.invalidated += 1


class FakeCredentials:
    """Mimics google-auth credentials: naive UTC expiry, refresh(request)."""

    def __init__(self, clock, lifetime=timedelta(hours=1), error=None):
        self.clock = clock
        self.lifetime = lifetime
        self.error = error
        self.token = None
        self.expiry = None
        self.refreshes = 0

    def refresh(self, request):
        if self.error is not None:
            raise self.error
        self.refreshes += 1
        self.token = f"access-{self.refreshes}"
        self.expiry = (self.clock() + self.lifetime).replace(tzinfo=None)


def p8_key():
    return ec.generate_private_key(ec.SECP256R1())


def p8_pem(key) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


class TestFcmSender(unittest.TestCase):

    def test_message_shape(self):
        client, requests = recording_client()
        sender = FcmSender("rainbow-project", StaticTokenSource("secret"), client=client)

        result = sender.send("tok-1", "Title", "Body", {"sighting_id": 4, "type": "like", "missing": None})

        self.assertTrue(result.success)
        self.assertEqual(result.platform, "android")
        request = requests[0]
        self.assertEqual(str(request.url), "https://fcm.googleapis.com/v1/projects/rainbow-project/messages:send")
        self.assertEqual(request.headers["authorization"], "Bearer secret")
        message = json.loads(request.content)["message"]
        self.assertEqual(message["token"], "tok-1")
        self.assertEqual(message["notification"], {"title": "Title", "body": "Body"})
        self.assertEqual(message["data"], {"sighting_id": "4", "type": "like"})

    def test_rejection_is_reported(self):
        client, _ = recording_client(404, text="UNREGISTERED")
        source = StaticTokenSource()
        result = FcmSender("p", source, client=client).send("tok", "a", "b", {})
        self.assertFalse(result.success)
        self.assertEqual(result.error, "HTTP 404: UNREGISTERED")
        self.assertEqual(source.invalidated, 0)

    def test_unauthorized_invalidates_token(self):
        client, _ = recording_client(401, text="UNAUTHENTICATED")
        source = StaticTokenSource()
        result = FcmSender("p", source, client=client).send("tok", "a", "b", {})
        self.assertFalse(result.success)
        self.assertEqual(source.invalidated, 1)

    def test_transport_error_is_reported(self):
        client, _ = recording_client(raise_error=httpx.ConnectError("refused"))
        result = FcmSender("p", StaticTokenSource(), client=client).send("tok", "a", "b", {})
        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("transport:"))

    def test_token_refresh_failure_is_reported(self):
        clock = FakeClock(utc(2024, 6, 21, 8, 0))
        credentials = FakeCredentials(clock, error=google.auth.exceptions.RefreshError("invalid_grant"))
        client, requests = recording_client()
        source = FcmTokenSource(credentials, request_factory=object, clock=clock)

        result = FcmSender("p", source, client=client).send("tok", "a", "b", {})

        self.assertFalse(result.success)
        self.assertTrue(result.error.startswith("auth:"))
        self.assertEqual(requests, [])


class TestFcmTokenSource(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(utc(2024, 6, 21, 8, 0))
        self.credentials = FakeCredentials(self.clock)
        self.source = FcmTokenSource(self.credentials, request_factory=object, clock=self.clock)

    def test_first_call_mints_a_token(self):
        self.assertEqual(self.source.token(), "access-1")
        self.assertEqual(self.credentials.refreshes, 1)

    def test_token_is_reused_until_close_to_expiry(self):
        self.source.token()
        self.clock.advance(minutes=54)
        self.assertEqual(self.source.token(), "access-1")

        # inside the five minute margin before the one hour expiry
        self.clock.advance(minutes=1)
        self.assertEqual(self.source.token(), "access-2")
        self.assertEqual(self.credentials.refreshes, 2)

    def test_invalidate_forces_refresh(self):
        self.source.token()
        self.source.invalidate()
        self.assertEqual(self.source.token(), "access-2")
        self.assertEqual(self.source.token(), "access-2")

    def test_service_account_file_uses_messaging_scope(self):
        with patch("rainbowcast.push.service_account.Credentials.from_service_account_file") as loader:
            loader.return_value = self.credentials
            source = FcmTokenSource.from_service_account_file("/secrets/fcm.json", clock=self.clock)
        loader.assert_called_once_with("/secrets/fcm.json", scopes=[FCM_SCOPE])
        self.assertIs(source.credentials, self.credentials)


class TestApnsTokenSource(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(utc(2024, 6, 21, 8, 0))
        self.key = p8_key()
        self.source = ApnsTokenSource(p8_pem(self.key), "KEY1234567", "TEAM123456", clock=self.clock)

    def test_token_is_es256_signed_provider_token(self):
        token = self.source.token()

        header = jwt.get_unverified_header(token)
        self.assertEqual(header["alg"], "ES256")
        self.assertEqual(header["kid"], "KEY1234567")
        claims = jwt.decode(token, self.key.public_key(), algorithms=["ES256"])
        self.assertEqual(claims["iss"], "TEAM123456")
        self.assertEqual(claims["iat"], int(utc(2024, 6, 21, 8, 0).timestamp()))

    def test_token_is_reused_then_resigned(self):
        first = self.source.token()
        self.clock.advance(minutes=49)
        self.assertEqual(self.source.token(), first)

        self.clock.advance(minutes=2)
        second = self.source.token()
        self.assertNotEqual(second, first)
        claims = jwt.decode(second, self.key.public_key(), algorithms=["ES256"])
        self.assertEqual(claims["iat"], int(utc(2024, 6, 21, 8, 51).timestamp()))

    def test_invalidate_forces_resign(self):
        first = self.source.token()
        self.clock.advance(seconds=5)
        self.source.invalidate()
        self.assertNotEqual(self.source.token(), first)

    def test_from_key_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "AuthKey_KEY1234567.p8")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(p8_pem(self.key))
            source = ApnsTokenSource.from_key_file(path, "KEY1234567", "TEAM123456", clock=self.clock)
        claims = jwt.decode(source.token(), self.key.public_key(), algorithms=["ES256"])
        self.assertEqual(claims["iss"], "TEAM123456")


class TestApnsSender(unittest.TestCase):

    def test_request_shape(self):
        client, requests = recording_client()
        sender = ApnsSender(StaticTokenSource("jwt"), "com.example.rainbow", use_sandbox=True, client=client)

        result = sender.send("devtoken", "Title", "Body", {"type": "rainbow_alert"})

        self.assertTrue(result.success)
        request = requests[0]
        self.assertEqual(str(request.url), "https://api.sandbox.push.apple.com/3/device/devtoken")
        self.assertEqual(request.headers["authorization"], "bearer jwt")
        self.assertEqual(request.headers["apns-topic"], "com.example.rainbow")
        self.assertEqual(request.headers["apns-push-type"], "alert")
        payload = json.loads(request.content)
        self.assertEqual(payload["aps"]["alert"], {"title": "Title", "body": "Body"})
        self.assertEqual(payload["type"], "rainbow_alert")

    def test_production_host(self):
        client, requests = recording_client(400, text='{"reason":"BadDeviceToken"}')
        result = ApnsSender(StaticTokenSource(), "topic", client=client).send("bad", "a", "b", {})
        self.assertTrue(str(requests[0].url).startswith("https://api.push.apple.com/"))
        self.assertFalse(result.success)

    def test_expired_provider_token_is_resigned_on_next_send(self):
        clock = FakeClock(utc(2024, 6, 21, 8, 0))
        source = ApnsTokenSource(p8_pem(p8_key()), "KEY1234567", "TEAM123456", clock=clock)
        client, requests = recording_client(403, text='{"reason":"ExpiredProviderToken"}')
        sender = ApnsSender(source, "topic", client=client)

        sender.send("devtoken", "a", "b", {})
        clock.advance(seconds=1)
        sender.send("devtoken", "a", "b", {})

        self.assertNotEqual(requests[0].headers["authorization"], requests[1].headers["authorization"])


class TestBuildSenders(unittest.TestCase):

    def unconfigured(self, **overrides):
        base = replace(
            get_settings(),
            fcm_project_id=None,
            fcm_credentials_path=None,
            apns_key_path=None,
            apns_key_id=None,
            apns_team_id=None,
            apns_topic=None,
        )
        return replace(base, **overrides)

    def test_unconfigured_platforms_get_no_sender(self):
        self.assertEqual(build_senders(self.unconfigured()), {})

    def test_configured_platforms(self):
        with tempfile.TemporaryDirectory() as tmp:
            key_path = os.path.join(tmp, "AuthKey.p8")
            with open(key_path, "w", encoding="utf-8") as fh:
                fh.write(p8_pem(p8_key()))
            settings = self.unconfigured(
                fcm_project_id="p",
                fcm_credentials_path="/secrets/fcm.json",
                apns_key_path=key_path,
                apns_key_id="KEY1234567",
                apns_team_id="TEAM123456",
                apns_topic="topic",
            )
            with patch("rainbowcast.push.service_account.Credentials.from_service_account_file"):
                senders = build_senders(settings)
        self.assertIsInstance(senders["android"], FcmSender)
        self.assertIsInstance(senders["ios"], ApnsSender)
        self.assertIsInstance(senders["android"].token_source, FcmTokenSource)
        self.assertIsInstance(senders["ios"].token_source, ApnsTokenSource)

    def test_missing_key_file_is_a_configuration_error(self):
        settings = self.unconfigured(
            apns_key_path="/nonexistent/AuthKey.p8",
            apns_key_id="KEY1234567",
            apns_team_id="TEAM123456",
            apns_topic="topic",
        )
        with self.assertRaises(ConfigurationError):
            build_senders(settings)
