"""Tests for the Cloudflare Zero Trust client."""

from datetime import timedelta
from unittest import mock

import pytest
import requests

import identity
from identity import (
    AuthError,
    DeviceToken,
    FetchError,
    IdentityClient,
    RefreshError,
    StatusError,
)
from settings import Config, ConfigError


def response(status=200, body=None, text=""):
    resp = mock.Mock()
    resp.status_code = status
    resp.text = text
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture
def cfg():
    c = Config()
    c.cloudflare_zero_trust.client_id = "cid"
    c.cloudflare_zero_trust.client_secret = "csecret"
    c.cloudflare_zero_trust.account_id = "acct"
    return c


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


@pytest.fixture
def client(cfg, session):
    return IdentityClient(cfg, session=session)


def token(hours=1):
    return DeviceToken(value="tok", expires_at=identity.now_utc() + timedelta(hours=hours))


class TestAuthenticate:
    def test_registers_device(self, client, session):
        session.post.return_value = response(body={
            "success": True,
            "result": {"device_id": "dev", "token": "tok", "expires_at": "2099-01-01T00:00:00Z"},
        })
        tok = client.authenticate()
        assert tok.value == "tok"
        assert tok.device_id == "dev"
        assert tok.expires_at.year == 2099

        url = session.post.call_args.args[0]
        kwargs = session.post.call_args.kwargs
        assert url == "https://api.cloudflare.com/client/v4/accounts/acct/devices/warp/register"
        assert kwargs["timeout"] == 30
        assert kwargs["json"]["client_id"] == "cid"
        assert kwargs["json"]["client_secret"] == "csecret"
        assert kwargs["json"]["device_type"] == "router"

    def test_cached_token_reused(self, client, session):
        session.post.return_value = response(body={
            "success": True,
            "result": {"token": "tok", "expires_at": "2099-01-01T00:00:00Z"},
        })
        first = client.authenticate()
        assert client.authenticate() is first
        assert session.post.call_count == 1

    def test_expired_token_renewed(self, client, session):
        session.post.return_value = response(body={
            "success": True,
            "result": {"token": "tok", "expires_at": "2000-01-01T00:00:00Z"},
        })
        client.authenticate()
        client.authenticate()
        assert session.post.call_count == 2

    def test_unparseable_expiry_gets_short_lifetime(self, client, session):
        session.post.return_value = response(body={
            "success": True,
            "result": {"token": "tok", "expires_at": "tomorrow-ish"},
        })
        tok = client.authenticate()
        lifetime = tok.expires_at - identity.now_utc()
        assert timedelta(minutes=59) < lifetime <= timedelta(hours=1)

    def test_service_reports_failure(self, client, session):
        session.post.return_value = response(body={"success": False, "result": {}})
        with pytest.raises(AuthError):
            client.authenticate()

    def test_transport_error(self, client, session):
        session.post.side_effect = requests.ConnectionError("down")
        with pytest.raises(AuthError):
            client.authenticate()

    def test_undecodable_body(self, client, session):
        session.post.return_value = response(body=ValueError("not json"))
        with pytest.raises(AuthError):
            client.authenticate()

    def test_instances_do_not_share_tokens(self, cfg, session):
        session.post.return_value = response(body={
            "success": True,
            "result": {"token": "tok", "expires_at": "2099-01-01T00:00:00Z"},
        })
        IdentityClient(cfg, session=session).authenticate()
        IdentityClient(cfg, session=session).authenticate()
        assert session.post.call_count == 2


def test_missing_credentials_rejected():
    with pytest.raises(ConfigError):
        IdentityClient(Config(), session=mock.Mock())


class TestFetchCredentials:
    def test_maps_payload(self, client, session):
        session.get.return_value = response(body={
            "success": True,
            "result": {
                "client_public_key": "PUB",
                "client_private_key": "PRIV",
                "peer_public_key": "PEER",
                "endpoint": "162.159.193.1",
                "endpoint_port": 2408,
                "allowed_ips": ["0.0.0.0/0"],
                "peer_preshared_key": "PSK",
                "dns_servers": ["1.1.1.1"],
            },
        })
        creds = client.fetch_credentials(token())
        assert creds.private_key == "PRIV"
        assert creds.public_key == "PUB"
        assert creds.peer_public_key == "PEER"
        assert creds.endpoint_port == 2408
        assert creds.allowed_ips == ["0.0.0.0/0"]
        assert creds.dns == ["1.1.1.1"]
        assert session.get.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"

    def test_failure_flag(self, client, session):
        session.get.return_value = response(body={"success": False})
        with pytest.raises(FetchError):
            client.fetch_credentials(token())

    def test_malformed_payload(self, client, session):
        session.get.return_value = response(body={
            "success": True,
            "result": {"endpoint_port": "not-a-port"},
        })
        with pytest.raises(FetchError):
            client.fetch_credentials(token())

    def test_transport_error(self, client, session):
        session.get.side_effect = requests.Timeout("slow")
        with pytest.raises(FetchError):
            client.fetch_credentials(token())


class TestRefreshRegistration:
    def test_ok(self, client, session):
        session.post.return_value = response(status=200)
        client.refresh_registration(token())
        assert session.post.call_args.kwargs["params"] == {"device_token": "tok"}

    def test_non_200(self, client, session):
        session.post.return_value = response(status=403, text="forbidden")
        with pytest.raises(RefreshError, match="403"):
            client.refresh_registration(token())


class TestDeviceActive:
    def test_active(self, client, session):
        session.get.return_value = response(body={"success": True, "result": {"active": True, "warp_enabled": True}})
        assert client.device_active(token()) is True

    def test_warp_disabled(self, client, session):
        session.get.return_value = response(body={"success": True, "result": {"active": True, "warp_enabled": False}})
        assert client.device_active(token()) is False

    def test_bad_status(self, client, session):
        session.get.return_value = response(status=500)
        with pytest.raises(StatusError):
            client.device_active(token())
