"""Pytest fixtures for the M-Pesa client and callback receiver tests."""

import copy
import json
from unittest.mock import MagicMock, patch

import pytest
from Crypto.PublicKey import RSA

from mpesa import MpesaClient


@pytest.fixture(scope="session")
def rsa_key():
    """Key pair standing in for Safaricom's certificate."""
    return RSA.generate(2048)


@pytest.fixture
def certificate_path(tmp_path, rsa_key):
    path = tmp_path / "SandboxCertificate.cer"
    path.write_bytes(rsa_key.publickey().export_key())
    return str(path)


@pytest.fixture
def config_dict(certificate_path):
    return {
        "environment": "sandbox",
        "business_short_code": "174379",
        "short_code_type": "paybill",
        "requester": "254708374149",
        "credentials": {
            "pass_key": "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919",
            "initiator_name": "testapi",
            "initiator_password": "Safaricom999!*!",
        },
        "app_info": {
            "consumer_key": "consumer-key",
            "consumer_secret": "consumer-secret",
        },
        "certificate_path": certificate_path,
    }


@pytest.fixture
def till_config_dict(config_dict):
    config = copy.deepcopy(config_dict)
    config["short_code_type"] = "till"
    return config


@pytest.fixture
def make_response():
    """Build a fake ``requests.Response``; pass ``text`` alone for non-JSON bodies."""

    def _make(status_code=200, body=None, text=None):
        response = MagicMock()
        response.status_code = status_code
        if text is None:
            text = json.dumps(body) if body is not None else ""
        response.text = text
        if body is None and text:
            response.json.side_effect = ValueError("Expecting value")
        else:
            response.json.return_value = body
        return response

    return _make


@pytest.fixture
def token_response(make_response):
    return make_response(200, {"access_token": "abc", "expires_in": "3599"})


@pytest.fixture
def client(config_dict, token_response):
    with patch("mpesa.requests.get", return_value=token_response):
        return MpesaClient(config_dict)


@pytest.fixture
def till_client(till_config_dict, token_response):
    with patch("mpesa.requests.get", return_value=token_response):
        return MpesaClient(till_config_dict)


@pytest.fixture
def echo_post(make_response):
    """Patch ``requests.post`` to answer 200 with the JSON body it received."""

    def _echo(url, json=None, headers=None):
        return make_response(200, json)

    with patch("mpesa.requests.post", side_effect=_echo) as mocked:
        yield mocked
