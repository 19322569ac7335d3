"""
tests/test_cli.py -- Command-line helpers: listen addresses and TLS options.
"""

from __future__ import annotations

import ssl
from unittest.mock import patch

import pytest

from core.config import AppSection
from main import main, parse_listen, tls_options


@pytest.mark.parametrize(
    "addr, expected",
    [
        (":5525", ("0.0.0.0", 5525)),
        ("127.0.0.1:8080", ("127.0.0.1", 8080)),
        ("[::1]:443", ("::1", 443)),
        ("localhost:1", ("localhost", 1)),
    ],
)
def test_parse_listen(addr: str, expected: tuple[str, int]) -> None:
    assert parse_listen(addr) == expected


@pytest.mark.parametrize("addr", ["5525", "host:", "host:http", ":70000", ":0"])
def test_parse_listen_rejects_bad_addresses(addr: str) -> None:
    with pytest.raises(ValueError):
        parse_listen(addr)


def test_tls_disabled_without_cert_and_key() -> None:
    assert tls_options(AppSection(tls_cert="cert.pem")) == {}


def test_tls_server_only() -> None:
    assert tls_options(AppSection(tls_cert="cert.pem", tls_key="key.pem")) == {
        "ssl_certfile": "cert.pem",
        "ssl_keyfile": "key.pem",
    }


def test_tls_client_certs_required_with_ca() -> None:
    options = tls_options(AppSection(tls_cert="c", tls_key="k", tls_ca_cert="ca.pem"))
    assert options["ssl_ca_certs"] == "ca.pem"
    assert options["ssl_cert_reqs"] == ssl.CERT_REQUIRED


def test_tls_client_certs_optional_when_insecure() -> None:
    options = tls_options(AppSection(tls_cert="c", tls_key="k", tls_ca_cert="ca.pem", allow_insecure=True))
    assert options["ssl_cert_reqs"] == ssl.CERT_OPTIONAL


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 0
    assert "server" in capsys.readouterr().out


def test_server_rejects_bad_listen_address() -> None:
    with patch("uvicorn.run") as run:
        assert main(["server", "--listen", "nonsense"]) == 1
    run.assert_not_called()


def test_server_listen_flag_wins(monkeypatch) -> None:
    monkeypatch.setenv("CRMCTL_APP__HOST", "127.0.0.1:9000")
    from core.config import get_settings

    get_settings.cache_clear()
    try:
        with patch("uvicorn.run") as run:
            assert main(["server", "-l", "127.0.0.1:7000"]) == 0
        _, kwargs = run.call_args
        assert (kwargs["host"], kwargs["port"]) == ("127.0.0.1", 7000)

        get_settings.cache_clear()
        with patch("uvicorn.run") as run:
            assert main(["server"]) == 0
        _, kwargs = run.call_args
        assert (kwargs["host"], kwargs["port"]) == ("127.0.0.1", 9000)
    finally:
        get_settings.cache_clear()


def test_server_rejects_unknown_ldap_default_role(monkeypatch) -> None:
    monkeypatch.setenv("CRMCTL_AUTH__AUTHENTICATOR", "ldap")
    monkeypatch.setenv("CRMCTL_AUTH__LDAP_SERVER", "ldap://dir.example.com")
    monkeypatch.setenv("CRMCTL_AUTH__LDAP_DEFAULT_ACCESS_LEVEL", "nosuchrole")
    from core.config import get_settings

    get_settings.cache_clear()
    try:
        with patch("uvicorn.run") as run:
            assert main(["server", "-l", "127.0.0.1:7000"]) == 1
        run.assert_not_called()
    finally:
        get_settings.cache_clear()
