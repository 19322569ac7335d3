#!/usr/bin/env python3
"""
crmctl -- CRM controller admin backend.

Usage:
  python main.py server
  python main.py server --listen 127.0.0.1:8080
  python main.py --debug server -l :5525

Configuration is read from config/config.ini (override the path with
CRMCTL_CONFIG). Any key can be overridden with CRMCTL_<SECTION>__<KEY>,
e.g. CRMCTL_APP__SECRET_KEY or CRMCTL_REDIS__HOST.
"""

import argparse
import logging
import os
import ssl
import sys
from typing import Optional

from pydantic import ValidationError

from core.config import DEFAULT_LISTEN, AppSection, get_settings

logger = logging.getLogger("crmctl.cli")


def parse_listen(addr: str) -> tuple[str, int]:
    """Split a listen address into (host, port).

    ":5525" listens on every IPv4 interface; IPv6 hosts are bracketed,
    e.g. "[::1]:5525". Raises ValueError on anything else.
    """
    host, sep, port = addr.strip().rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {addr!r}; expected [host]:port")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ValueError(f"invalid port in listen address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or "0.0.0.0", port_num


def tls_options(app: AppSection) -> dict:
    """Translate [app] TLS keys into uvicorn.run() keyword arguments.

    No cert/key pair means plain HTTP. A CA cert turns on client
    certificate checks: required, or only requested with allow_insecure.
    """
    if not app.tls_enabled:
        return {}
    options = {"ssl_certfile": app.tls_cert, "ssl_keyfile": app.tls_key}
    if app.tls_ca_cert:
        options["ssl_ca_certs"] = app.tls_ca_cert
        options["ssl_cert_reqs"] = ssl.CERT_OPTIONAL if app.allow_insecure else ssl.CERT_REQUIRED
    return options


def serve(listen: Optional[str]) -> int:
    """Load settings, build the app and run it until interrupted. Returns the exit status."""
    # Imported here so `--help` works without the server stack installed.
    import uvicorn

    from api.main import create_app

    try:
        settings = get_settings()
    except ValidationError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    try:
        host, port = parse_listen(listen or settings.app.host or DEFAULT_LISTEN)
        app = create_app(settings)
    except ValueError as e:
        # Bad listen address, whitelist CIDR, audit exclude pattern (re.error is a
        # ValueError) or LDAP default access level.
        logger.error("Invalid configuration: %s", e)
        return 1

    scheme = "https" if settings.app.tls_enabled else "http"
    logger.info("crmctl listening on %s://%s:%d", scheme, host, port)
    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level="debug" if settings.app.debug else "info",
            **tls_options(settings.app),
        )
    except (OSError, ssl.SSLError) as e:
        logger.error("Server error: %s", e)
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="crmctl",
        description="CRM controller: accounts, access levels and audit events over HTTP.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py server
  python main.py server --listen 127.0.0.1:8080
  CRMCTL_CONFIG=/etc/crmctl/config.ini python main.py -D server
        """,
    )
    parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug logging (also relaxes the secret key requirement)",
    )
    subcommands = parser.add_subparsers(dest="command", metavar="COMMAND")
    server = subcommands.add_parser("server", help="Run the controller HTTP server")
    server.add_argument(
        "-l",
        "--listen",
        metavar="ADDR",
        default=None,
        help=f"Listen address (default: app.host from the config, then {DEFAULT_LISTEN})",
    )
    args = parser.parse_args(argv)

    if args.debug:
        # Settings read the environment, so this reaches app.debug too.
        os.environ["CRMCTL_APP__DEBUG"] = "true"
        logging.getLogger("crmctl").setLevel(logging.DEBUG)

    if args.command != "server":
        parser.print_help()
        return 0
    return serve(args.listen)


if __name__ == "__main__":
    sys.exit(main())
