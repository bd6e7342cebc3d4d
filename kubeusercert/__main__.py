#!/usr/bin/env python3
import os
import sys
import argparse
from inspect import cleandoc

from loguru import logger

from kubeusercert.app import ClientCertificate
from kubeusercert.errors import ClientCertError
from kubeusercert.kubeconfig import default_kubeconfig

DESCRIPTION = """
Create a kubeconfig for a new user using an approved client certificate.

Your currently active KUBECONFIG needs to be able to create and approve CertificateSigningRequests
"""


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("must not be negative")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than zero")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kube-user-cert",
        description=cleandoc(DESCRIPTION),
    )
    parser.add_argument(
        "-u", "--username", required=True, help="Username to generate the certificate for (CN)"
    )
    parser.add_argument(
        "-g", "--group", default="", help="Group to assign to the certificate (O), used for rbac mappings"
    )
    parser.add_argument(
        "--kubeconfig",
        default=default_kubeconfig(),
        help="Kubeconfig used to reach the cluster, its current context provides the cluster for the new kubeconfig",
    )
    parser.add_argument("--context", help="Use this context of the kubeconfig instead of the current one")
    parser.add_argument(
        "-f",
        "--output-file",
        help="Output path for the new kubeconfig, defaults to <username>.config. Existing files will be replaced",
    )
    parser.add_argument(
        "-e",
        "--expiration-seconds",
        type=_non_negative_int,
        default=0,
        help="Validity of the client certificate in seconds, 0 uses the signer default. Requires k8s >= 1.22",
    )
    parser.add_argument("--key-size", type=int, default=2048, help="RSA key size in bits")
    parser.add_argument(
        "--poll-interval",
        type=_positive_float,
        default=1.0,
        help="Seconds between checks for the issued certificate",
    )
    parser.add_argument(
        "--timeout",
        type=_positive_float,
        default=60.0,
        help="Seconds to wait for the certificate to be issued",
    )
    parser.add_argument("--ca-certificate", help="CA bundle to load for connecting to the kubernetes cluster")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    return parser


def main(argv=None):
    """
    Wrapper for console_scripts
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.username.strip():
        parser.error("a non-empty --username is required")

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "INFO", format="{level}: {message}")

    # Let requests load your custom vendor ca-certificates
    if args.ca_certificate:
        os.environ["REQUESTS_CA_BUNDLE"] = args.ca_certificate

    try:
        ClientCertificate(args).run()
    except ClientCertError as e:
        logger.error("{} failed: {}", e.stage, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
