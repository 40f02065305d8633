"""certkeeper command-line entry point.

Usage::

    certkeeper                          # reads ./acme.yml
    certkeeper -c /etc/acme.yml --display-certificates
    certkeeper path example.com --key
    certkeeper details /path/to/example.com.crt
    python -m certkeeper
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from . import __version__
from .display import describe_chain
from .errors import ConfigurationError, ResourceError
from .settings import ACME_CONFIG_FILE, ManagerSettings, load_settings
from .storage import CertificateStorage
from .supervisor import LifecycleSupervisor


EXIT_OK = 0
EXIT_DOMAINS_FAILED = 1
EXIT_FATAL = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certkeeper",
        description=f"Obtains and renews certificates for the domains listed in {ACME_CONFIG_FILE}",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=ACME_CONFIG_FILE,
        metavar="PATH",
        help=f"Path to the configuration file (default: ./{ACME_CONFIG_FILE}).",
    )
    parser.add_argument(
        "--display-certificates",
        action="store_true",
        default=False,
        help="Display on STDOUT the generated certificates.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    path_parser = subparsers.add_parser("path", help="Returns path of the given domain")
    path_parser.add_argument("domain")
    path_parser.add_argument("--key", action="store_true", default=False, help="Show the key path")
    path_parser.add_argument("--crt", action="store_true", default=False, help="Show the crt path")

    details_parser = subparsers.add_parser("details", help="Show details of the given crt file")
    details_parser.add_argument("file")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    print(f"error: {message}", file=sys.stderr)


def _storage_for(settings: ManagerSettings) -> CertificateStorage:
    return CertificateStorage(settings.storage_root, settings.ca_endpoint.directory_url)


def run_path(settings: ManagerSettings, args) -> int:
    storage = _storage_for(settings)
    show_key = args.key or not args.crt
    show_crt = args.crt or not args.key
    if show_key:
        print(f"KEY: {storage.path_for(args.domain, 'key')}")
    if show_crt:
        print(f"CRT: {storage.path_for(args.domain, 'crt')}")
    return EXIT_OK


def run_details(args) -> int:
    try:
        with open(args.file, "rb") as f:
            payload = f.read()
        lines = describe_chain(payload)
    except (OSError, ValueError) as e:
        _print_error(f"cannot read certificates from {args.file}: {e}")
        return EXIT_FATAL
    for line in lines:
        print(line)
    return EXIT_OK


async def _run_supervised(supervisor: LifecycleSupervisor, display: bool):
    """Run the supervisor, cancelling it on SIGINT/SIGTERM."""
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform / thread
            pass
    return await supervisor.run(display=display)


def run_manage(settings: ManagerSettings, args) -> int:
    supervisor = LifecycleSupervisor(settings)
    try:
        report = asyncio.run(_run_supervised(supervisor, args.display_certificates))
    except ResourceError as e:
        _print_error(str(e))
        return EXIT_FATAL
    except asyncio.CancelledError:
        _print_error("interrupted")
        return EXIT_FATAL

    if report.ok:
        return EXIT_OK
    for domain, error in report.failures().items():
        _print_error(f"{domain}: {error}")
    return EXIT_DOMAINS_FAILED


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point. Returns the process exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "details":
        return run_details(args)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        _print_error(str(e))
        return EXIT_FATAL

    if args.command == "path":
        return run_path(settings, args)
    return run_manage(settings, args)


if __name__ == "__main__":
    sys.exit(main())
