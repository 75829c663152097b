"""Forge sidecar diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from forge_sidecar.binary import BinaryInstallError
from forge_sidecar.config import get_settings
from forge_sidecar.generator import ConfigGenerationError, mask_secrets
from forge_sidecar.agents import RosterLoadError
from forge_sidecar.process import SupervisorError
from forge_sidecar.server import SidecarServices, build_services
from forge_sidecar.target import PlatformResolver, UnsupportedPlatformError


def load_services() -> SidecarServices:
    try:
        return build_services(get_settings())
    except UnsupportedPlatformError as exc:
        print(f"Unsupported platform: {exc}")
        raise SystemExit(1)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_platform(args: argparse.Namespace) -> None:
    try:
        target = PlatformResolver().resolve()
    except UnsupportedPlatformError as exc:
        print(f"Unsupported platform: {exc}")
        raise SystemExit(1)
    _print({**target.as_dict(), "archive": target.archive_name})


def cmd_status(args: argparse.Namespace) -> None:
    services = load_services()
    status = services.supervisor.status()
    _print(
        {
            **status.as_dict(),
            "config_changed": services.supervisor.config_changed(),
            "activity": services.activity.status(status.running),
        }
    )


def cmd_download(args: argparse.Namespace) -> None:
    services = load_services()
    try:
        installed = asyncio.run(services.binaries.download(args.version))
    except BinaryInstallError as exc:
        print(f"Download failed: {exc}")
        raise SystemExit(1)
    _print(installed.as_dict())


def cmd_start(args: argparse.Namespace) -> None:
    services = load_services()
    try:
        result = asyncio.run(services.supervisor.start())
    except SupervisorError as exc:
        print(f"Start failed: {exc}")
        raise SystemExit(1)
    _print(result.as_dict())


def cmd_stop(args: argparse.Namespace) -> None:
    services = load_services()
    stopped = asyncio.run(services.supervisor.stop())
    _print({"stopped": stopped})


def cmd_cleanup(args: argparse.Namespace) -> None:
    services = load_services()
    asyncio.run(services.supervisor.stop())
    try:
        services.binaries.cleanup()
    except BinaryInstallError as exc:
        print(f"Cleanup failed: {exc}")
        raise SystemExit(1)
    _print({"removed": str(services.binaries.paths.install_dir)})


def cmd_check_idle(args: argparse.Namespace) -> None:
    services = load_services()
    stopped = asyncio.run(services.activity.check_and_stop_if_inactive(services.supervisor))
    _print({"stopped": stopped, "activity": services.activity.status(services.supervisor.status().running)})


def cmd_token(args: argparse.Namespace) -> None:
    services = load_services()
    token = services.signer.issue(args.subject, ttl=args.ttl)
    _print({"token": token, "expires_in": args.ttl or services.signer.ttl})


def cmd_config(args: argparse.Namespace) -> None:
    services = load_services()
    try:
        document = services.config_source().to_document()
    except (ConfigGenerationError, RosterLoadError) as exc:
        print(f"Config unavailable: {exc}")
        raise SystemExit(1)
    _print(document if args.show_secrets else mask_secrets(document))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forge sidecar diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_platform = sub.add_parser("platform", help="Show the detected release target")
    p_platform.set_defaults(func=cmd_platform)

    p_status = sub.add_parser("status", help="Show sidecar process and activity state")
    p_status.set_defaults(func=cmd_status)

    p_download = sub.add_parser("download", help="Download and install the opencode binary")
    p_download.add_argument("--version", default=None, help="Release to install (default: pinned)")
    p_download.set_defaults(func=cmd_download)

    p_start = sub.add_parser("start", help="Start the sidecar")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop the sidecar")
    p_stop.set_defaults(func=cmd_stop)

    p_cleanup = sub.add_parser("cleanup", help="Stop the sidecar and remove the install directory")
    p_cleanup.set_defaults(func=cmd_cleanup)

    p_idle = sub.add_parser("check-idle", help="Run one idle check, stopping the sidecar if inactive")
    p_idle.set_defaults(func=cmd_check_idle)

    p_token = sub.add_parser("token", help="Issue a proxy session token")
    p_token.add_argument("--subject", default="operator")
    p_token.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    p_token.set_defaults(func=cmd_token)

    p_config = sub.add_parser("config", help="Preview the generated opencode.json")
    p_config.add_argument("--show-secrets", action="store_true", help="Do not mask API keys")
    p_config.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
