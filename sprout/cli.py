"""Console entry point for sprout.

Exit codes: 0 ready, 2 bad input, 3 provider rejection, 4 timeout,
5 lifecycle regression, 6 instance not found, 7 provider unreachable,
8 cancelled, 9 bootstrap failure, 10 agent failure, 11 provider refused a
query, 1 anything else.
"""

from __future__ import annotations

import argparse
import getpass
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger
from rich.console import Console
from rich.table import Table

from sprout.agent import AgentManager
from sprout.bootstrap import run_bootstrap
from sprout.config import Settings, load_settings
from sprout.core.exceptions import ConfigurationError, ReadinessError, SproutError
from sprout.logging import LogConfig, setup_logging, teardown_logging
from sprout.poller import Cancellation, ReadinessPoller
from sprout.providers.aws import EC2Provider
from sprout.types import InstanceRequest, ReadyInstance, VolumeAttachment

log = logger.bind(component="cli")

console = Console()


# =============================================================================
# Parser
# =============================================================================


def _add_wait_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("waiting")
    group.add_argument("--poll-interval", type=float, metavar="SECONDS", help="Seconds between status checks")
    group.add_argument("--timeout", type=float, metavar="SECONDS", help="Give up after this many seconds")
    group.add_argument("--no-timeout", action="store_true", help="Wait without a deadline (needs --max-attempts or patience)")
    group.add_argument("--max-attempts", type=int, metavar="N", help="Give up after N status checks")


def _add_aws_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("aws")
    group.add_argument("--region", help="AWS region (overrides [aws].region)")
    group.add_argument("--profile", help="AWS credentials profile")


def _add_volume_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("volume")
    group.add_argument("--volume-id", metavar="VOLUME_ID", help="EBS volume to attach once healthy")
    group.add_argument("--device", help="Device name for the volume (default: /dev/sdf)")


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="sprout",
        description="Launch, wait for and configure short-lived EC2 instances.",
    )
    parser.add_argument("--config", type=Path, metavar="PATH", help="Config file (default: ./sprout.toml)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vv for trace)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors")
    parser.add_argument("--log-file", metavar="PATH", help="Also write a debug log to PATH")

    subparsers = parser.add_subparsers(dest="command", required=True)

    launch = subparsers.add_parser("launch", help="Request an instance, wait for it, configure it")
    launch.add_argument("--instance-id", metavar="ID", help="Use an existing instance instead of a fleet request")
    launch.add_argument("--on-demand", action="store_true", help="Request on-demand instead of spot capacity")
    launch.add_argument("--no-bootstrap", action="store_true", help="Stop once the instance is ready")
    _add_wait_options(launch)
    _add_aws_options(launch)
    _add_volume_options(launch)
    launch.set_defaults(func=cmd_launch)

    wait = subparsers.add_parser("wait", help="Wait for an existing instance to become ready")
    wait.add_argument("instance_id", metavar="INSTANCE_ID")
    _add_wait_options(wait)
    _add_aws_options(wait)
    _add_volume_options(wait)
    wait.set_defaults(func=cmd_wait)

    bootstrap = subparsers.add_parser("bootstrap", help="Run first-boot configuration on a host")
    bootstrap.add_argument("--host", required=True, help="Public address of the instance")
    bootstrap.add_argument("--instance-id", default="manual", metavar="ID", help="Instance id, for logs only")
    bootstrap.add_argument("--volume-id", metavar="VOLUME_ID", help="Volume already attached to the host, to mount")
    bootstrap.add_argument("--device", help="Device name the volume was attached as")
    bootstrap.set_defaults(func=cmd_bootstrap)

    agent = subparsers.add_parser("agent", help="Manage the local ssh-agent")
    agent_sub = agent.add_subparsers(dest="agent_command", required=True)
    agent_sub.add_parser("start", help="Start (or reuse) the agent and print its environment")
    add = agent_sub.add_parser("add", help="Add keys to the agent")
    add.add_argument("keys", nargs="*", type=Path, help="Private keys (default: ssh-add defaults)")
    add.add_argument("-t", "--lifetime", type=int, metavar="SECONDS", help="Forget keys after SECONDS")
    agent_sub.add_parser("list", help="List identities held by the agent")
    agent_sub.add_parser("stop", help="Kill the agent")
    agent.set_defaults(func=cmd_agent)

    return parser


# =============================================================================
# Settings
# =============================================================================


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Layer command-line flags over file settings."""
    aws_changes = {k: v for k in ("region", "profile") if (v := getattr(args, k, None)) is not None}
    if aws_changes:
        settings = replace(settings, aws=replace(settings.aws, **aws_changes))

    wait_changes: dict[str, object] = {
        k: v for k in ("poll_interval", "timeout", "max_attempts") if (v := getattr(args, k, None)) is not None
    }
    if getattr(args, "no_timeout", False):
        wait_changes["timeout"] = None
    if wait_changes:
        settings = replace(settings, wait=replace(settings.wait, **wait_changes))

    volume_changes = {}
    if getattr(args, "volume_id", None):
        volume_changes["id"] = args.volume_id
    if getattr(args, "device", None):
        volume_changes["device"] = args.device
    if volume_changes:
        settings = replace(settings, volume=replace(settings.volume, **volume_changes))

    if getattr(args, "on_demand", False) and settings.launch is not None:
        settings = replace(settings, launch=replace(settings.launch, spot=False))

    return settings


@contextmanager
def _cancel_on_sigint(cancellation: Cancellation) -> Iterator[None]:
    """Turn Ctrl-C into a cancellation of the pending poll."""
    previous = signal.signal(signal.SIGINT, lambda *_: cancellation.cancel())
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# =============================================================================
# Commands
# =============================================================================


def render_ready(ready: ReadyInstance) -> None:
    table = Table(title="Instance ready", show_header=False)
    table.add_column(style="cyan")
    table.add_column()
    table.add_row("instance", ready.instance_id)
    table.add_row("type", ready.instance_type)
    table.add_row("address", ready.address or "-")
    table.add_row("private", ready.private_address or "-")
    table.add_row("volume", f"{ready.volume.volume_id} ({ready.volume.device})" if ready.volume else "-")
    console.print(table)


def _poll(settings: Settings, provider: EC2Provider, instance_id: str, *, launched: bool = False) -> ReadyInstance:
    cancellation = Cancellation()
    poller = ReadinessPoller(
        provider,
        settings.wait,
        volume=settings.volume.attachment(),
        cancellation=cancellation,
    )
    with _cancel_on_sigint(cancellation):
        return poller.wait(instance_id, launched=launched)


def cmd_launch(args: argparse.Namespace, settings: Settings) -> int:
    if args.instance_id:
        request = InstanceRequest.existing(args.instance_id)
    elif settings.launch is not None:
        request = InstanceRequest.launch(settings.launch)
    else:
        raise ConfigurationError("Nothing to launch: add a [launch] section or pass --instance-id")

    provider = EC2Provider(settings.aws, owner=getpass.getuser())
    instance_id = provider.request_fleet(request.template) if request.needs_fleet else request.instance_id

    ready = _poll(settings, provider, instance_id or "", launched=request.needs_fleet)
    render_ready(ready)

    if not args.no_bootstrap:
        run_bootstrap(ready, settings)
    return 0


def cmd_wait(args: argparse.Namespace, settings: Settings) -> int:
    provider = EC2Provider(settings.aws)
    render_ready(_poll(settings, provider, args.instance_id))
    return 0


def cmd_bootstrap(args: argparse.Namespace, settings: Settings) -> int:
    volume = VolumeAttachment(args.volume_id, settings.volume.device) if args.volume_id else None
    ready = ReadyInstance(
        instance_id=args.instance_id,
        address=args.host,
        instance_type="unknown",
        volume=volume,
    )
    run_bootstrap(ready, settings)
    return 0


def cmd_agent(args: argparse.Namespace, settings: Settings) -> int:
    manager = AgentManager()
    match args.agent_command:
        case "start":
            env = manager.start()
            print(env.to_shell(), end="")
        case "add":
            manager.add(args.keys, lifetime=args.lifetime)
        case "list":
            identities = manager.identities()
            if not identities:
                console.print("The agent has no identities.")
            for line in identities:
                print(line)
        case "stop":
            if not manager.stop():
                console.print("No agent running.")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)
    handler_ids = setup_logging(LogConfig.from_flags(args.verbose, args.quiet, args.log_file))

    try:
        settings = apply_overrides(load_settings(args.config), args)
        return args.func(args, settings)
    except ReadinessError as e:
        log.error("{error} (axis={axis})", error=e, axis=e.axis)
        if e.snapshot is not None:
            log.error("Last status: {status}", status=e.snapshot.describe())
        return e.exit_code
    except SproutError as e:
        log.error("{error}", error=e)
        return e.exit_code
    except (ClientError, BotoCoreError) as e:
        log.error("AWS error: {error}", error=e)
        return 1
    finally:
        teardown_logging(handler_ids)


if __name__ == "__main__":
    sys.exit(main())
