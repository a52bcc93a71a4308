"""First-boot configuration of a ready instance.

A fixed, sequential list of steps run over SSH. Each step either has nothing
to do (and is skipped) or runs its commands and raises ``BootstrapError`` on
the first non-zero exit.

    1. create the operator user
    2. install packages
    3. deploy dotfiles
    4. mount the attached volume
    5. system tuning (sysctl, swap)
"""

from __future__ import annotations

import shlex
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from sprout.constants import APT_LOCK_TIMEOUT
from sprout.core.exceptions import BootstrapError
from sprout.ssh import SSHConfig, SSHConnection, wait_for_ssh

if TYPE_CHECKING:
    from sprout.config import BootstrapSettings, Settings, VolumeSettings
    from sprout.types import ReadyInstance

log = logger.bind(component="bootstrap")

type Connector = Callable[[SSHConfig], SSHConnection]

SUDOERS_FILE = "/etc/sudoers.d/90-sprout-{user}"
SYSCTL_FILE = "/etc/sysctl.d/90-sprout.conf"
SWAP_FILE = "/swapfile"


def _run_step(conn: SSHConnection, step: str, commands: list[str], sudo: bool = True) -> None:
    for command in commands:
        result = conn.run(command, sudo=sudo)
        if not result.success:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
            raise BootstrapError(step, detail)


def _home(user: str) -> str:
    return f"$(getent passwd {shlex.quote(user)} | cut -d: -f6)"


# =============================================================================
# Command builders
# =============================================================================


def user_commands(user: str, shell: str, ssh_user: str) -> list[str]:
    """Create ``user`` with passwordless sudo and the login user's keys."""
    q = shlex.quote(user)
    sudoers = SUDOERS_FILE.format(user=user)
    return [
        f"id -u {q} >/dev/null 2>&1 || useradd -m -s {shlex.quote(shell)} {q}",
        f"echo {shlex.quote(f'{user} ALL=(ALL) NOPASSWD:ALL')} > {sudoers} && chmod 440 {sudoers}",
        f"install -d -m 700 -o {q} -g {q} {_home(user)}/.ssh",
        (
            f"install -m 600 -o {q} -g {q} "
            f"{_home(ssh_user)}/.ssh/authorized_keys {_home(user)}/.ssh/authorized_keys"
        ),
    ]


def package_commands(packages: tuple[str, ...]) -> list[str]:
    apt = f"DEBIAN_FRONTEND=noninteractive apt-get -o DPkg::Lock::Timeout={APT_LOCK_TIMEOUT}"
    names = " ".join(shlex.quote(p) for p in packages)
    return [
        f"{apt} update -q",
        f"{apt} install -y -q {names}",
    ]


def mount_script(volume_id: str, volume: VolumeSettings, owner: str | None) -> str:
    """Find the attached device, format it only if blank, mount, persist.

    On Nitro instances the requested device name shows up as an NVMe disk
    whose serial is the volume id without the dash.
    """
    serial = volume_id.replace("-", "")
    mount = shlex.quote(volume.mount_path)
    fs = shlex.quote(volume.filesystem)
    lines = [
        "set -e",
        f"dev={shlex.quote(volume.device)}",
        "for i in $(seq 1 60); do",
        '  [ -b "$dev" ] && break',
        f"  nv=$(lsblk -dpno NAME,SERIAL | awk '$2 == \"{serial}\" {{print $1}}')",
        '  if [ -n "$nv" ]; then dev=$nv; break; fi',
        "  sleep 2",
        "done",
        f'[ -b "$dev" ] || {{ echo "device for {volume_id} never appeared" >&2; exit 1; }}',
        f'blkid "$dev" >/dev/null 2>&1 || mkfs -t {fs} "$dev"',
        f"mkdir -p {mount}",
        f'mountpoint -q {mount} || mount "$dev" {mount}',
        'uuid=$(blkid -s UUID -o value "$dev")',
        f'grep -q "UUID=$uuid" /etc/fstab || echo "UUID=$uuid {volume.mount_path} {volume.filesystem} defaults,nofail 0 2" >> /etc/fstab',
    ]
    if owner:
        lines.append(f"chown {shlex.quote(owner)}: {mount}")
    return "\n".join(lines)


def tuning_commands(sysctl: tuple[tuple[str, str], ...], swap_mb: int) -> list[str]:
    commands: list[str] = []
    if sysctl:
        body = "\n".join(f"{key} = {value}" for key, value in sysctl)
        commands.append(f"printf '%s\\n' {shlex.quote(body)} > {SYSCTL_FILE}")
        commands.append("sysctl --system >/dev/null")
    if swap_mb > 0:
        commands.append(
            f"[ -f {SWAP_FILE} ] || ("
            f"fallocate -l {swap_mb}M {SWAP_FILE} && chmod 600 {SWAP_FILE} && "
            f"mkswap {SWAP_FILE} && swapon {SWAP_FILE} && "
            f"echo '{SWAP_FILE} none swap sw 0 0' >> /etc/fstab)"
        )
    return commands


# =============================================================================
# Steps
# =============================================================================


def create_user(conn: SSHConnection, settings: BootstrapSettings) -> None:
    if not settings.user:
        log.info("No user configured, skipping user creation")
        return
    log.info("Creating user {user}", user=settings.user, step="user")
    _run_step(conn, "user", user_commands(settings.user, settings.shell, settings.ssh_user))


def install_packages(conn: SSHConnection, settings: BootstrapSettings) -> None:
    if not settings.packages:
        log.info("No packages configured, skipping install")
        return
    log.info("Installing {n} package(s): {names}", n=len(settings.packages), names=" ".join(settings.packages), step="packages")
    _run_step(conn, "packages", package_commands(settings.packages))


def deploy_dotfiles(conn: SSHConnection, settings: BootstrapSettings) -> None:
    if not settings.dotfiles:
        log.info("No dotfiles configured, skipping")
        return

    owner = settings.user or settings.ssh_user
    q = shlex.quote(owner)
    for entry in settings.dotfiles:
        local = Path(entry).expanduser()
        if not local.is_file():
            raise BootstrapError("dotfiles", f"{local} is not a file")
        staged = f"/tmp/sprout-{local.name}"
        log.info("Deploying {name} to {owner}", name=local.name, owner=owner, step="dotfiles")
        conn.upload_file(local, staged)
        _run_step(
            conn,
            "dotfiles",
            [f"install -m 644 -o {q} -g {q} {staged} {_home(owner)}/{shlex.quote(local.name)} && rm -f {staged}"],
        )


def mount_volume(conn: SSHConnection, ready: ReadyInstance, volume: VolumeSettings, owner: str | None) -> None:
    if ready.volume is None:
        log.info("No volume attached, skipping mount")
        return
    log.info(
        "Mounting {volume_id} at {mount}",
        volume_id=ready.volume.volume_id,
        mount=volume.mount_path,
        step="volume",
    )
    _run_step(conn, "volume", [mount_script(ready.volume.volume_id, volume, owner)])


def tune_system(conn: SSHConnection, settings: BootstrapSettings) -> None:
    commands = tuning_commands(settings.sysctl, settings.swap_mb)
    if not commands:
        log.info("No tuning configured, skipping")
        return
    log.info("Applying system tuning (sysctl={n}, swap={swap}MB)", n=len(settings.sysctl), swap=settings.swap_mb, step="tuning")
    _run_step(conn, "tuning", commands)


def run_bootstrap(ready: ReadyInstance, settings: Settings, connect: Connector | None = None) -> None:
    """Configure a ready instance. Raises ``BootstrapError`` on the first failure."""
    if not ready.address:
        raise BootstrapError("ssh", f"{ready.instance_id} has no public address")

    config = SSHConfig(
        host=ready.address,
        username=settings.bootstrap.ssh_user,
        key_path=settings.bootstrap.key_path,
    )
    bound = log.bind(host=ready.address, instance_id=ready.instance_id)
    bound.info("Bootstrapping {instance_id} over SSH", instance_id=ready.instance_id)

    with (connect or wait_for_ssh)(config) as conn:
        create_user(conn, settings.bootstrap)
        install_packages(conn, settings.bootstrap)
        deploy_dotfiles(conn, settings.bootstrap)
        mount_volume(conn, ready, settings.volume, settings.bootstrap.user)
        tune_system(conn, settings.bootstrap)

    bound.info("Bootstrap of {instance_id} complete", instance_id=ready.instance_id)
