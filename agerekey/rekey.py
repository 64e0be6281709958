"""Re-encryption of master-encrypted secrets for their hosts.

Each host's rekeyed secrets live in build/hosts/<host>/<name>.age. A run
writes them into a fresh staging directory next to it; only when every
secret of the host was written does the staging directory replace the
previous output. ``build/hosts/<host>`` is a symlink to the committed
staging directory, so the swap is a single rename.
"""

import os
import shutil
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

import typer

from .crypto import Age, RecipientSet
from .decrypt import InteractiveDecryptor
from .entities import GeneratedSecret, Host, Inventory, StoredSecret
from .errors import EncryptFailed


class StagingArea:
    """A host's next output directory, until it is committed."""

    def __init__(self, target: Path):
        self.target = target
        target.parent.mkdir(parents=True, exist_ok=True)
        self.path = Path(
            tempfile.mkdtemp(prefix=f".{target.name}-", dir=target.parent)
        )
        os.chmod(self.path, 0o755)
        self.committed = False

    def file(self, name: str) -> Path:
        return self.path / f"{name}.age"

    def commit(self) -> None:
        """Make this directory the host's output, removing the previous one."""
        link = self.target.parent / f"{self.path.name}.link"
        os.symlink(self.path.name, link)

        previous: Path | None = None
        if self.target.is_symlink():
            previous = self.target.parent / os.readlink(self.target)
        elif self.target.exists():
            # Output from before outputs were symlinked
            previous = self.target.parent / f"{self.path.name}.old"
            os.rename(self.target, previous)

        os.replace(link, self.target)
        self.committed = True
        if previous is not None and previous.exists():
            shutil.rmtree(previous)

    def discard(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)


@dataclass
class HostResult:
    """What happened while rekeying one host."""
    host: str
    written: list[str] = field(default_factory=list)
    dummies: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RekeyOrchestrator:
    """Rekeys the secrets of hosts into their build directories.

    Args:
        inventory: The repository's hosts, secrets and master keys
        build_path: Directory holding one output directory per host
        gateway: The age gateway
        decryptor: Decrypts the master-encrypted source files
        jobs: Number of secrets rekeyed in parallel
    """

    def __init__(
        self,
        inventory: Inventory,
        build_path: Path,
        gateway: Age,
        decryptor: InteractiveDecryptor,
        jobs: int = 1,
    ):
        self.inventory = inventory
        self.build_path = build_path
        self.gateway = gateway
        self.decryptor = decryptor
        self.jobs = max(1, jobs)

    def host_path(self, hostname: str) -> Path:
        return self.build_path / hostname

    def _rekey_secret(
        self,
        host: Host,
        secret: StoredSecret | GeneratedSecret,
        area: StagingArea,
    ) -> bool:
        """Rekey one secret into the staging area. Returns True for a dummy."""
        self.decryptor.run.check_cancelled()
        self.decryptor.run.echo(f"Rekeying {secret.name} for host {host.name}")
        decrypted = self.decryptor.decrypt(secret.rekey_file, secret.name, host.name)
        self.gateway.encrypt(
            decrypted.data, RecipientSet.single(host.pubkey), area.file(secret.name)
        )
        if decrypted.dummy:
            self.decryptor.run.echo(
                f"Warning: {host.name}:{secret.name} was rekeyed with a dummy value, "
                f"the host will not receive the real secret!",
                fg=typer.colors.YELLOW,
                bold=True,
                err=True,
            )
        return decrypted.dummy

    def rekey_host(self, host: Host) -> HostResult:
        """Rekey all secrets of one host."""
        return self.rekey_all([host.name])[0]

    def rekey_all(self, hostnames: list[str] | None = None) -> list[HostResult]:
        """Rekey the given hosts (all hosts by default).

        An encryption failure only fails its host: that host keeps its
        previous output. An abort discards everything not yet committed
        and raises Aborted.
        """
        if hostnames is None:
            hostnames = list(self.inventory.hosts)
        # Each host gets exactly one staging area
        hosts = [self.inventory.hosts[name] for name in dict.fromkeys(hostnames)]

        results = {host.name: HostResult(host.name) for host in hosts}
        areas: dict[str, StagingArea] = {}
        remaining: dict[str, int] = {}
        futures: dict[Future, tuple[Host, str]] = {}

        try:
            with ThreadPoolExecutor(self.jobs) as pool:
                for host in hosts:
                    area = StagingArea(self.host_path(host.name))
                    areas[host.name] = area
                    secrets = host.rekeyable()
                    remaining[host.name] = len(secrets)
                    for secret in secrets:
                        future = pool.submit(self._rekey_secret, host, secret, area)
                        futures[future] = (host, secret.name)
                    if not secrets:
                        self._finish(results[host.name], area)

                for future in as_completed(futures):
                    host, name = futures[future]
                    result = results[host.name]
                    try:
                        if future.result():
                            result.dummies.append(name)
                        else:
                            result.written.append(name)
                    except EncryptFailed as e:
                        self.decryptor.run.echo(
                            f"Failed to re-encrypt {name} for {host.name}!",
                            fg=typer.colors.RED,
                            bold=True,
                            err=True,
                        )
                        if result.error is None:
                            result.error = e
                    except Exception:
                        # Aborted, or something no other host will survive either
                        self.decryptor.run.cancel()
                        for other in futures:
                            other.cancel()
                        raise
                    remaining[host.name] -= 1
                    if remaining[host.name] == 0:
                        self._finish(result, areas[host.name])
        finally:
            for area in areas.values():
                if not area.committed:
                    area.discard()

        return [results[host.name] for host in hosts]

    def _finish(self, result: HostResult, area: StagingArea) -> None:
        if result.error is not None:
            area.discard()
            self.decryptor.run.echo(
                f"Keeping previous secrets for {result.host}",
                fg=typer.colors.RED,
                err=True,
            )
            return
        area.commit()
        if result.dummies:
            self.decryptor.run.echo(
                f"Secrets for {result.host} are INCOMPLETE: "
                f"{', '.join(result.dummies)} contain dummy values",
                fg=typer.colors.YELLOW,
                bold=True,
                err=True,
            )
