"""Generation of secrets that do not exist yet.

A generator's script is rendered for one secret and run with bash. Its
stdout is the new secret, which is encrypted for the master recipients
before anything touches the disk. Dependency plaintexts are decrypted into
a private temporary directory that lives only while the script runs.

Shell scripts (as written in rekey.toml) see this prelude:

    name='htpasswd'             # the secret being generated
    host='web1'                 # the host declaring it
    file='/repo/secrets/x.age'  # where the ciphertext will be written
    deps=('/repo/secrets/a.age' ...)  # dependency files
    decrypt FILE                # prints the plaintext of a dependency

Example, deriving a public key next to the generated private key::

    wg genkey | tee /dev/stdout | wg pubkey > "${file%.age}.pub"
"""

import os
import shlex
import subprocess
import tempfile
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .crypto import Age
from .decrypt import InteractiveDecryptor
from .entities import GeneratedSecret, Generator, Inventory, SecretRef
from .errors import DummyDependency, GeneratorFailed
from .graph import DependencyGraph


@dataclass(frozen=True)
class Dependency:
    """A dependency as handed to a generator script."""
    name: str
    host: str
    file: Path


@dataclass
class GenerationContext:
    """Everything a generator script may use.

    Attributes:
        name: Name of the secret to generate
        host: Host declaring the secret
        secret: The full secret definition
        file: Where the ciphertext will be written; use it to derive
              names of adjacent files
        deps: The dependencies, in declaration order
        decrypt: Returns a shell command printing the plaintext of a file
    """
    name: str
    host: str
    secret: GeneratedSecret
    file: Path
    deps: list[Dependency] = field(default_factory=list)
    decrypt: Callable[[Path], str] = field(default=lambda file: _cat(file))


def _cat(file: Path) -> str:
    if str(file) == "$1":
        return 'cat "$1"'
    return f"cat {shlex.quote(str(file))}"


def prelude(ctx: GenerationContext) -> str:
    """Shell variables and the decrypt function for a shell script."""
    q = shlex.quote
    lines = [
        f"name={q(ctx.name)}",
        f"host={q(ctx.host)}",
        f"file={q(str(ctx.file))}",
        "deps=(" + " ".join(q(str(d.file)) for d in ctx.deps) + ")",
        "decrypt() {",
        '  case "$1" in',
    ]
    for dep in ctx.deps:
        lines.append(f"    {q(str(dep.file))}) {ctx.decrypt(dep.file)} ;;")
    lines.append(f'    *) {ctx.decrypt(Path("$1"))} ;;')
    lines.extend(["  esac", "}", ""])
    return "\n".join(lines)


class ShellScript:
    """A generator script given as shell source."""

    def __init__(self, source: str):
        self.source = source

    def __call__(self, ctx: GenerationContext) -> str:
        return prelude(ctx) + self.source

    def __repr__(self) -> str:
        return f"ShellScript({self.source!r})"


BUILTIN_GENERATORS: dict[str, Generator] = {
    "alnum": Generator("alnum", ShellScript("pwgen -s 48 1")),
    "base64": Generator("base64", ShellScript("openssl rand -base64 32")),
    "hex": Generator("hex", ShellScript("openssl rand -hex 24")),
    "passphrase": Generator(
        "passphrase", ShellScript("xkcdpass --numwords=6 --delimiter=' '")
    ),
}


class GeneratorRunner:
    """Runs generators and encrypts their output for the master recipients.

    Args:
        inventory: The repository's hosts, secrets and master keys
        gateway: The age gateway
        decryptor: Used to obtain dependency plaintexts
        cwd: Directory the scripts run in (the repository root)
        shell: Shell executing the scripts
    """

    def __init__(
        self,
        inventory: Inventory,
        gateway: Age,
        decryptor: InteractiveDecryptor,
        cwd: Path | None = None,
        shell: str = "bash",
    ):
        self.inventory = inventory
        self.gateway = gateway
        self.decryptor = decryptor
        self.cwd = cwd
        self.shell = shell

    @property
    def run_state(self):
        return self.decryptor.run

    def run(self, ref: SecretRef) -> bool:
        """Generate one secret.

        Returns False if the secret's file already exists; existing
        secrets are never overwritten.

        Raises:
            GeneratorFailed: If the script exits non-zero
            Aborted: If the operator aborted while decrypting a dependency
            DummyDependency: If a dependency was replaced by a dummy value
        """
        secret = self.inventory.secret(ref)
        if not isinstance(secret, GeneratedSecret):
            raise TypeError(f"{ref} has no generator")
        if secret.rekey_file.exists():
            return False

        self.run_state.check_cancelled()
        self.run_state.echo(f"Generating {ref} with generator {secret.generator.name}")
        secret.rekey_file.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="agerekey-") as tmpdir:
            plaintexts: dict[Path, Path] = {}
            deps: list[Dependency] = []
            for i, dep_ref in enumerate(secret.dependencies):
                dep_secret = self.inventory.secret(dep_ref)
                dep_file = dep_secret.rekey_file
                deps.append(Dependency(dep_ref.name, dep_ref.host, dep_file))
                if dep_file in plaintexts:
                    continue
                decrypted = self.decryptor.decrypt(dep_file, dep_ref.name, dep_ref.host)
                if decrypted.dummy:
                    raise DummyDependency(ref, dep_ref)
                plain_path = Path(tmpdir) / str(i)
                fd = os.open(plain_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(decrypted.data)
                plaintexts[dep_file] = plain_path

            fallback = self.gateway.decrypt_command(self.decryptor.identities)

            def decrypt(file: Path) -> str:
                if file in plaintexts:
                    return _cat(plaintexts[file])
                if str(file) == "$1":
                    return shlex.join(fallback) + ' "$1"'
                return shlex.join(fallback + [str(file)])

            ctx = GenerationContext(
                name=ref.name,
                host=ref.host,
                secret=secret,
                file=secret.rekey_file,
                deps=deps,
                decrypt=decrypt,
            )
            script = secret.generator.script(ctx)
            result = subprocess.run(
                [self.shell, "-euo", "pipefail", "-c", script],
                stdout=subprocess.PIPE,
                cwd=self.cwd,
                env=self.gateway.env(),
            )

        if result.returncode != 0:
            raise GeneratorFailed(ref, result.returncode)

        self.gateway.encrypt(
            result.stdout, self.inventory.master.recipients(), secret.rekey_file
        )
        self.run_state.echo(f"  Wrote {secret.rekey_file}")
        return True

    def run_all(
        self,
        order: list[SecretRef],
        graph: DependencyGraph | None = None,
        jobs: int = 1,
    ) -> list[SecretRef]:
        """Generate all secrets in ``order``.

        With more than one job, a secret starts as soon as everything it
        depends on in ``graph`` has been generated. The first failure
        cancels all pending generators and is re-raised.

        Returns the secrets that were actually generated.
        """
        generated: list[SecretRef] = []
        if jobs <= 1 or graph is None:
            for ref in order:
                if self.run(ref):
                    generated.append(ref)
            return generated

        done: set[SecretRef] = set()
        started: set[SecretRef] = set()
        futures: dict[Future, SecretRef] = {}
        with ThreadPoolExecutor(jobs) as pool:

            def launch() -> None:
                for ref in order:
                    if ref in started:
                        continue
                    if all(dep in done for dep in graph.dependencies(ref)):
                        started.add(ref)
                        futures[pool.submit(self.run, ref)] = ref

            launch()
            while futures:
                finished, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in finished:
                    ref = futures.pop(future)
                    try:
                        if future.result():
                            generated.append(ref)
                    except Exception:
                        self.run_state.cancel()
                        for other in futures:
                            other.cancel()
                        raise
                    done.add(ref)
                launch()
        return generated
