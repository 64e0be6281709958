"""Configuration management for an agerekey secrets repo.

Layout::

    src/rekey.toml          master identities, extra recipients, generators
    src/hosts/<host>.toml   host pubkey and the secrets the host requires
    build/hosts/<host>/     rekeyed secrets, written by ``agerekey rekey``

Example src/rekey.toml::

    master_identities = ["/home/me/.config/agerekey/yubikey-identity.pub"]
    extra_encryption_pubkeys = ["/home/me/backup.pub", "age1..."]

    [generators.aggregate-htpasswd]
    dependencies = ["basic-auth-pw1", "basic-auth-pw2"]
    script = '''
    for dep in "${deps[@]}"; do
      decrypt "$dep" | htpasswd -niBC 10 "$host"
    done
    '''

Example src/hosts/web1.toml::

    pubkey = "ssh-ed25519 AAAAC3..."

    [secrets.db-pw]
    rekey_file = "secrets/db-pw.age"

    [secrets.htpasswd]
    rekey_file = "secrets/htpasswd.age"
    generator = "aggregate-htpasswd"
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore

import tomli_w  # type: ignore

from .entities import (
    DUMMY_PUBKEY,
    ExternalSecret,
    GeneratedSecret,
    Generator,
    Host,
    InvalidSecret,
    Inventory,
    MasterKeys,
    SecretRef,
    StoredSecret,
)
from .errors import ConfigInvalid
from .generate import BUILTIN_GENERATORS, ShellScript


@dataclass
class GeneratorConfig:
    """A generator as written in TOML."""
    script: str
    dependencies: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "GeneratorConfig":
        return cls(
            script=data.get("script", ""),
            dependencies=data.get("dependencies", []),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"script": self.script}
        if self.dependencies:
            d["dependencies"] = self.dependencies
        return d

    def to_generator(self, name: str) -> Generator:
        return Generator(name, ShellScript(self.script), list(self.dependencies))


@dataclass
class SecretConfig:
    """A secret as written in a host's TOML file.

    Attributes:
        name: Identifier of the secret, unique per host
        rekey_file: Master-encrypted file, relative to the repo root
        generator: Name of a generator, or an inline generator
    """
    name: str
    rekey_file: str | None = None
    generator: str | GeneratorConfig | None = None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "SecretConfig":
        generator = data.get("generator")
        if isinstance(generator, dict):
            generator = GeneratorConfig.from_dict(generator)
        return cls(
            name=name,
            rekey_file=data.get("rekey_file"),
            generator=generator,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.rekey_file:
            d["rekey_file"] = self.rekey_file
        if isinstance(self.generator, GeneratorConfig):
            d["generator"] = self.generator.to_dict()
        elif self.generator:
            d["generator"] = self.generator
        return d


@dataclass
class HostConfig:
    """Configuration for a host.

    Attributes:
        hostname: The host's name
        pubkey: The public key secrets are rekeyed for. Defaults to a dummy
                key so a host can be deployed once to learn its real key.
        pubkey_file: Or a file containing it, relative to the repo root
        secrets: The secrets this host requires
    """
    hostname: str
    pubkey: str | None = None
    pubkey_file: str | None = None
    secrets: dict[str, SecretConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, hostname: str, data: dict) -> "HostConfig":
        return cls(
            hostname=hostname,
            pubkey=data.get("pubkey"),
            pubkey_file=data.get("pubkey_file"),
            secrets={
                name: SecretConfig.from_dict(name, secret)
                for name, secret in data.get("secrets", {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.pubkey:
            d["pubkey"] = self.pubkey
        if self.pubkey_file:
            d["pubkey_file"] = self.pubkey_file
        if self.secrets:
            d["secrets"] = {
                name: secret.to_dict() for name, secret in self.secrets.items()
            }
        return d


@dataclass
class RekeyConfig:
    """Repository-wide settings from src/rekey.toml."""
    master_identities: list[str] = field(default_factory=list)
    extra_encryption_pubkeys: list[str] = field(default_factory=list)
    age_binary: str = "age"
    plugin_dirs: list[str] = field(default_factory=list)
    generators: dict[str, GeneratorConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "RekeyConfig":
        return cls(
            master_identities=data.get("master_identities", []),
            extra_encryption_pubkeys=data.get("extra_encryption_pubkeys", []),
            age_binary=data.get("age_binary", "age"),
            plugin_dirs=data.get("plugin_dirs", []),
            generators={
                name: GeneratorConfig.from_dict(gen)
                for name, gen in data.get("generators", {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "master_identities": self.master_identities,
            "extra_encryption_pubkeys": self.extra_encryption_pubkeys,
        }
        if self.age_binary != "age":
            d["age_binary"] = self.age_binary
        if self.plugin_dirs:
            d["plugin_dirs"] = self.plugin_dirs
        if self.generators:
            d["generators"] = {
                name: gen.to_dict() for name, gen in self.generators.items()
            }
        return d


@dataclass
class Diagnostic:
    """A problem found by pre-flight validation."""
    level: str  # "error" or "warning"
    message: str

    @property
    def is_error(self) -> bool:
        return self.level == "error"

    def __str__(self) -> str:
        return f"{self.level}: {self.message}"


class RekeyRepo:
    """Interface to an agerekey secrets repository."""

    def __init__(self, path: Path):
        self.path = path
        self.src_path = path / "src"
        self.build_path = path / "build"
        self.secrets_path = path / "secrets"

    def ensure_structure(self) -> None:
        """Create the expected directory structure if missing."""
        (self.src_path / "hosts").mkdir(parents=True, exist_ok=True)
        self.secrets_path.mkdir(parents=True, exist_ok=True)
        (self.build_path / "hosts").mkdir(parents=True, exist_ok=True)

    # Repository settings

    def config_path(self) -> Path:
        return self.src_path / "rekey.toml"

    def get_config(self) -> RekeyConfig:
        """Read src/rekey.toml; an empty config if it does not exist."""
        config_path = self.config_path()
        if not config_path.exists():
            return RekeyConfig()

        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        return RekeyConfig.from_dict(data)

    def set_config(self, config: RekeyConfig) -> None:
        config_path = self.config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config.to_dict(), f)

    # Host configuration

    def get_host_config(self, hostname: str) -> HostConfig | None:
        """Read host configuration."""
        config_path = self.src_path / "hosts" / f"{hostname}.toml"
        if not config_path.exists():
            return None

        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        return HostConfig.from_dict(hostname, data)

    def set_host_config(self, config: HostConfig) -> None:
        """Write host configuration."""
        config_path = self.src_path / "hosts" / f"{config.hostname}.toml"
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(config.to_dict(), f)

    def list_hosts(self) -> list[str]:
        """List all configured hosts, sorted by name."""
        hosts_dir = self.src_path / "hosts"
        if not hosts_dir.exists():
            return []
        return sorted(p.stem for p in hosts_dir.glob("*.toml"))

    # Paths

    def host_build_path(self, hostname: str) -> Path:
        """Get the rekeyed output directory for a host."""
        return self.build_path / "hosts" / hostname

    def secret_path(self, name: str) -> Path:
        """Default location of a new master-encrypted secret."""
        return self.secrets_path / f"{name}.age"

    def resolve(self, relative: str) -> Path:
        return self.path / relative


def _host_pubkey(repo: RekeyRepo, host_config: HostConfig) -> str:
    if host_config.pubkey:
        return host_config.pubkey.strip()
    if host_config.pubkey_file:
        pubkey_path = repo.resolve(host_config.pubkey_file)
        if pubkey_path.exists():
            return pubkey_path.read_text().strip()
        # Reported by preflight
        return ""
    return DUMMY_PUBKEY


def load_inventory(repo: RekeyRepo) -> Inventory:
    """Read the whole repository into an Inventory.

    Secrets that violate an invariant become InvalidSecret entries rather
    than raising; ``preflight`` reports them.
    """
    settings = repo.get_config()

    generators = dict(BUILTIN_GENERATORS)
    for name, gen in settings.generators.items():
        generators[name] = gen.to_generator(name)

    inventory = Inventory(
        master=MasterKeys(
            identities=[Path(p) for p in settings.master_identities],
            extra_pubkeys=list(settings.extra_encryption_pubkeys),
        ),
        generators=generators,
    )

    host_configs = {
        name: repo.get_host_config(name) for name in repo.list_hosts()
    }
    for host_config in host_configs.values():
        inventory.hosts[host_config.hostname] = Host(
            name=host_config.hostname,
            pubkey=_host_pubkey(repo, host_config),
        )

    # Second pass: dependencies may point at any host
    for host_config in host_configs.values():
        host = inventory.hosts[host_config.hostname]
        for name, secret_config in host_config.secrets.items():
            host.secrets[name] = _build_secret(
                repo, host_config.hostname, secret_config, inventory, host_configs
            )

    return inventory


def _build_secret(
    repo: RekeyRepo,
    hostname: str,
    secret_config: SecretConfig,
    inventory: Inventory,
    host_configs: dict[str, HostConfig],
):
    name = secret_config.name
    rekey_file = (
        repo.resolve(secret_config.rekey_file) if secret_config.rekey_file else None
    )

    if secret_config.generator is None:
        if rekey_file is None:
            return ExternalSecret(name)
        return StoredSecret(name, rekey_file)

    if isinstance(secret_config.generator, GeneratorConfig):
        generator = secret_config.generator.to_generator("<inline>")
    else:
        generator = inventory.generators.get(secret_config.generator)
        if generator is None:
            return InvalidSecret(
                name,
                f"generator '{secret_config.generator}' is not defined in "
                f"src/rekey.toml",
            )

    if rekey_file is None:
        return InvalidSecret(name, "`rekey_file` must be set when using a generator")

    dependencies: list[SecretRef] = []
    for raw in generator.dependencies:
        ref = SecretRef.parse(raw, hostname)
        dep_host = host_configs.get(ref.host)
        if dep_host is None or ref.name not in dep_host.secrets:
            return InvalidSecret(name, f"dependency '{ref}' is not defined")
        if not dep_host.secrets[ref.name].rekey_file:
            return InvalidSecret(name, f"dependency '{ref}' has no `rekey_file`")
        dependencies.append(ref)

    return GeneratedSecret(name, rekey_file, generator, dependencies)


def preflight(repo: RekeyRepo, inventory: Inventory) -> list[Diagnostic]:
    """Validate the repository before any pipeline work.

    Returns all problems found; errors must stop the pipeline, warnings
    should be shown to the operator.
    """
    diagnostics: list[Diagnostic] = []

    def error(message: str) -> None:
        diagnostics.append(Diagnostic("error", message))

    def warning(message: str) -> None:
        diagnostics.append(Diagnostic("warning", message))

    identities = inventory.master.identities
    if not identities:
        error("master_identities must be set in src/rekey.toml.")
    relative = [str(p) for p in identities if not p.is_absolute()]
    if relative:
        error(
            "All master_identities must be referred to by an absolute path, "
            f"but ({', '.join(relative)}) is not."
        )

    for host in inventory.hosts.values():
        if not host.pubkey:
            host_config = repo.get_host_config(host.name)
            error(
                f"{host.name}: pubkey_file '{host_config.pubkey_file}' does not exist."
            )
        elif host.uses_dummy_pubkey:
            warning(
                f"You have not yet specified a pubkey for host {host.name}. "
                "All secrets for this host will be rekeyed with a dummy key, "
                "resulting in an activation failure. Set `pubkey` once the "
                "host's real key is known."
            )
        for secret in host.secrets.values():
            if isinstance(secret, InvalidSecret):
                error(f"{host.name}:{secret.name}: {secret.reason}")

    return diagnostics


def check(diagnostics: list[Diagnostic]) -> None:
    """Raise ConfigInvalid if any diagnostic is an error."""
    errors = [d for d in diagnostics if d.is_error]
    if errors:
        raise ConfigInvalid(errors)
