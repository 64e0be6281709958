"""Hosts, secrets and generators as seen by the pipeline."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Union

from .crypto import RecipientSet


# Every byte is 0x01, so there is no known private key for this pubkey
DUMMY_PUBKEY = "age1qyqszqgpqyqszqgpqyqszqgpqyqszqgpqyqszqgpqyqszqgpqyqs3290gq"


@dataclass(frozen=True, order=True)
class SecretRef:
    """Global identifier of a secret: the host declaring it and its name."""
    host: str
    name: str

    @classmethod
    def parse(cls, value: str, default_host: str) -> "SecretRef":
        """Parse ``name`` or ``host:name``."""
        host, sep, name = value.rpartition(":")
        if not sep:
            return cls(default_host, value)
        return cls(host, name)

    def __str__(self) -> str:
        return f"{self.host}:{self.name}"


@dataclass
class Generator:
    """A reusable way of producing a secret that does not exist yet.

    Attributes:
        name: Name of the generator (``<inline>`` for per-secret ones)
        script: Callable receiving a GenerationContext and returning the
                shell script to run. Its stdout becomes the secret.
        dependencies: Secrets whose plaintext the script needs, as
                      ``name`` (same host) or ``host:name``
    """
    name: str
    script: Callable[..., str]
    dependencies: list[str] = field(default_factory=list)


@dataclass
class StoredSecret:
    """A secret with a master-encrypted file and no generator."""
    name: str
    rekey_file: Path


@dataclass
class GeneratedSecret:
    """A secret whose master-encrypted file is produced by a generator."""
    name: str
    rekey_file: Path
    generator: Generator
    dependencies: list[SecretRef] = field(default_factory=list)


@dataclass
class ExternalSecret:
    """A secret declared for a host that is not managed by rekeying."""
    name: str


@dataclass
class InvalidSecret:
    """A secret whose declaration violates a configuration invariant."""
    name: str
    reason: str


Secret = Union[StoredSecret, GeneratedSecret, ExternalSecret, InvalidSecret]

REKEYABLE = (StoredSecret, GeneratedSecret)


@dataclass
class Host:
    """A host and the secrets it requires."""
    name: str
    pubkey: str = DUMMY_PUBKEY
    secrets: dict[str, Secret] = field(default_factory=dict)

    @property
    def uses_dummy_pubkey(self) -> bool:
        return self.pubkey == DUMMY_PUBKEY

    def rekeyable(self) -> list[StoredSecret | GeneratedSecret]:
        """Secrets with a master-encrypted file, in declaration order."""
        return [s for s in self.secrets.values() if isinstance(s, REKEYABLE)]


@dataclass
class MasterKeys:
    """The identities able to decrypt every stored secret.

    Attributes:
        identities: Identity files, presented to age in this order
        extra_pubkeys: Additional recipients for newly encrypted secrets.
                       Absolute paths are recipient files, anything else a
                       public key.
    """
    identities: list[Path] = field(default_factory=list)
    extra_pubkeys: list[str] = field(default_factory=list)

    def recipients(self) -> RecipientSet:
        """The recipient set for generated and added secrets."""
        files = [Path(p) for p in self.extra_pubkeys if p.startswith("/")]
        pubkeys = [p for p in self.extra_pubkeys if not p.startswith("/")]
        return RecipientSet.of(
            pubkeys=pubkeys, files=files, identities=self.identities
        )


@dataclass
class Inventory:
    """Everything the pipeline knows about a repository."""
    hosts: dict[str, Host] = field(default_factory=dict)
    master: MasterKeys = field(default_factory=MasterKeys)
    generators: dict[str, Generator] = field(default_factory=dict)

    def secret(self, ref: SecretRef) -> Secret:
        """Look up a secret; raises KeyError if it is not declared."""
        return self.hosts[ref.host].secrets[ref.name]

    def has(self, ref: SecretRef) -> bool:
        host = self.hosts.get(ref.host)
        return host is not None and ref.name in host.secrets

    def refs(self) -> Iterator[SecretRef]:
        """All declared secrets, hosts and secrets in declaration order."""
        for host in self.hosts.values():
            for name in host.secrets:
                yield SecretRef(host.name, name)
