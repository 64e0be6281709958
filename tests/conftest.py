"""Shared fixtures: a fake age gateway and master identities."""

import base64
from pathlib import Path

import pytest

from agerekey.crypto import RecipientSet
from agerekey.decrypt import RunState
from agerekey.errors import DecryptFailed, EncryptFailed


def identity_pubkey(identity: Path) -> str:
    return Path(identity).read_text().strip().split()[-1]


class FakeAge:
    """Behaves like the age gateway without running age.

    Ciphertext files list their recipients in clear, followed by the
    base64 encoded content. An identity file holds the single pubkey it
    can decrypt for.
    """

    def __init__(self):
        self.fail_encrypt_for: set[str] = set()
        self.decrypt_calls: list[Path] = []
        self.environment: dict[str, str] | None = None

    def _keys(self, recipients: RecipientSet) -> list[str]:
        keys = list(recipients.pubkeys)
        for path in recipients.files:
            keys.extend(path.read_text().split())
        keys.extend(identity_pubkey(i) for i in recipients.identities)
        return keys

    def encrypt(self, content, recipients: RecipientSet, output_path: Path) -> None:
        if not recipients:
            raise ValueError("At least one recipient is required")
        if isinstance(content, str):
            content = content.encode("utf-8")
        keys = self._keys(recipients)
        if self.fail_encrypt_for & set(keys):
            raise EncryptFailed(output_path, 1)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(
            "FAKE-AGE\n" + " ".join(keys) + "\n" + base64.b64encode(content).decode()
        )

    def decrypt(self, input_path: Path, identities) -> bytes:
        self.decrypt_calls.append(input_path)
        if not input_path.exists():
            raise DecryptFailed(input_path, 1)
        _, keys, payload = input_path.read_text().split("\n", 2)
        mine = {identity_pubkey(i) for i in identities}
        if not mine & set(keys.split()):
            raise DecryptFailed(input_path, 1)
        return base64.b64decode(payload)

    def decrypt_command(self, identities) -> list[str]:
        return ["false"]

    def env(self) -> dict[str, str] | None:
        return self.environment

    @staticmethod
    def recipients_of(path: Path) -> list[str]:
        return path.read_text().split("\n", 2)[1].split()


class Answers:
    """Scripted operator answers for the recovery prompt."""

    def __init__(self, *answers: str):
        self.answers = list(answers)
        self.asked = 0

    def __call__(self) -> str:
        self.asked += 1
        return self.answers.pop(0)


@pytest.fixture
def fake_age() -> FakeAge:
    return FakeAge()


@pytest.fixture
def answers():
    """Factory for scripted operator answers."""
    return Answers


@pytest.fixture
def make_identity(tmp_path: Path):
    """Create an identity file; returns (path, pubkey)."""
    keys_dir = tmp_path / "keys"
    keys_dir.mkdir(exist_ok=True)

    def make(name: str) -> tuple[Path, str]:
        pubkey = f"age1fake{name}"
        path = keys_dir / f"{name}.txt"
        path.write_text(f"FAKE-IDENTITY {pubkey}\n")
        return path, pubkey

    return make


@pytest.fixture
def master(make_identity) -> tuple[Path, str]:
    return make_identity("master")


@pytest.fixture
def run_state():
    with RunState() as run:
        yield run
