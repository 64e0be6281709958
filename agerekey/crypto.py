"""Cryptographic operations using age."""

import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import AgeNotFound, DecryptFailed, EncryptFailed


@dataclass(frozen=True)
class RecipientSet:
    """The keys a single encryption is made for.

    Attributes:
        pubkeys: Recipient public keys (age or SSH format)
        files: Recipient files, one public key per line
        identities: Identity files; age encrypts to their public counterpart
    """
    pubkeys: tuple[str, ...] = ()
    files: tuple[Path, ...] = ()
    identities: tuple[Path, ...] = ()

    @classmethod
    def of(
        cls,
        pubkeys: Sequence[str] = (),
        files: Sequence[Path] = (),
        identities: Sequence[Path] = (),
    ) -> "RecipientSet":
        """Build a recipient set, dropping duplicates but keeping order."""
        return cls(
            pubkeys=tuple(dict.fromkeys(pubkeys)),
            files=tuple(dict.fromkeys(Path(f) for f in files)),
            identities=tuple(dict.fromkeys(Path(i) for i in identities)),
        )

    @classmethod
    def single(cls, pubkey: str) -> "RecipientSet":
        return cls(pubkeys=(pubkey,))

    def __bool__(self) -> bool:
        return bool(self.pubkeys or self.files or self.identities)

    def args(self) -> list[str]:
        """Command line arguments selecting these recipients."""
        args: list[str] = []
        for pubkey in self.pubkeys:
            args.extend(["--recipient", pubkey])
        for path in self.files:
            args.extend(["--recipients-file", str(path)])
        for path in self.identities:
            args.extend(["--identity", str(path)])
        return args


class Age:
    """Gateway to the age command line tool.

    Any age compatible implementation (e.g. rage) can be used by passing
    its binary name. Plugin directories are appended to PATH so that plugins
    installed on the system take precedence.
    """

    def __init__(self, binary: str = "age", plugin_dirs: Sequence[Path] = ()):
        self.binary = binary
        self.plugin_dirs = [Path(p) for p in plugin_dirs]

    def env(self) -> dict[str, str] | None:
        """Environment for age and scripts calling it; None keeps the current one."""
        if not self.plugin_dirs:
            return None
        env = dict(os.environ)
        paths = [env.get("PATH", "")] + [str(p) for p in self.plugin_dirs]
        env["PATH"] = os.pathsep.join(p for p in paths if p)
        return env

    def encrypt(
        self,
        content: str | bytes,
        recipients: RecipientSet,
        output_path: Path,
    ) -> None:
        """Encrypt content with age for all recipients.

        The ciphertext is written to a temporary file next to output_path
        and renamed into place, so a failure never leaves a partial file.

        Args:
            content: The content to encrypt (str or bytes)
            recipients: Who will be able to decrypt the result
            output_path: Where to write the encrypted file

        Raises:
            EncryptFailed: If age exited non-zero
        """
        if not recipients:
            raise ValueError("At least one recipient is required")

        if isinstance(content, str):
            content = content.encode("utf-8")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent
        )
        os.close(fd)
        tmp_path = Path(tmp_name)

        cmd = [self.binary, "--encrypt", "--armor"]
        cmd.extend(recipients.args())
        cmd.extend(["--output", str(tmp_path)])

        try:
            subprocess.run(cmd, input=content, check=True, env=self.env())
            os.replace(tmp_path, output_path)
        except subprocess.CalledProcessError as e:
            raise EncryptFailed(output_path, e.returncode) from None
        except FileNotFoundError:
            raise AgeNotFound(self.binary) from None
        finally:
            tmp_path.unlink(missing_ok=True)

    def decrypt_command(self, identities: Sequence[Path]) -> list[str]:
        """The command that decrypts a file (appended) to stdout."""
        cmd = [self.binary, "--decrypt"]
        for identity in identities:
            cmd.extend(["--identity", str(identity)])
        return cmd

    def decrypt(self, input_path: Path, identities: Sequence[Path]) -> bytes:
        """Decrypt an age-encrypted file.

        All identities are handed to age at once, which succeeds if any of
        them matches. Errors and plugin prompts (e.g. YubiKey touch) go
        straight to the terminal.

        Args:
            input_path: Path to the encrypted file
            identities: Identity files, tried in order by age

        Returns:
            Decrypted content as bytes

        Raises:
            DecryptFailed: If no identity could decrypt the file
        """
        if not identities:
            raise ValueError("At least one identity is required")

        cmd = self.decrypt_command(identities) + [str(input_path)]
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                check=True,
                env=self.env(),
            )
        except subprocess.CalledProcessError as e:
            raise DecryptFailed(input_path, e.returncode) from None
        except FileNotFoundError:
            raise AgeNotFound(self.binary) from None
        return result.stdout
