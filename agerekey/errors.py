"""Errors raised by the rekey and generate pipeline."""

from pathlib import Path


class RekeyError(Exception):
    """Base class for all agerekey errors."""


class ConfigInvalid(RekeyError):
    """Raised when pre-flight validation found errors in the repository."""

    def __init__(self, diagnostics: list):
        self.diagnostics = diagnostics
        super().__init__(f"{len(diagnostics)} configuration error(s)")

    def __str__(self) -> str:
        return "\n".join(str(d) for d in self.diagnostics)


class CyclicDependency(RekeyError):
    """Raised when generator dependencies form a cycle.

    ``cycle`` lists the participating secrets, starting and ending with the
    same secret.
    """

    def __init__(self, cycle: list):
        self.cycle = cycle
        super().__init__(cycle)

    def __str__(self) -> str:
        return "Dependency cycle: " + " -> ".join(str(ref) for ref in self.cycle)


class DecryptFailed(RekeyError):
    """Raised when none of the given identities can decrypt a file."""

    def __init__(self, path: Path, returncode: int | None = None):
        self.path = path
        self.returncode = returncode
        super().__init__(f"Failed to decrypt {path}")


class EncryptFailed(RekeyError):
    """Raised when encrypting for a recipient set failed. No output is left behind."""

    def __init__(self, path: Path, returncode: int | None = None):
        self.path = path
        self.returncode = returncode
        super().__init__(f"Failed to encrypt {path}")


class GeneratorFailed(RekeyError):
    """Raised when a generator script exits non-zero."""

    def __init__(self, ref, returncode: int):
        self.ref = ref
        self.returncode = returncode
        super().__init__(f"Generator for {ref} failed with exit code {returncode}")


class Aborted(RekeyError):
    """Raised when the operator aborted the run."""

    def __init__(self, message: str = "Aborted by user."):
        super().__init__(message)


class AgeNotFound(RekeyError):
    """Raised when the age binary cannot be executed."""

    def __init__(self, binary: str):
        self.binary = binary
        super().__init__(
            f"Could not run '{binary}'. Is age installed and on your PATH?"
        )


class DummyDependency(RekeyError):
    """Raised instead of generating a secret from a dummy dependency value."""

    def __init__(self, ref, dependency):
        self.ref = ref
        self.dependency = dependency
        super().__init__(
            f"Not generating {ref}: its dependency {dependency} could not be "
            f"decrypted and was replaced by a dummy value"
        )
