"""Decryption of master-encrypted secrets with interactive recovery.

When the master identities cannot decrypt a file (YubiKey not plugged in,
wrong key, ...) the operator decides what happens:

    (y) retry
    (n) abort
    (d) use a dummy value instead
    (a) use a dummy value for all future failures

The decision loop is a small state machine. Its transitions are listed in
TRANSITIONS; ``InteractiveDecryptor.decrypt`` only feeds events into it.

State shared by all decryptions of one invocation (the prompt lock, the
"dummy for all" choice and cancellation) lives in a RunState, which the
command creates once and tears down when it finishes.
"""

import enum
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

import typer

from .crypto import Age
from .errors import Aborted, DecryptFailed


class State(enum.Enum):
    TRYING = "trying"
    AWAITING_DECISION = "awaiting-decision"
    DUMMY_FALLBACK = "dummy-fallback"
    ABORTED = "aborted"
    DECRYPTED = "decrypted"


class Event(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRY = "retry"
    ABORT = "abort"
    DUMMY = "dummy"
    DUMMY_ALL = "dummy-all"


TRANSITIONS: dict[tuple[State, Event], State] = {
    (State.TRYING, Event.SUCCEEDED): State.DECRYPTED,
    (State.TRYING, Event.FAILED): State.AWAITING_DECISION,
    (State.AWAITING_DECISION, Event.RETRY): State.TRYING,
    (State.AWAITING_DECISION, Event.ABORT): State.ABORTED,
    (State.AWAITING_DECISION, Event.DUMMY): State.DUMMY_FALLBACK,
    (State.AWAITING_DECISION, Event.DUMMY_ALL): State.DUMMY_FALLBACK,
}

RESPONSES: dict[str, Event] = {
    "": Event.RETRY,
    "y": Event.RETRY,
    "yes": Event.RETRY,
    "n": Event.ABORT,
    "no": Event.ABORT,
    "d": Event.DUMMY,
    "dummy": Event.DUMMY,
    "a": Event.DUMMY_ALL,
    "all": Event.DUMMY_ALL,
}

MENU = (
    "  (y) retry",
    "  (n) abort",
    "  (d) use a dummy value instead",
    "  (a) use a dummy value for all future failures",
)


def dummy_text(name: str, path: Path) -> str:
    """The placeholder used instead of a secret that could not be decrypted."""
    return (
        f"This is a dummy replacement value. The actual secret {name} "
        f"({path}) could not be decrypted.\n"
    )


@dataclass
class Decryption:
    """Result of an interactive decryption."""
    data: bytes
    dummy: bool = False


class RunState:
    """State shared by every decryption in one pipeline invocation.

    Create exactly one per invocation, as a context manager::

        with RunState() as run:
            ...

    ``dummy_all`` is monotonic: once set it stays set until teardown.
    Teardown reports the secrets that were replaced by dummies.
    """

    def __init__(self):
        self.prompt_lock = threading.Lock()
        self._dummy_all = threading.Event()
        self._cancelled = threading.Event()
        self._dummies_lock = threading.Lock()
        self.dummies: list[str] = []

    def __enter__(self) -> "RunState":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if self.dummies:
            typer.secho(
                f"Warning: {len(self.dummies)} secret(s) were replaced by dummy values:",
                fg=typer.colors.YELLOW,
                err=True,
            )
            for label in self.dummies:
                typer.echo(f"  - {label}", err=True)
        self._dummy_all.clear()
        self._cancelled.clear()

    @property
    def dummy_all(self) -> bool:
        return self._dummy_all.is_set()

    def enable_dummy_all(self) -> None:
        self._dummy_all.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise Aborted()

    def record_dummy(self, label: str) -> None:
        with self._dummies_lock:
            self.dummies.append(label)

    def echo(self, message: str, **kwargs) -> None:
        """Print progress without cutting into a pending prompt."""
        with self.prompt_lock:
            typer.secho(message, **kwargs)


def _flush_stdin() -> None:
    """Drop keystrokes typed before the prompt was shown."""
    try:
        import termios
        if sys.stdin.isatty():
            termios.tcflush(sys.stdin, termios.TCIFLUSH)
    except (ImportError, OSError, ValueError):
        pass


def prompt_action() -> str:
    """Ask the operator on the terminal what to do about a failure."""
    _flush_stdin()
    try:
        return typer.prompt(
            "Select action (Y/n/d/a)",
            default="",
            show_default=False,
            err=True,
        )
    except typer.Abort:
        # EOF or Ctrl-C on the prompt
        return "n"


class InteractiveDecryptor:
    """Decrypts files with the master identities, asking on failure.

    Args:
        gateway: The age gateway
        identities: Master identities, all presented to age at once
        run: The state of the current invocation
        ask: Callable returning the operator's raw answer
    """

    def __init__(
        self,
        gateway: Age,
        identities: Sequence[Path],
        run: RunState,
        ask: Callable[[], str] = prompt_action,
    ):
        self.gateway = gateway
        self.identities = list(identities)
        self.run = run
        self.ask = ask

    def decrypt(self, path: Path, name: str, host: str) -> Decryption:
        """Decrypt ``path``, which holds secret ``name`` needed by ``host``.

        Raises:
            Aborted: If the operator aborted, here or in another thread
        """
        state = State.TRYING
        data = b""
        while True:
            if state is State.DECRYPTED:
                return Decryption(data)
            if state is State.DUMMY_FALLBACK:
                self.run.record_dummy(f"{host}:{name} ({path})")
                return Decryption(dummy_text(name, path).encode(), dummy=True)
            if state is State.ABORTED:
                self.run.cancel()
                raise Aborted()

            if state is State.TRYING:
                self.run.check_cancelled()
                try:
                    data = self.gateway.decrypt(path, self.identities)
                    event = Event.SUCCEEDED
                except DecryptFailed:
                    event = Event.FAILED
            else:
                event = self._decide(path, name, host)
            state = TRANSITIONS[(state, event)]

    def _decide(self, path: Path, name: str, host: str) -> Event:
        with self.run.prompt_lock:
            typer.secho(
                f"Failed to decrypt {path} (secret {name}) for {host}!",
                fg=typer.colors.RED,
                bold=True,
                err=True,
            )
            # Another thread may have decided while we waited for the lock
            if self.run.cancelled:
                return Event.ABORT
            if self.run.dummy_all:
                return Event.DUMMY

            while True:
                for line in MENU:
                    typer.echo(line, err=True)
                response = self.ask().strip().lower()
                event = RESPONSES.get(response)
                if event is None:
                    continue
                if event is Event.DUMMY_ALL:
                    self.run.enable_dummy_all()
                elif event is Event.ABORT:
                    self.run.cancel()
                return event
