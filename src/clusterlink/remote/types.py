"""Type definitions for remote execution."""

from dataclasses import dataclass, field
from typing import Optional

# Placeholder values the tunnel child receives for "not provided".
ABSENT_SENTINELS = frozenset({"", "null", "undefined"})


def _absent_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or value in ABSENT_SENTINELS:
        return None
    return value


@dataclass(frozen=True, slots=True)
class Credentials:
    """Identifies a remote endpoint and the way to authenticate against it."""

    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_args(
        cls,
        host: str,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        port: int = 22,
    ) -> "Credentials":
        """Build credentials from command-line style values, honouring the null sentinels."""
        return cls(
            host=host,
            username=username,
            port=port,
            password=_absent_to_none(password),
            private_key=_absent_to_none(private_key),
        )

    def key_material(self) -> Optional[str]:
        """Return the private key with escaped newlines restored."""
        if self.private_key is None:
            return None
        return self.private_key.replace("\\n", "\n")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a single remote command."""

    stdout: str
    stderr: str
    exit_code: Optional[int]

    @property
    def ok(self) -> bool:
        # None means the process was killed by a signal
        return self.exit_code == 0
