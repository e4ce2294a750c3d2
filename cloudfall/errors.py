"""Exception types raised by the simulation core."""

from __future__ import annotations

from typing import Iterable, List


class ConfigurationError(ValueError):
    """Invalid deploy parameters. Carries every violated rule, not just the first."""

    def __init__(self, violations: Iterable[str]) -> None:
        self.violations: List[str] = list(violations)
        super().__init__("; ".join(self.violations) or "invalid configuration")


class UnknownServiceError(KeyError):
    """Raised by lookups for a service id that is not deployed."""

    def __init__(self, service_id: str) -> None:
        self.service_id = service_id
        super().__init__(service_id)


class GameOverError(RuntimeError):
    """A command that changes the game was issued after game over."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"cannot {command}: game over ({reason})")


class EngineBusyError(RuntimeError):
    """A command that changes the game was issued from inside a running tick."""

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"cannot {command} while a tick is running")
