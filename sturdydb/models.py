"""Shared dataclasses used across the connection/statement modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlsplit

REDACTED = "***"


@dataclass(frozen=True, slots=True)
class ConnectionTarget:
    """Where and as whom to connect. Immutable once built."""

    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = field(default=None, repr=False)

    def secrets(self) -> tuple[str, ...]:
        """Every secret string that must never show up in messages."""

        found: list[str] = []
        if self.password:
            found.append(self.password)
        if self.dsn and "://" in self.dsn:
            try:
                embedded = urlsplit(self.dsn).password
            except ValueError:
                embedded = None
            if embedded and embedded not in found:
                found.append(embedded)
        return tuple(found)

    def redact(self, text: str) -> str:
        for secret in self.secrets():
            text = text.replace(secret, REDACTED)
        return text

    def describe(self) -> str:
        """Short, password-free label for log records."""

        if self.dsn:
            return self.redact(self.dsn)
        host = self.host or "localhost"
        label = f"{host}:{self.port}" if self.port is not None else host
        if self.database:
            label = f"{label}/{self.database}"
        if self.user:
            label = f"{self.user}@{label}"
        return label


__all__ = ["ConnectionTarget", "REDACTED"]
