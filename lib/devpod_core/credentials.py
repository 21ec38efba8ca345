from __future__ import annotations

import logging
import os
import string
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping

from .errors import EntropyUnavailable, MissingParameter

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_letters + string.digits
SECRET_LENGTH = 32
SECRET_NAMES = (
    "POSTGRES_PASSWORD",
    "REDIS_PASSWORD",
    "ADMIN_PASSWORD",
    "JWT_SECRET",
    "AUTHELIA_JWT",
    "DRONE_RPC",
)

# Largest multiple of len(ALPHABET) that fits in a byte; higher bytes are
# rejected so every character is equally likely.
_ACCEPT_BELOW = 256 - (256 % len(ALPHABET))


def _read_entropy(count: int) -> bytes:
    try:
        data = os.urandom(count)
    except (NotImplementedError, OSError) as exc:
        raise EntropyUnavailable(f"System random source unavailable: {exc}") from exc
    if len(data) != count:
        raise EntropyUnavailable(f"Short read from random source: {len(data)} of {count} bytes")
    return data


def generate(length: int = SECRET_LENGTH) -> str:
    """Return exactly `length` random alphanumeric characters."""
    if length < 1:
        raise ValueError("length must be >= 1")
    chars: list[str] = []
    while len(chars) < length:
        for byte in _read_entropy(max(16, (length - len(chars)) * 2)):
            if byte >= _ACCEPT_BELOW:
                continue
            chars.append(ALPHABET[byte % len(ALPHABET)])
            if len(chars) == length:
                break
    return "".join(chars)


@dataclass(frozen=True)
class SecretBundle(Mapping[str, str]):
    values: Mapping[str, str] = field(default_factory=dict)

    def __getitem__(self, key: str) -> str:
        return self.values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def __repr__(self) -> str:
        return f"SecretBundle(names={sorted(self.values)})"

    @classmethod
    def from_env(cls, env: Mapping[str, str], names: Iterable[str] = SECRET_NAMES) -> "SecretBundle":
        names = list(names)
        missing = [name for name in names if not env.get(name)]
        if missing:
            raise MissingParameter("environment-file", missing)
        return cls({name: env[name] for name in names})


def generate_bundle(names: Iterable[str] = SECRET_NAMES, length: int = SECRET_LENGTH) -> SecretBundle:
    names = list(names)
    if len(set(names)) != len(names):
        raise ValueError("Secret names must be unique.")
    logger.debug("Generating %d secrets", len(names))
    return SecretBundle({name: generate(length) for name in names})
