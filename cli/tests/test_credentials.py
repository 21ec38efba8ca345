import os

import pytest

from devpod_core import credentials
from devpod_core.credentials import ALPHABET, SECRET_NAMES, SecretBundle, generate, generate_bundle
from devpod_core.errors import EntropyUnavailable, MissingParameter

from conftest import is_secret


def test_generate_exact_length_and_alphabet() -> None:
    for length in (1, 7, 32, 100):
        value = generate(length)
        assert len(value) == length
        assert set(value) <= set(ALPHABET)


def test_generate_rejects_non_positive_length() -> None:
    with pytest.raises(ValueError):
        generate(0)


def test_generate_reports_missing_entropy(monkeypatch) -> None:
    def _broken(_count: int) -> bytes:
        raise OSError("getrandom unavailable")

    monkeypatch.setattr(os, "urandom", _broken)
    with pytest.raises(EntropyUnavailable):
        generate(32)


def test_generate_never_shortens_on_short_read(monkeypatch) -> None:
    monkeypatch.setattr(os, "urandom", lambda count: b"\x00" * (count - 1))
    with pytest.raises(EntropyUnavailable):
        generate(32)


def test_generate_skips_biased_bytes(monkeypatch) -> None:
    chunks = [bytes([255, 254, 0, 1] * 8), bytes([2] * 64)]
    monkeypatch.setattr(credentials, "_read_entropy", lambda count: chunks.pop(0))
    value = generate(20)
    assert value == ("ab" * 8) + "cccc"


def test_bundle_has_distinct_values_and_hides_them() -> None:
    bundle = generate_bundle()
    assert list(bundle) == list(SECRET_NAMES)
    assert len(set(bundle.values.values())) == len(SECRET_NAMES)
    assert all(is_secret(v) for v in bundle.values.values())
    for value in bundle.values.values():
        assert value not in repr(bundle)


def test_bundle_from_env_requires_every_secret() -> None:
    env = {name: "x" * 32 for name in SECRET_NAMES}
    assert SecretBundle.from_env(env)["JWT_SECRET"] == "x" * 32

    env.pop("DRONE_RPC")
    with pytest.raises(MissingParameter) as exc:
        SecretBundle.from_env(env)
    assert exc.value.keys == ["DRONE_RPC"]
