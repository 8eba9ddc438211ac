from __future__ import annotations

from edutenant.services.credentials import generate_password, hash_password, verify_password


def test_hash_round_trip_and_salting() -> None:
    first = hash_password("s3cret")
    second = hash_password("s3cret")

    assert first.startswith("scrypt$")
    assert first != second
    assert verify_password("s3cret", first)
    assert verify_password("s3cret", second)
    assert not verify_password("S3cret", first)


def test_malformed_hashes_never_verify() -> None:
    assert not verify_password("s3cret", "")
    assert not verify_password("s3cret", "plaintext")
    assert not verify_password("s3cret", "bcrypt$1$2$3$aa$bb")


def test_generated_passwords_are_random() -> None:
    passwords = {generate_password() for _ in range(20)}
    assert len(passwords) == 20
    assert all(len(password) >= 20 for password in passwords)


def test_corrupt_stored_values_never_verify() -> None:
    assert not verify_password("s3cret", "scrypt$1$2$3$zz$bb")
    assert not verify_password("s3cret", "scrypt$x$8$1$aa$bb")
    assert not verify_password("s3cret", "scrypt$1$8$1$aa$bb")
