import pytest

from security import (
    LegacyHash, ModernHash, generate_numeric_code, hash_one_time_code, hash_password,
    legacy_hash_password, needs_upgrade, one_time_code_matches, parse_password_hash,
    verify_password,
)


def test_hash_password_is_bcrypt():
    hashed = hash_password("correct horse")
    assert hashed.startswith("$2")
    assert isinstance(parse_password_hash(hashed), ModernHash)


def test_modern_hash_verifies():
    hashed = hash_password("correct horse")
    assert verify_password("correct horse", hashed).valid
    assert not verify_password("wrong horse", hashed).valid
    assert verify_password("correct horse", hashed).upgraded_hash is None


def test_legacy_hash_is_recognized_and_upgraded():
    legacy = legacy_hash_password("hunter2")
    assert isinstance(parse_password_hash(legacy), LegacyHash)
    assert needs_upgrade(legacy)

    check = verify_password("hunter2", legacy)
    assert check.valid
    assert check.upgraded_hash.startswith("$2")
    assert verify_password("hunter2", check.upgraded_hash).valid


def test_legacy_hash_wrong_password_not_upgraded():
    check = verify_password("nope", legacy_hash_password("hunter2"))
    assert not check.valid
    assert check.upgraded_hash is None


def test_unrecognized_hash_format():
    with pytest.raises(ValueError):
        parse_password_hash("plaintext-password")
    assert not verify_password("plaintext-password", "plaintext-password").valid
    assert not needs_upgrade("plaintext-password")


def test_numeric_code_shape():
    code = generate_numeric_code()
    assert len(code) == 6 and code.isdigit()
    assert len(generate_numeric_code(8)) == 8


def test_one_time_code_comparison():
    stored = hash_one_time_code("123456")
    assert one_time_code_matches("123456", stored)
    assert one_time_code_matches(" 123456 ", stored)
    assert not one_time_code_matches("654321", stored)
    assert not one_time_code_matches("", stored)
    assert not one_time_code_matches("123456", None)
