import pytest

import encryption
from encryption import (
    ALGORITHM, IV_LENGTH, KEY_LENGTH, TAG_LENGTH,
    decode_key, decrypt, encode_key, encrypt, is_sealed, open_secret, seal_secret,
)
from errors import DecryptionError


def test_encrypt_produces_fresh_key_and_iv():
    first = encrypt(b"hello world")
    second = encrypt(b"hello world")
    assert len(first.key) == KEY_LENGTH
    assert len(first.iv) == IV_LENGTH
    assert first.key != second.key
    assert first.iv != second.iv
    assert len(first.ciphertext) == len(b"hello world") + TAG_LENGTH
    assert ALGORITHM == "aes-256-gcm"


def test_decrypt_returns_original_bytes():
    payload = bytes(range(256)) * 10
    result = encrypt(payload)
    assert decrypt(result.ciphertext, result.key, result.iv) == payload


def test_supplied_key_is_reused_with_new_iv():
    key = encryption.generate_key()
    a = encrypt(b"x", key=key)
    b = encrypt(b"x", key=key)
    assert a.key == b.key == key
    assert a.iv != b.iv


def test_supplied_key_must_be_32_bytes():
    with pytest.raises(ValueError):
        encrypt(b"x", key=b"short")


def test_tampered_ciphertext_fails_closed():
    result = encrypt(b"sensitive payload")
    tampered = bytearray(result.ciphertext)
    tampered[0] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt(bytes(tampered), result.key, result.iv)


def test_wrong_key_fails():
    result = encrypt(b"sensitive payload")
    with pytest.raises(DecryptionError):
        decrypt(result.ciphertext, encryption.generate_key(), result.iv)


def test_truncated_ciphertext_fails():
    result = encrypt(b"sensitive payload")
    with pytest.raises(DecryptionError):
        decrypt(result.ciphertext[:5], result.key, result.iv)


def test_bad_iv_length_fails():
    result = encrypt(b"payload")
    with pytest.raises(DecryptionError):
        decrypt(result.ciphertext, result.key, b"\x00" * 8)


def test_key_encoding_survives_storage():
    result = encrypt(b"payload")
    assert decode_key(result.key_b64) == result.key
    assert decode_key(encode_key(result.iv)) == result.iv


def test_malformed_key_encoding_raises_decryption_error():
    with pytest.raises(DecryptionError):
        decode_key("not base64!!")


def test_sealed_secret_opens():
    sealed = seal_secret("JBSWY3DPEHPK3PXP")
    assert is_sealed(sealed)
    assert "JBSWY3DPEHPK3PXP" not in sealed
    assert open_secret(sealed) == "JBSWY3DPEHPK3PXP"


def test_legacy_plaintext_secret_is_returned_unchanged():
    assert not is_sealed("JBSWY3DPEHPK3PXP")
    assert open_secret("JBSWY3DPEHPK3PXP") == "JBSWY3DPEHPK3PXP"
