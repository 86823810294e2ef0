"""
Unit tests for crypto primitives.
"""
import base64
import re
from datetime import datetime, timezone

import pyotp
import pytest

from carevault.core.crypto import (
    CryptoError,
    decode_key,
    decrypt,
    encrypt,
    extract_key_id,
    generate_backup_codes,
    generate_device_fingerprint,
    generate_encryption_key,
    generate_key_identifier,
    generate_otp,
    hash_code,
    is_encrypted,
    key_fingerprint,
    mask_for_display,
    network_class,
    parse_encrypted_data,
    secure_compare,
    unwrap_key,
    validate_encryption_key,
    verify_totp,
    wrap_key,
)


@pytest.fixture
def raw_key() -> bytes:
    return decode_key(generate_encryption_key())


class TestFieldEncryption:
    """Test cases for AES-256-GCM field encryption."""

    def test_encrypt_decrypt(self, raw_key):
        encrypted = encrypt("123-45-6789", raw_key, "ssn_encryption_abc_0011aabb")

        assert encrypted.startswith("enc:v1:ssn_encryption_abc_0011aabb:")
        assert "123-45-6789" not in encrypted
        assert decrypt(encrypted, raw_key) == "123-45-6789"

    def test_envelope_format(self, raw_key):
        encrypted = encrypt("payload", raw_key, "phi_key")
        parsed = parse_encrypted_data(encrypted)

        assert parsed.version == "v1"
        assert parsed.key_id == "phi_key"
        assert len(base64.b64decode(parsed.iv)) == 12
        assert len(base64.b64decode(parsed.auth_tag)) == 16

    def test_same_plaintext_encrypts_differently(self, raw_key):
        assert encrypt("same", raw_key, "k") != encrypt("same", raw_key, "k")

    def test_empty_value_is_encrypted(self, raw_key):
        encrypted = encrypt("", raw_key, "k")
        assert is_encrypted(encrypted)
        assert decrypt(encrypted, raw_key) == ""

    def test_tampered_ciphertext_rejected(self, raw_key):
        encrypted = encrypt("sensitive", raw_key, "k")
        prefix, ciphertext = encrypted.rsplit(":", 1)
        data = bytearray(base64.b64decode(ciphertext))
        data[0] ^= 0x01
        tampered = f"{prefix}:{base64.b64encode(bytes(data)).decode()}"

        with pytest.raises(CryptoError):
            decrypt(tampered, raw_key)

    def test_wrong_key_rejected(self, raw_key):
        encrypted = encrypt("sensitive", raw_key, "k")
        with pytest.raises(CryptoError):
            decrypt(encrypted, decode_key(generate_encryption_key()))

    def test_malformed_values(self, raw_key):
        assert parse_encrypted_data("plain text") is None
        assert parse_encrypted_data("enc:v1:only:three") is None
        assert extract_key_id(None) is None

        with pytest.raises(CryptoError):
            decrypt("enc:v1:k:a:b", raw_key)

    @pytest.mark.parametrize("field,value", [
        (3, ""),
        (3, base64.b64encode(b"short").decode()),
        (4, base64.b64encode(b"x" * 8).decode()),
        (4, ""),
    ])
    def test_wrong_iv_or_tag_length_rejected(self, raw_key, field, value):
        parts = encrypt("sensitive", raw_key, "k").split(":")
        parts[field] = value

        with pytest.raises(CryptoError):
            decrypt(":".join(parts), raw_key)

    def test_key_id_cannot_contain_separator(self, raw_key):
        with pytest.raises(CryptoError):
            encrypt("x", raw_key, "bad:id")


class TestKeys:
    """Test cases for key material helpers."""

    def test_generated_key_is_256_bit(self):
        key = generate_encryption_key()
        assert validate_encryption_key(key)
        assert len(decode_key(key)) == 32

    def test_short_key_rejected(self):
        short = base64.b64encode(b"x" * 16).decode()
        assert validate_encryption_key(short) is False
        with pytest.raises(CryptoError):
            decode_key(short)

    def test_key_identifier_format(self):
        identifier = generate_key_identifier("SSN_ENCRYPTION")
        assert re.match(r"^ssn_encryption_[0-9a-z]+_[0-9a-f]{8}$", identifier)
        assert identifier != generate_key_identifier("SSN_ENCRYPTION")

    def test_fingerprint(self):
        key = generate_encryption_key()
        fingerprint = key_fingerprint(key)

        assert re.match(r"^[0-9a-f]{16}$", fingerprint)
        assert fingerprint == key_fingerprint(key)
        assert key not in fingerprint

    def test_wrap_and_unwrap(self, raw_key):
        dek = generate_encryption_key()
        wrapped = wrap_key(dek, raw_key)

        assert extract_key_id(wrapped) == "master"
        assert dek not in wrapped
        assert unwrap_key(wrapped, raw_key) == decode_key(dek)


class TestCodes:
    """Test cases for one-time codes and tokens."""

    def test_otp_is_six_digits(self):
        otp = generate_otp()
        assert len(otp) == 6
        assert otp.isdigit()

    def test_backup_codes(self):
        codes = generate_backup_codes(10)

        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(re.match(r"^[0-9A-F]{8}$", code) for code in codes)

    def test_hash_code_is_case_insensitive(self):
        assert hash_code(" ab12cd34 ") == hash_code("AB12CD34")

    def test_secure_compare(self):
        assert secure_compare("abc", "abc")
        assert not secure_compare("abc", "abd")

    def test_verify_totp_with_clock(self):
        secret = pyotp.random_base32()
        moment = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
        code = pyotp.TOTP(secret).at(moment)

        assert verify_totp(secret, code, for_time=moment)
        # one step of drift either way is accepted
        assert verify_totp(secret, pyotp.TOTP(secret).at(moment.timestamp() - 30), for_time=moment)
        assert not verify_totp(secret, code, for_time=datetime(2026, 1, 5, 12, 5, tzinfo=timezone.utc))
        assert not verify_totp(secret, "abcdef", for_time=moment)


class TestDevices:
    """Test cases for device fingerprints and display helpers."""

    def test_network_class(self):
        assert network_class("203.0.113.77") == "203.0.113.0/24"
        assert network_class("2001:db8:1:2:3:4:5:6") == "2001:db8:1:2::/64"
        assert network_class(None) == "unknown"

    def test_fingerprint_tolerates_same_network(self):
        ua = "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0"
        assert generate_device_fingerprint(ua, "203.0.113.10") == generate_device_fingerprint(ua, "203.0.113.99")
        assert generate_device_fingerprint(ua, "203.0.113.10") != generate_device_fingerprint(ua, "198.51.100.10")
        assert generate_device_fingerprint(ua, "203.0.113.10") != generate_device_fingerprint("curl/8.0", "203.0.113.10")

    def test_mask_for_display(self):
        assert mask_for_display("+15551234567") == "********4567"
        assert mask_for_display("123") == "123"
