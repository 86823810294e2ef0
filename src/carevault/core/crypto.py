"""
CareVault Crypto Primitives
AES-256-GCM field encryption, DEK wrapping, hashing and one-time code helpers.

Encrypted values are self-describing strings:

    enc:v1:<key identifier>:<iv b64>:<auth tag b64>:<ciphertext b64>

so the key that produced a ciphertext can always be recovered from the
ciphertext itself, which keeps historical values decryptable after rotation.
"""

import base64
import binascii
import hashlib
import hmac
import ipaddress
import secrets
import time
from dataclasses import dataclass
from typing import Optional

import pyotp
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

ALGORITHM = "AES-256-GCM"
IV_LENGTH = 12  # 96-bit nonce for GCM
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32  # 256-bit keys
ENCRYPTED_PREFIX = "enc:v1:"
MASTER_KEY_ID = "master"

OTP_LENGTH = 6
BACKUP_CODE_BYTES = 4  # 8 hex characters


class CryptoError(Exception):
    """Encryption-related errors"""
    pass


@dataclass(frozen=True)
class EncryptedData:
    """Parsed components of an encrypted value"""
    version: str
    key_id: str
    iv: str
    auth_tag: str
    ciphertext: str


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise CryptoError(f"Invalid base64 data: {e}") from e


# ============================================
# Keys
# ============================================

def generate_encryption_key() -> str:
    """Generate a new base64 encoded 256-bit data encryption key"""
    return _b64encode(AESGCM.generate_key(bit_length=256))


def decode_key(encoded_key: str) -> bytes:
    """Decode a base64 key and check its length"""
    key = _b64decode(encoded_key)
    if len(key) != KEY_LENGTH:
        raise CryptoError(
            f"Invalid encryption key length. Expected {KEY_LENGTH} bytes, got {len(key)}"
        )
    return key


def validate_encryption_key(encoded_key: str) -> bool:
    try:
        decode_key(encoded_key)
        return True
    except CryptoError:
        return False


def _to_base36(number: int) -> str:
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(alphabet[rem])
    return "".join(reversed(digits))


def generate_key_identifier(purpose: str) -> str:
    """Opaque key identifier derived from the key purpose"""
    timestamp = _to_base36(int(time.time() * 1000))
    return f"{purpose.lower()}_{timestamp}_{secrets.token_hex(4)}"


def key_fingerprint(encoded_key: str) -> str:
    """Non-reversible fingerprint of a key for operator verification"""
    return hashlib.sha256(encoded_key.encode("utf-8")).hexdigest()[:16]


# ============================================
# Field encryption
# ============================================

def encrypt(plaintext: str, key: bytes, key_id: str) -> str:
    """
    Encrypt a value with AES-256-GCM

    Args:
        plaintext: Value to encrypt
        key: Raw 32-byte key
        key_id: Identifier embedded in the output for later key lookup

    Returns:
        Encrypted string in format enc:v1:keyId:iv:authTag:ciphertext
    """
    if len(key) != KEY_LENGTH:
        raise CryptoError("Invalid encryption key length")
    if ":" in key_id:
        raise CryptoError("Key identifier must not contain ':'")

    iv = secrets.token_bytes(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)

    # cryptography appends the tag to the ciphertext
    ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

    return (
        f"{ENCRYPTED_PREFIX}{key_id}:{_b64encode(iv)}:"
        f"{_b64encode(auth_tag)}:{_b64encode(ciphertext)}"
    )


def decrypt(encrypted_value: str, key: bytes) -> str:
    """
    Decrypt a value produced by encrypt()

    Raises:
        CryptoError: malformed input, wrong key or tampered ciphertext
    """
    parsed = parse_encrypted_data(encrypted_value)
    if parsed is None:
        raise CryptoError("Invalid encrypted data format")
    if len(key) != KEY_LENGTH:
        raise CryptoError("Invalid encryption key length")

    iv = _b64decode(parsed.iv)
    auth_tag = _b64decode(parsed.auth_tag)
    ciphertext = _b64decode(parsed.ciphertext)
    if len(iv) != IV_LENGTH or len(auth_tag) != AUTH_TAG_LENGTH:
        raise CryptoError("Invalid IV or authentication tag length")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
    except InvalidTag as e:
        raise CryptoError("Decryption failed: authentication tag mismatch") from e

    return plaintext.decode("utf-8")


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


def parse_encrypted_data(encrypted_value: Optional[str]) -> Optional[EncryptedData]:
    """Split an encrypted value into its components, None if it is not one"""
    if not is_encrypted(encrypted_value):
        return None

    parts = encrypted_value[len(ENCRYPTED_PREFIX):].split(":")
    if len(parts) != 4 or not parts[0]:
        return None

    return EncryptedData(
        version="v1",
        key_id=parts[0],
        iv=parts[1],
        auth_tag=parts[2],
        ciphertext=parts[3],
    )


def extract_key_id(encrypted_value: Optional[str]) -> Optional[str]:
    parsed = parse_encrypted_data(encrypted_value)
    return parsed.key_id if parsed else None


def wrap_key(data_encryption_key: str, master_key: bytes) -> str:
    """Encrypt a base64 DEK under the master key"""
    return encrypt(data_encryption_key, master_key, MASTER_KEY_ID)


def unwrap_key(wrapped_key: str, master_key: bytes) -> bytes:
    """Decrypt a wrapped DEK and return the raw key bytes"""
    return decode_key(decrypt(wrapped_key, master_key))


# ============================================
# Hashing and comparison
# ============================================

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def secure_compare(a: str, b: str) -> bool:
    """Timing-safe string comparison"""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ============================================
# One-time codes
# ============================================

def generate_totp_secret() -> str:
    return pyotp.random_base32()


def generate_totp_uri(secret: str, account_name: str, issuer_name: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer_name)


def verify_totp(secret: str, code: str, for_time=None, valid_window: int = 1) -> bool:
    """Verify a TOTP code within +/- valid_window time steps"""
    if not code or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret)
    if for_time is None:
        return totp.verify(code, valid_window=valid_window)
    return totp.verify(code, for_time=for_time, valid_window=valid_window)


def generate_otp(length: int = OTP_LENGTH) -> str:
    """Numeric one-time code for SMS/email delivery"""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_code(code: str) -> str:
    """Hash an OTP or backup code for storage (normalized, case-insensitive)"""
    return sha256_hex(code.strip().upper())


def generate_backup_codes(count: int) -> list:
    return [secrets.token_hex(BACKUP_CODE_BYTES).upper() for _ in range(count)]


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def hash_session_token(token: str) -> str:
    return sha256_hex(token)


# ============================================
# Devices
# ============================================

def network_class(ip_address: Optional[str]) -> str:
    """Coarse network of an address: /24 for IPv4, /64 for IPv6"""
    if not ip_address:
        return "unknown"
    try:
        ip = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return ip_address.strip()
    prefix = 24 if ip.version == 4 else 64
    return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False))


def generate_device_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """Fingerprint of a browser on a network, used to bind trusted-device tokens"""
    data = f"{user_agent or ''}|{network_class(ip_address)}"
    return sha256_hex(data)[:32]


# ============================================
# Display helpers
# ============================================

def mask_for_display(value: str, show_last: int = 4, mask_char: str = "*") -> str:
    if not value or len(value) <= show_last:
        return value
    return mask_char * (len(value) - show_last) + value[-show_last:]
