"""
FLE Crypto Core — value serialization, AEAD transform and ciphertext envelopes.

Implements AEAD_AES_256_CBC_HMAC_SHA_512 over single BSON values:
- Data keys are 96 bytes: [enc_key 32B][mac_key 32B][iv_key 32B]
- Deterministic IV: HMAC-SHA512(iv_key, AD | AL | plaintext)[:16]
- Random IV: 16 fresh random bytes per call
- Tag: HMAC-SHA512(mac_key, AD | IV | C | AL)[:32]

Envelope (bson Binary subtype 6):
    [blob_subtype 1B][key_uuid 16B][bson_type 1B][IV 16B][C][tag 32B]
The first 18 bytes are the associated data.

Security Note:
    Never log plaintext, ciphertext or key material. Key ids are fine.
"""
import os
import enum
import struct
import logging
from typing import Any, NamedTuple

from bson import decode as bson_decode, encode as bson_encode
from bson.binary import Binary, UuidRepresentation
from bson.codec_options import CodecOptions
from cryptography.hazmat.primitives import constant_time, hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .exceptions import DecryptionError, SchemaMismatchError

logger = logging.getLogger("navigator.fle")

ENCRYPTED_SUBTYPE = 6
UUID_SUBTYPE = 4
KEY_LENGTH = 96  # enc + mac + iv keys
SUBKEY_LENGTH = 32
IV_SIZE = 16
TAG_SIZE = 32
KEY_ID_SIZE = 16
HEADER_SIZE = 1 + KEY_ID_SIZE + 1

CODEC_OPTIONS = CodecOptions(uuid_representation=UuidRepresentation.STANDARD)

# BSON element type bytes
BSON_DOUBLE = 0x01
BSON_STRING = 0x02
BSON_DOCUMENT = 0x03
BSON_ARRAY = 0x04
BSON_BINARY = 0x05
BSON_UNDEFINED = 0x06
BSON_OBJECTID = 0x07
BSON_BOOL = 0x08
BSON_DATETIME = 0x09
BSON_NULL = 0x0A
BSON_REGEX = 0x0B
BSON_CODE = 0x0D
BSON_CODE_W_SCOPE = 0x0F
BSON_INT32 = 0x10
BSON_TIMESTAMP = 0x11
BSON_INT64 = 0x12
BSON_DECIMAL128 = 0x13
BSON_MAXKEY = 0x7F
BSON_MINKEY = 0xFF

BSON_TYPE_ALIASES = {
    "double": BSON_DOUBLE,
    "string": BSON_STRING,
    "object": BSON_DOCUMENT,
    "array": BSON_ARRAY,
    "binData": BSON_BINARY,
    "objectId": BSON_OBJECTID,
    "bool": BSON_BOOL,
    "date": BSON_DATETIME,
    "null": BSON_NULL,
    "regex": BSON_REGEX,
    "javascript": BSON_CODE,
    "javascriptWithScope": BSON_CODE_W_SCOPE,
    "int": BSON_INT32,
    "timestamp": BSON_TIMESTAMP,
    "long": BSON_INT64,
    "decimal": BSON_DECIMAL128,
    "minKey": BSON_MINKEY,
    "maxKey": BSON_MAXKEY,
}

# Types without a stable encoding for equality comparison.
DETERMINISTIC_PROHIBITED = frozenset({
    BSON_DOUBLE, BSON_DECIMAL128, BSON_BOOL,
    BSON_DOCUMENT, BSON_ARRAY, BSON_CODE_W_SCOPE,
})
ALWAYS_PROHIBITED = frozenset({
    BSON_NULL, BSON_UNDEFINED, BSON_MINKEY, BSON_MAXKEY,
})


class Algorithm(str, enum.Enum):
    """Supported field encryption algorithms."""

    DETERMINISTIC = "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"
    RANDOM = "AEAD_AES_256_CBC_HMAC_SHA_512-Random"

    @property
    def blob_subtype(self) -> int:
        return 1 if self is Algorithm.DETERMINISTIC else 2

    @classmethod
    def from_blob_subtype(cls, value: int) -> "Algorithm":
        if value == 1:
            return cls.DETERMINISTIC
        if value == 2:
            return cls.RANDOM
        raise DecryptionError(f"Unknown ciphertext blob subtype {value}")


class CiphertextEnvelope(NamedTuple):
    """Parsed view over a subtype 6 Binary."""

    algorithm: Algorithm
    key_id: Binary
    bson_type: int
    payload: bytes  # IV + C + tag
    associated_data: bytes


def generate_data_key() -> bytes:
    """Return fresh random material for a new data encryption key."""
    return os.urandom(KEY_LENGTH)


def is_ciphertext(value: Any) -> bool:
    return isinstance(value, Binary) and value.subtype == ENCRYPTED_SUBTYPE


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> tuple[int, bytes]:
    """Encode a single Python value as a BSON element value.

    Returns:
        Tuple of (bson_type, value_bytes).
    """
    doc = bson_encode({"": value}, codec_options=CODEC_OPTIONS)
    # [int32 size][type][cstring ""=\x00][value ...][\x00]
    return doc[4], doc[6:-1]


def deserialize_value(bson_type: int, data: bytes) -> Any:
    """Rebuild a Python value from its BSON type byte and value bytes."""
    body = bytes([bson_type]) + b"\x00" + data
    doc = struct.pack("<i", len(body) + 5) + body + b"\x00"
    return bson_decode(doc, codec_options=CODEC_OPTIONS)[""]


def bson_type_of(value: Any) -> int:
    """BSON type byte the value would be serialized as."""
    return serialize_value(value)[0]


def check_encryptable(value: Any, algorithm: Algorithm, path: str = "") -> int:
    """Validate that ``value`` can be encrypted with ``algorithm``.

    Returns:
        The BSON type byte of the value.

    Raises:
        SchemaMismatchError: If the type is not allowed for the algorithm.
    """
    bson_type = bson_type_of(value)
    if bson_type in ALWAYS_PROHIBITED:
        raise SchemaMismatchError(
            f"Cannot encrypt field '{path}': BSON type 0x{bson_type:02x} "
            f"is never encryptable"
        )
    if algorithm is Algorithm.DETERMINISTIC and bson_type in DETERMINISTIC_PROHIBITED:
        raise SchemaMismatchError(
            f"Cannot deterministically encrypt field '{path}': BSON type "
            f"0x{bson_type:02x} is not comparable"
        )
    return bson_type


# ---------------------------------------------------------------------------
# AEAD_AES_256_CBC_HMAC_SHA_512
# ---------------------------------------------------------------------------

def _split_key(key: bytes) -> tuple[bytes, bytes, bytes]:
    if len(key) != KEY_LENGTH:
        raise ValueError(
            f"Data key must be {KEY_LENGTH} bytes, got {len(key)}"
        )
    return (
        key[:SUBKEY_LENGTH],
        key[SUBKEY_LENGTH:2 * SUBKEY_LENGTH],
        key[2 * SUBKEY_LENGTH:],
    )


def _mac(mac_key: bytes, *parts: bytes) -> bytes:
    h = hmac.HMAC(mac_key, hashes.SHA512())
    for part in parts:
        h.update(part)
    return h.finalize()


def _al(associated_data: bytes) -> bytes:
    return struct.pack(">Q", len(associated_data) * 8)


def derive_iv(key: bytes, plaintext: bytes, associated_data: bytes) -> bytes:
    """Deterministic IV, a pure function of (key, AD, plaintext)."""
    _, _, iv_key = _split_key(key)
    return _mac(iv_key, associated_data, _al(associated_data), plaintext)[:IV_SIZE]


def aead_encrypt(
    key: bytes,
    plaintext: bytes,
    associated_data: bytes,
    iv: bytes,
) -> bytes:
    """Encrypt and authenticate. Output: [IV 16B][C][tag 32B]."""
    enc_key, mac_key, _ = _split_key(key)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    ct = encryptor.update(padded) + encryptor.finalize()
    tag = _mac(mac_key, associated_data, iv, ct, _al(associated_data))[:TAG_SIZE]
    return iv + ct + tag


def aead_decrypt(key: bytes, data: bytes, associated_data: bytes) -> bytes:
    """Verify and decrypt ``[IV][C][tag]``.

    Raises:
        DecryptionError: If the tag does not verify or the payload is malformed.
    """
    _min = IV_SIZE + 16 + TAG_SIZE  # IV + one AES block + tag
    if len(data) < _min or (len(data) - IV_SIZE - TAG_SIZE) % 16:
        raise DecryptionError(
            f"Ciphertext has invalid length: {len(data)} bytes"
        )
    enc_key, mac_key, _ = _split_key(key)
    iv = data[:IV_SIZE]
    ct = data[IV_SIZE:-TAG_SIZE]
    tag = data[-TAG_SIZE:]
    expected = _mac(mac_key, associated_data, iv, ct, _al(associated_data))[:TAG_SIZE]
    if not constant_time.bytes_eq(tag, expected):
        raise DecryptionError("HMAC validation failure")
    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ct) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as err:
        raise DecryptionError("Invalid padding") from err


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

def _key_id_bytes(key_id: Binary) -> bytes:
    if not isinstance(key_id, Binary) or key_id.subtype != UUID_SUBTYPE:
        raise TypeError("key_id must be a bson Binary with UUID subtype 4")
    if len(key_id) != KEY_ID_SIZE:
        raise TypeError(f"key_id must be {KEY_ID_SIZE} bytes")
    return bytes(key_id)


def build_associated_data(algorithm: Algorithm, key_id: Binary, bson_type: int) -> bytes:
    return bytes([algorithm.blob_subtype]) + _key_id_bytes(key_id) + bytes([bson_type])


def encrypt_value(
    value: Any,
    key: bytes,
    key_id: Binary,
    algorithm: Algorithm,
    path: str = "",
) -> Binary:
    """Encrypt a single value into a subtype 6 Binary.

    Args:
        value: Python value (any BSON-encodable type allowed by ``algorithm``).
        key: Raw 96-byte data key.
        key_id: UUID Binary of the data key, embedded in the envelope.
        algorithm: Deterministic or random variant.
        path: Field path, only used in error messages.

    Returns:
        Ciphertext envelope.
    """
    algorithm = Algorithm(algorithm)
    bson_type = check_encryptable(value, algorithm, path)
    _, plaintext = serialize_value(value)
    ad = build_associated_data(algorithm, key_id, bson_type)
    if algorithm is Algorithm.DETERMINISTIC:
        iv = derive_iv(key, plaintext, ad)
    else:
        iv = os.urandom(IV_SIZE)
    payload = aead_encrypt(key, plaintext, ad, iv)
    return Binary(ad + payload, ENCRYPTED_SUBTYPE)


def parse_envelope(envelope: Binary) -> CiphertextEnvelope:
    """Split a subtype 6 Binary into its header fields and payload.

    Raises:
        DecryptionError: If the value is not a well-formed envelope.
    """
    if not is_ciphertext(envelope):
        raise DecryptionError("Value is not a subtype 6 ciphertext envelope")
    raw = bytes(envelope)
    if len(raw) < HEADER_SIZE:
        raise DecryptionError(
            f"Ciphertext envelope too short: {len(raw)} bytes"
        )
    algorithm = Algorithm.from_blob_subtype(raw[0])
    key_id = Binary(raw[1:1 + KEY_ID_SIZE], UUID_SUBTYPE)
    return CiphertextEnvelope(
        algorithm=algorithm,
        key_id=key_id,
        bson_type=raw[HEADER_SIZE - 1],
        payload=raw[HEADER_SIZE:],
        associated_data=raw[:HEADER_SIZE],
    )


def decrypt_value(envelope: Binary, key: bytes) -> Any:
    """Decrypt a ciphertext envelope back to the original value.

    Raises:
        DecryptionError: Authentication failure, wrong key or corrupt envelope.
    """
    parsed = parse_envelope(envelope)
    try:
        plaintext = aead_decrypt(key, parsed.payload, parsed.associated_data)
    except DecryptionError as err:
        raise DecryptionError(str(err), key_id=parsed.key_id) from err
    except ValueError as err:
        raise DecryptionError("Decryption failed", key_id=parsed.key_id) from err
    try:
        return deserialize_value(parsed.bson_type, plaintext)
    except Exception as err:
        raise DecryptionError(
            "Decrypted payload is not a valid BSON value", key_id=parsed.key_id,
        ) from err
