import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import AlertBadHandshakeCipher, AlertBadRecordProtocol, AlertProtocolError
from .messages import HandshakeCipher, RecordProtocol

CIPHER_SUITES: Dict = {
    HandshakeCipher.CURVE25519_SHA256: hashes.SHA256,
}

DH_PUBLIC_KEY_SIZES: Dict = {
    HandshakeCipher.CURVE25519_SHA256: 32,
}

RECORD_PROTOCOL_KEY_SIZES: Dict = {
    RecordProtocol.SEAL_AES128_GCM: 16,
}

_CURVE25519_P = 2**255 - 19

# u-coordinates of small-order or non-canonical Curve25519 points
CURVE25519_BLOCKLIST = frozenset(
    value.to_bytes(32, byteorder="little")
    for value in (0, 1, _CURVE25519_P - 1, _CURVE25519_P, _CURVE25519_P + 1)
)

DhPrivateKey = x25519.X25519PrivateKey


class SecretBytes:
    """
    Holds secret material in a bytearray so it can be wiped in place.

    Values handed out by `bytes()` are copies; only the held buffer is wiped.
    """

    __slots__ = ("_buf",)

    def __init__(self, data: Union[bytes, bytearray]) -> None:
        self._buf = bytearray(data)

    def bytes(self) -> bytes:
        return bytes(self._buf)

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0

    @property
    def wiped(self) -> bool:
        return not any(self._buf)

    def __len__(self) -> int:
        return len(self._buf)


def wipe_secret(secret: Optional[SecretBytes]) -> None:
    if secret is not None:
        secret.wipe()


def hkdf_label(label: bytes, hash_value: bytes, length: int) -> bytes:
    full_label = b"EKEP v1 " + label
    return (
        struct.pack("!HB", length, len(full_label))
        + full_label
        + struct.pack("!B", len(hash_value))
        + hash_value
    )


def hkdf_expand_label(
    algorithm: hashes.HashAlgorithm,
    secret: bytes,
    label: bytes,
    hash_value: bytes,
    length: int,
) -> bytes:
    return HKDFExpand(
        algorithm=algorithm,
        length=length,
        info=hkdf_label(label, hash_value, length),
    ).derive(secret)


def hkdf_extract(
    algorithm: hashes.HashAlgorithm, salt: bytes, key_material: bytes
) -> bytes:
    h = hmac.HMAC(salt, algorithm)
    h.update(key_material)
    return h.finalize()


def cipher_suite_hash(cipher_suite: int) -> hashes.HashAlgorithm:
    try:
        return CIPHER_SUITES[cipher_suite]()
    except KeyError:
        raise AlertBadHandshakeCipher(f"Handshake cipher {cipher_suite} is not supported")


def record_protocol_key_size(record_protocol: int) -> int:
    try:
        return RECORD_PROTOCOL_KEY_SIZES[record_protocol]
    except KeyError:
        raise AlertBadRecordProtocol(
            f"Record protocol {record_protocol} is not supported"
        )


def generate_keypair(cipher_suite: int) -> Tuple[DhPrivateKey, bytes]:
    """
    Generate an ephemeral Diffie-Hellman key pair for `cipher_suite`.

    Returns the private key and the encoded public value.
    """
    if cipher_suite == HandshakeCipher.CURVE25519_SHA256:
        private_key = x25519.X25519PrivateKey.generate()
        public_bytes = private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        return private_key, public_bytes

    raise AlertBadHandshakeCipher(f"Handshake cipher {cipher_suite} is not supported")


def check_public_key(cipher_suite: int, public_bytes: bytes) -> None:
    """
    Check that a peer's public value is well-formed for `cipher_suite`.
    """
    expected_size = DH_PUBLIC_KEY_SIZES.get(cipher_suite)
    if expected_size is None:
        raise AlertBadHandshakeCipher(f"Handshake cipher {cipher_suite} is not supported")
    if len(public_bytes) != expected_size:
        raise AlertProtocolError(
            f"DH public key is {len(public_bytes)} bytes, expected {expected_size}"
        )
    if (
        cipher_suite == HandshakeCipher.CURVE25519_SHA256
        and public_bytes in CURVE25519_BLOCKLIST
    ):
        raise AlertProtocolError("DH public key is a low-order point")


def compute_shared_secret(
    cipher_suite: int, private_key: DhPrivateKey, peer_public_bytes: bytes
) -> SecretBytes:
    check_public_key(cipher_suite, peer_public_bytes)

    peer_public_key = x25519.X25519PublicKey.from_public_bytes(peer_public_bytes)
    try:
        shared_key = private_key.exchange(peer_public_key)
    except ValueError:
        # OpenSSL refuses an all-zero result, i.e. a small-order peer point.
        raise AlertProtocolError("DH key exchange produced an invalid shared secret")
    return SecretBytes(shared_key)


@dataclass
class HandshakeSecrets:
    client_authenticator_secret: SecretBytes
    server_authenticator_secret: SecretBytes
    client_write_key: SecretBytes
    server_write_key: SecretBytes

    def wipe(self) -> None:
        self.client_authenticator_secret.wipe()
        self.server_authenticator_secret.wipe()
        self.client_write_key.wipe()
        self.server_write_key.wipe()


def _expand_secret(
    algorithm: hashes.HashAlgorithm,
    prk: SecretBytes,
    label: bytes,
    transcript_hash: bytes,
    length: int,
) -> SecretBytes:
    return SecretBytes(
        hkdf_expand_label(
            algorithm=algorithm,
            secret=prk.bytes(),
            label=label,
            hash_value=transcript_hash,
            length=length,
        )
    )


def derive_secrets(
    cipher_suite: int,
    record_protocol: int,
    shared_secret: SecretBytes,
    transcript_hash: bytes,
) -> HandshakeSecrets:
    """
    Expand the DH shared secret into the role-scoped authenticator secrets
    and the record protocol keys.

    Every value is bound to `transcript_hash`, the transcript through the
    ServerId message.
    """
    algorithm = cipher_suite_hash(cipher_suite)
    key_size = record_protocol_key_size(record_protocol)

    prk = SecretBytes(
        hkdf_extract(
            algorithm=algorithm,
            salt=bytes(algorithm.digest_size),
            key_material=shared_secret.bytes(),
        )
    )
    try:
        return HandshakeSecrets(
            client_authenticator_secret=_expand_secret(
                algorithm,
                prk,
                b"client authenticator",
                transcript_hash,
                algorithm.digest_size,
            ),
            server_authenticator_secret=_expand_secret(
                algorithm,
                prk,
                b"server authenticator",
                transcript_hash,
                algorithm.digest_size,
            ),
            client_write_key=_expand_secret(
                algorithm, prk, b"client write key", transcript_hash, key_size
            ),
            server_write_key=_expand_secret(
                algorithm, prk, b"server write key", transcript_hash, key_size
            ),
        )
    finally:
        prk.wipe()
