from typing import List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .errors import AlertBadAuthenticator

SERVER_FINISH_LABEL = b"EKEP Handshake v1: Server Finish"
CLIENT_FINISH_LABEL = b"EKEP Handshake v1: Client Finish"


class Transcript:
    """
    Append-only log of the serialized handshake frames.

    The ClientPrecommit is exchanged before the handshake cipher, and so the
    hash function, is known. Entries are kept and replayed into a running
    hash once :meth:`select` is called.
    """

    def __init__(self) -> None:
        self._entries: List[bytes] = []
        self._hash: Optional[hashes.Hash] = None
        self.algorithm: Optional[hashes.HashAlgorithm] = None

    @property
    def entries(self) -> Tuple[bytes, ...]:
        return tuple(self._entries)

    def append(self, data: bytes) -> None:
        data = bytes(data)
        self._entries.append(data)
        if self._hash is not None:
            self._hash.update(data)

    def select(self, algorithm: hashes.HashAlgorithm) -> None:
        assert self._hash is None, "transcript hash is already selected"
        self.algorithm = algorithm
        self._hash = hashes.Hash(algorithm)
        for data in self._entries:
            self._hash.update(data)

    def hash_value(self) -> bytes:
        assert self._hash is not None, "transcript hash is not selected"
        return self._hash.copy().finalize()

    def finish_authenticator(self, secret: bytes, label: bytes) -> bytes:
        """
        Compute HMAC-H(secret, label || H(transcript)) over the transcript as
        it stands now.
        """
        return self._authenticator_hmac(secret, label).finalize()

    def verify_authenticator(
        self, secret: bytes, label: bytes, authenticator: bytes
    ) -> None:
        try:
            self._authenticator_hmac(secret, label).verify(authenticator)
        except InvalidSignature:
            raise AlertBadAuthenticator(
                f"{label.decode('ascii')} authenticator is incorrect"
            )

    def _authenticator_hmac(self, secret: bytes, label: bytes) -> hmac.HMAC:
        h = hmac.HMAC(secret, self.algorithm)
        h.update(label)
        h.update(self.hash_value())
        return h
