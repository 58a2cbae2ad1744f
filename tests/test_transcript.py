import hashlib
import hmac as std_hmac

import pytest
from cryptography.hazmat.primitives import hashes

from ekep.errors import AlertBadAuthenticator
from ekep.transcript import CLIENT_FINISH_LABEL, SERVER_FINISH_LABEL, Transcript


def test_select_replays_entries():
    transcript = Transcript()
    transcript.append(b"client precommit")
    transcript.select(hashes.SHA256())
    transcript.append(b"server precommit")

    assert transcript.entries == (b"client precommit", b"server precommit")
    assert transcript.hash_value() == (
        hashlib.sha256(b"client precommitserver precommit").digest()
    )


def test_hash_value_does_not_finalize():
    transcript = Transcript()
    transcript.select(hashes.SHA256())
    transcript.append(b"a")
    first = transcript.hash_value()
    assert transcript.hash_value() == first

    transcript.append(b"b")
    assert transcript.hash_value() != first


def test_select_twice():
    transcript = Transcript()
    transcript.select(hashes.SHA256())
    with pytest.raises(AssertionError):
        transcript.select(hashes.SHA256())


def test_finish_authenticator():
    transcript = Transcript()
    transcript.select(hashes.SHA256())
    transcript.append(b"frame")
    secret = b"\x42" * 32

    expected = std_hmac.new(
        secret, SERVER_FINISH_LABEL + hashlib.sha256(b"frame").digest(), "sha256"
    ).digest()
    assert transcript.finish_authenticator(secret, SERVER_FINISH_LABEL) == expected
    assert transcript.finish_authenticator(secret, CLIENT_FINISH_LABEL) != expected

    transcript.verify_authenticator(secret, SERVER_FINISH_LABEL, expected)


def test_verify_authenticator_mismatch():
    transcript = Transcript()
    transcript.select(hashes.SHA256())
    transcript.append(b"frame")
    secret = b"\x42" * 32
    authenticator = transcript.finish_authenticator(secret, CLIENT_FINISH_LABEL)

    tampered = authenticator[:-1] + bytes([authenticator[-1] ^ 1])
    with pytest.raises(AlertBadAuthenticator):
        transcript.verify_authenticator(secret, CLIENT_FINISH_LABEL, tampered)

    # the authenticator depends on the transcript
    transcript.append(b"another frame")
    with pytest.raises(AlertBadAuthenticator):
        transcript.verify_authenticator(secret, CLIENT_FINISH_LABEL, authenticator)


def test_verify_authenticator_wrong_secret():
    transcript = Transcript()
    transcript.select(hashes.SHA256())
    transcript.append(b"frame")
    authenticator = transcript.finish_authenticator(b"\x42" * 32, SERVER_FINISH_LABEL)

    with pytest.raises(AlertBadAuthenticator):
        transcript.verify_authenticator(b"\x43" * 32, SERVER_FINISH_LABEL, authenticator)
