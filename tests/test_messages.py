import pytest

from ekep.assertions import NULL_ASSERTION_DESCRIPTION
from ekep.buffer import Buffer, BufferReadError
from ekep.errors import AbortCode, AlertDeserializationFailed
from ekep.messages import (
    Abort,
    Assertion,
    AssertionDescription,
    AssertionOffer,
    AssertionRequest,
    ClientPrecommit,
    Finish,
    HandshakeCipher,
    IdentityType,
    PeerId,
    RecordProtocol,
    ServerPrecommit,
    pull_abort,
    pull_client_id,
    pull_client_precommit,
    pull_server_finish,
    pull_server_precommit,
    push_abort,
    push_client_finish,
    push_client_id,
    push_client_precommit,
    push_server_finish,
    push_server_precommit,
)

CHALLENGE = b"\x11" * 32

CLIENT_PRECOMMIT = bytes.fromhex(
    "6500004a"
    # versions
    "08" + "07" + "454b4550207631"
    # ciphers, record protocols
    + "020001"
    + "020001"
    # options
    + "0000"
    # offers, requests
    + "000a" + "00000001" + "03416e79" + "0000"
    + "000a" + "00000001" + "03416e79" + "0000"
    # challenge
    + "20" + "11" * 32
)

ABORT = bytes.fromhex("640000050900026869")


def test_pull_client_precommit():
    buf = Buffer(data=CLIENT_PRECOMMIT)
    precommit = pull_client_precommit(buf)
    assert buf.eof()

    assert precommit.challenge == CHALLENGE
    assert precommit.ekep_versions == ["EKEP v1"]
    assert precommit.cipher_suites == [HandshakeCipher.CURVE25519_SHA256]
    assert precommit.record_protocols == [RecordProtocol.SEAL_AES128_GCM]
    assert precommit.options == b""
    assert precommit.client_offers == [
        AssertionOffer(description=NULL_ASSERTION_DESCRIPTION)
    ]
    assert precommit.client_requests == [
        AssertionRequest(description=NULL_ASSERTION_DESCRIPTION)
    ]


def test_push_client_precommit():
    precommit = ClientPrecommit(
        challenge=CHALLENGE,
        ekep_versions=["EKEP v1"],
        cipher_suites=[HandshakeCipher.CURVE25519_SHA256],
        record_protocols=[RecordProtocol.SEAL_AES128_GCM],
        client_offers=[AssertionOffer(description=NULL_ASSERTION_DESCRIPTION)],
        client_requests=[AssertionRequest(description=NULL_ASSERTION_DESCRIPTION)],
    )
    buf = Buffer()
    push_client_precommit(buf, precommit)
    assert buf.data == CLIENT_PRECOMMIT


def test_pull_client_precommit_truncated():
    buf = Buffer(data=CLIENT_PRECOMMIT[:-1])
    with pytest.raises(BufferReadError):
        pull_client_precommit(buf)


def test_pull_client_precommit_trailing_bytes():
    # body length covers one extra byte after the challenge
    data = b"\x65\x00\x00\x4b" + CLIENT_PRECOMMIT[4:] + b"\x00"
    with pytest.raises(AlertDeserializationFailed):
        pull_client_precommit(Buffer(data=data))


def test_pull_client_precommit_non_ascii_version():
    data = bytearray(CLIENT_PRECOMMIT)
    data[6] = 0xC3
    with pytest.raises(AlertDeserializationFailed):
        pull_client_precommit(Buffer(data=bytes(data)))


def test_server_precommit():
    precommit = ServerPrecommit(
        challenge=CHALLENGE,
        selected_ekep_version="EKEP v1",
        selected_cipher_suite=HandshakeCipher.CURVE25519_SHA256,
        selected_record_protocol=RecordProtocol.SEAL_AES128_GCM,
        options=b"server options",
        server_offers=[
            AssertionOffer(
                description=AssertionDescription(
                    identity_type=IdentityType.CERT_IDENTITY, authority_type="X509"
                ),
                additional_information=b"name",
            )
        ],
        server_requests=[AssertionRequest(description=NULL_ASSERTION_DESCRIPTION)],
    )
    buf = Buffer()
    push_server_precommit(buf, precommit)
    data = buf.data
    assert data[0] == 102
    assert int.from_bytes(data[1:4], byteorder="big") == len(data) - 4

    buf = Buffer(data=data)
    assert pull_server_precommit(buf) == precommit
    assert buf.eof()


def test_client_id():
    client_id = PeerId(
        dh_public_key=b"\x09" * 32,
        assertions=[
            Assertion(description=NULL_ASSERTION_DESCRIPTION, assertion=b"asserted")
        ],
    )
    buf = Buffer()
    push_client_id(buf, client_id)
    assert buf.data[:4] == b"\x67\x00\x00\x37"

    buf = Buffer(data=buf.data)
    assert pull_client_id(buf) == client_id
    assert buf.eof()


def test_finish():
    buf = Buffer()
    push_server_finish(buf, Finish(handshake_authenticator=b"\xaa" * 32))
    assert buf.data == b"\x69\x00\x00\x21\x20" + b"\xaa" * 32

    buf = Buffer(data=buf.data)
    assert pull_server_finish(buf) == Finish(handshake_authenticator=b"\xaa" * 32)

    buf = Buffer()
    push_client_finish(buf, Finish(handshake_authenticator=b"\xbb" * 32))
    assert buf.data[0] == 106


def test_pull_abort():
    buf = Buffer(data=ABORT)
    abort = pull_abort(buf)
    assert buf.eof()
    assert abort.code == AbortCode.PROTOCOL_ERROR
    assert abort.message == "hi"


def test_push_abort():
    buf = Buffer()
    push_abort(buf, Abort(code=AbortCode.PROTOCOL_ERROR, message="hi"))
    assert buf.data == ABORT


def test_assertion_description_str():
    assert str(NULL_ASSERTION_DESCRIPTION) == "NULL_IDENTITY/Any"
    assert str(AssertionDescription(identity_type=42, authority_type="x")) == "42/x"


def test_pull_abort_empty_body():
    buf = Buffer(data=b"\x64\x00\x00\x00")
    abort = pull_abort(buf)
    assert buf.eof()
    assert abort.code == AbortCode.UNKNOWN_ERROR_CODE
    assert abort.message == ""


def test_pull_abort_truncated_message():
    # code present, message length announces more bytes than the body holds
    buf = Buffer(data=b"\x64\x00\x00\x04\x06\x00\x05h")
    abort = pull_abort(buf)
    assert buf.eof()
    assert abort.code == AbortCode.BAD_AUTHENTICATOR
    assert abort.message == ""


def test_pull_abort_trailing_bytes():
    buf = Buffer(data=b"\x64\x00\x00\x07\x09\x00\x02hi\xff\xff")
    abort = pull_abort(buf)
    assert buf.eof()
    assert abort.code == AbortCode.PROTOCOL_ERROR
    assert abort.message == "hi"
