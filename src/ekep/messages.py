from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from functools import partial
from typing import Callable, Generator, List, Sequence, TypeVar

from .buffer import Buffer, BufferReadError
from .errors import AbortCode, AlertDeserializationFailed

EKEP_VERSION_1 = "EKEP v1"

CHALLENGE_SIZE = 32

# uint8 message type followed by a uint24 body length
FRAME_HEADER_SIZE = 4

T = TypeVar("T")


class HandshakeMessageType(IntEnum):
    UNKNOWN_HANDSHAKE_MESSAGE = 0
    ABORT = 100
    CLIENT_PRECOMMIT = 101
    SERVER_PRECOMMIT = 102
    CLIENT_ID = 103
    SERVER_ID = 104
    SERVER_FINISH = 105
    CLIENT_FINISH = 106


class HandshakeCipher(IntEnum):
    UNKNOWN_HANDSHAKE_CIPHER = 0
    # X25519 key agreement, 32-byte RFC 7748 u-coordinates, SHA-256
    CURVE25519_SHA256 = 1


class RecordProtocol(IntEnum):
    UNKNOWN_RECORD_PROTOCOL = 0
    # SEAL record protocol, 128-bit AES keys in GCM mode
    SEAL_AES128_GCM = 1


class IdentityType(IntEnum):
    UNKNOWN_IDENTITY = 0
    NULL_IDENTITY = 1
    CODE_IDENTITY = 2
    CERT_IDENTITY = 3


# BLOCKS


@contextmanager
def pull_block(buf: Buffer, capacity: int) -> Generator:
    length = int.from_bytes(buf.pull_bytes(capacity), byteorder="big")
    end = buf.tell() + length
    yield length
    if buf.tell() != end:
        # There was trailing garbage or our parsing was bad.
        raise AlertDeserializationFailed("extra bytes at the end of a block")


@contextmanager
def push_block(buf: Buffer, capacity: int) -> Generator:
    """
    Context manager to push a variable-length block, with `capacity` bytes
    to write the length.
    """
    start = buf.tell() + capacity
    buf.seek(start)
    yield
    end = buf.tell()
    length = end - start
    buf.seek(start - capacity)
    buf.push_bytes(length.to_bytes(capacity, byteorder="big"))
    buf.seek(end)


# LISTS


def pull_list(buf: Buffer, capacity: int, func: Callable[[], T]) -> List[T]:
    """
    Pull a list of items.
    """
    items = []
    with pull_block(buf, capacity) as length:
        end = buf.tell() + length
        while buf.tell() < end:
            items.append(func())
    return items


def push_list(
    buf: Buffer, capacity: int, func: Callable[[T], None], values: Sequence[T]
) -> None:
    """
    Push a list of items.
    """
    with push_block(buf, capacity):
        for value in values:
            func(value)


def pull_opaque(buf: Buffer, capacity: int) -> bytes:
    """
    Pull an opaque value prefixed by a length.
    """
    with pull_block(buf, capacity) as length:
        return buf.pull_bytes(length)


def push_opaque(buf: Buffer, capacity: int, value: bytes) -> None:
    """
    Push an opaque value prefix by a length.
    """
    with push_block(buf, capacity):
        buf.push_bytes(value)


def pull_string(buf: Buffer, capacity: int, encoding: str = "ascii") -> str:
    try:
        return pull_opaque(buf, capacity).decode(encoding)
    except UnicodeDecodeError:
        raise AlertDeserializationFailed(f"string is not valid {encoding}")


def push_string(buf: Buffer, capacity: int, value: str, encoding: str = "ascii") -> None:
    push_opaque(buf, capacity, value.encode(encoding))


# ASSERTIONS


@dataclass(frozen=True)
class AssertionDescription:
    identity_type: int
    authority_type: str

    def __str__(self) -> str:
        try:
            identity_name = IdentityType(self.identity_type).name
        except ValueError:
            identity_name = str(self.identity_type)
        return f"{identity_name}/{self.authority_type}"


@dataclass(frozen=True)
class AssertionOffer:
    description: AssertionDescription
    additional_information: bytes = b""


@dataclass(frozen=True)
class AssertionRequest:
    description: AssertionDescription
    additional_information: bytes = b""


@dataclass(frozen=True)
class Assertion:
    description: AssertionDescription
    assertion: bytes = b""


def pull_assertion_description(buf: Buffer) -> AssertionDescription:
    return AssertionDescription(
        identity_type=buf.pull_uint32(), authority_type=pull_string(buf, 1)
    )


def push_assertion_description(buf: Buffer, value: AssertionDescription) -> None:
    buf.push_uint32(value.identity_type)
    push_string(buf, 1, value.authority_type)


def pull_assertion_offer(buf: Buffer) -> AssertionOffer:
    return AssertionOffer(
        description=pull_assertion_description(buf),
        additional_information=pull_opaque(buf, 2),
    )


def push_assertion_offer(buf: Buffer, value: AssertionOffer) -> None:
    push_assertion_description(buf, value.description)
    push_opaque(buf, 2, value.additional_information)


def pull_assertion_request(buf: Buffer) -> AssertionRequest:
    return AssertionRequest(
        description=pull_assertion_description(buf),
        additional_information=pull_opaque(buf, 2),
    )


def push_assertion_request(buf: Buffer, value: AssertionRequest) -> None:
    push_assertion_description(buf, value.description)
    push_opaque(buf, 2, value.additional_information)


def pull_assertion(buf: Buffer) -> Assertion:
    return Assertion(
        description=pull_assertion_description(buf), assertion=pull_opaque(buf, 2)
    )


def push_assertion(buf: Buffer, value: Assertion) -> None:
    push_assertion_description(buf, value.description)
    push_opaque(buf, 2, value.assertion)


# MESSAGES


def pull_handshake_type(buf: Buffer, expected_type: HandshakeMessageType) -> None:
    """
    Pull the message type and assert it is the expected one.

    If it is not, we have a programming error.
    """

    message_type = buf.pull_uint8()
    assert message_type == expected_type


@dataclass
class Abort:
    code: int = AbortCode.UNKNOWN_ERROR_CODE
    message: str = ""


def pull_abort(buf: Buffer) -> Abort:
    """
    Pull an Abort frame.

    Both fields are optional, so a short body yields the defaults and
    trailing bytes are ignored. Only the frame header must be complete.
    """
    pull_handshake_type(buf, HandshakeMessageType.ABORT)
    body = Buffer(data=buf.pull_bytes(buf.pull_uint24()))

    abort = Abort()
    if not body.eof():
        abort.code = body.pull_uint8()
    try:
        abort.message = pull_opaque(body, 2).decode("utf-8", errors="replace")
    except BufferReadError:
        pass
    return abort


def push_abort(buf: Buffer, abort: Abort) -> None:
    buf.push_uint8(HandshakeMessageType.ABORT)
    with push_block(buf, 3):
        buf.push_uint8(abort.code)
        message = abort.message.encode("utf-8")[:0xFFFF]
        push_opaque(buf, 2, message)


@dataclass
class ClientPrecommit:
    challenge: bytes
    ekep_versions: List[str] = field(default_factory=list)
    cipher_suites: List[int] = field(default_factory=list)
    record_protocols: List[int] = field(default_factory=list)
    options: bytes = b""
    client_offers: List[AssertionOffer] = field(default_factory=list)
    client_requests: List[AssertionRequest] = field(default_factory=list)


def pull_client_precommit(buf: Buffer) -> ClientPrecommit:
    pull_handshake_type(buf, HandshakeMessageType.CLIENT_PRECOMMIT)
    with pull_block(buf, 3):
        ekep_versions = pull_list(buf, 1, partial(pull_string, buf, 1))
        cipher_suites = pull_list(buf, 1, buf.pull_uint16)
        record_protocols = pull_list(buf, 1, buf.pull_uint16)
        options = pull_opaque(buf, 2)
        client_offers = pull_list(buf, 2, partial(pull_assertion_offer, buf))
        client_requests = pull_list(buf, 2, partial(pull_assertion_request, buf))
        challenge = pull_opaque(buf, 1)

    return ClientPrecommit(
        challenge=challenge,
        ekep_versions=ekep_versions,
        cipher_suites=cipher_suites,
        record_protocols=record_protocols,
        options=options,
        client_offers=client_offers,
        client_requests=client_requests,
    )


def push_client_precommit(buf: Buffer, precommit: ClientPrecommit) -> None:
    buf.push_uint8(HandshakeMessageType.CLIENT_PRECOMMIT)
    with push_block(buf, 3):
        push_list(buf, 1, partial(push_string, buf, 1), precommit.ekep_versions)
        push_list(buf, 1, buf.push_uint16, precommit.cipher_suites)
        push_list(buf, 1, buf.push_uint16, precommit.record_protocols)
        push_opaque(buf, 2, precommit.options)
        push_list(
            buf, 2, partial(push_assertion_offer, buf), precommit.client_offers
        )
        push_list(
            buf, 2, partial(push_assertion_request, buf), precommit.client_requests
        )
        push_opaque(buf, 1, precommit.challenge)


@dataclass
class ServerPrecommit:
    challenge: bytes
    selected_ekep_version: str
    selected_cipher_suite: int
    selected_record_protocol: int
    options: bytes = b""
    server_offers: List[AssertionOffer] = field(default_factory=list)
    server_requests: List[AssertionRequest] = field(default_factory=list)


def pull_server_precommit(buf: Buffer) -> ServerPrecommit:
    pull_handshake_type(buf, HandshakeMessageType.SERVER_PRECOMMIT)
    with pull_block(buf, 3):
        selected_ekep_version = pull_string(buf, 1)
        selected_cipher_suite = buf.pull_uint16()
        selected_record_protocol = buf.pull_uint16()
        options = pull_opaque(buf, 2)
        server_offers = pull_list(buf, 2, partial(pull_assertion_offer, buf))
        server_requests = pull_list(buf, 2, partial(pull_assertion_request, buf))
        challenge = pull_opaque(buf, 1)

    return ServerPrecommit(
        challenge=challenge,
        selected_ekep_version=selected_ekep_version,
        selected_cipher_suite=selected_cipher_suite,
        selected_record_protocol=selected_record_protocol,
        options=options,
        server_offers=server_offers,
        server_requests=server_requests,
    )


def push_server_precommit(buf: Buffer, precommit: ServerPrecommit) -> None:
    buf.push_uint8(HandshakeMessageType.SERVER_PRECOMMIT)
    with push_block(buf, 3):
        push_string(buf, 1, precommit.selected_ekep_version)
        buf.push_uint16(precommit.selected_cipher_suite)
        buf.push_uint16(precommit.selected_record_protocol)
        push_opaque(buf, 2, precommit.options)
        push_list(
            buf, 2, partial(push_assertion_offer, buf), precommit.server_offers
        )
        push_list(
            buf, 2, partial(push_assertion_request, buf), precommit.server_requests
        )
        push_opaque(buf, 1, precommit.challenge)


@dataclass
class PeerId:
    """
    Body shared by ClientId and ServerId.
    """

    dh_public_key: bytes
    assertions: List[Assertion] = field(default_factory=list)


def _pull_id(buf: Buffer, message_type: HandshakeMessageType) -> PeerId:
    pull_handshake_type(buf, message_type)
    with pull_block(buf, 3):
        dh_public_key = pull_opaque(buf, 2)
        assertions = pull_list(buf, 3, partial(pull_assertion, buf))
    return PeerId(dh_public_key=dh_public_key, assertions=assertions)


def _push_id(buf: Buffer, message_type: HandshakeMessageType, peer_id: PeerId) -> None:
    buf.push_uint8(message_type)
    with push_block(buf, 3):
        push_opaque(buf, 2, peer_id.dh_public_key)
        push_list(buf, 3, partial(push_assertion, buf), peer_id.assertions)


def pull_client_id(buf: Buffer) -> PeerId:
    return _pull_id(buf, HandshakeMessageType.CLIENT_ID)


def push_client_id(buf: Buffer, client_id: PeerId) -> None:
    _push_id(buf, HandshakeMessageType.CLIENT_ID, client_id)


def pull_server_id(buf: Buffer) -> PeerId:
    return _pull_id(buf, HandshakeMessageType.SERVER_ID)


def push_server_id(buf: Buffer, server_id: PeerId) -> None:
    _push_id(buf, HandshakeMessageType.SERVER_ID, server_id)


@dataclass
class Finish:
    handshake_authenticator: bytes = b""


def _pull_finish(buf: Buffer, message_type: HandshakeMessageType) -> Finish:
    pull_handshake_type(buf, message_type)
    with pull_block(buf, 3):
        authenticator = pull_opaque(buf, 1)
    return Finish(handshake_authenticator=authenticator)


def _push_finish(buf: Buffer, message_type: HandshakeMessageType, finish: Finish) -> None:
    buf.push_uint8(message_type)
    with push_block(buf, 3):
        push_opaque(buf, 1, finish.handshake_authenticator)


def pull_server_finish(buf: Buffer) -> Finish:
    return _pull_finish(buf, HandshakeMessageType.SERVER_FINISH)


def push_server_finish(buf: Buffer, finish: Finish) -> None:
    _push_finish(buf, HandshakeMessageType.SERVER_FINISH, finish)


def pull_client_finish(buf: Buffer) -> Finish:
    return _pull_finish(buf, HandshakeMessageType.CLIENT_FINISH)


def push_client_finish(buf: Buffer, finish: Finish) -> None:
    _push_finish(buf, HandshakeMessageType.CLIENT_FINISH, finish)
