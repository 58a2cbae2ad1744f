import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generator, List, Optional, TypeVar, Union

from .assertions import (
    AssertionBroker,
    AssertionObligation,
    ObligationRole,
    PeerIdentity,
)
from .buffer import Buffer, BufferReadError
from .configuration import EkepConfiguration
from .crypto import (
    DhPrivateKey,
    HandshakeSecrets,
    SecretBytes,
    check_public_key,
    cipher_suite_hash,
    compute_shared_secret,
    derive_secrets,
    generate_keypair,
    record_protocol_key_size,
    wipe_secret,
)
from .errors import (
    AbortCode,
    AbortSignal,
    Alert,
    AlertBadHandshakeCipher,
    AlertBadMessage,
    AlertBadProtocolVersion,
    AlertBadRecordProtocol,
    AlertDeserializationFailed,
    AlertProtocolError,
)
from .messages import (
    CHALLENGE_SIZE,
    FRAME_HEADER_SIZE,
    Abort,
    ClientPrecommit,
    Finish,
    HandshakeCipher,
    HandshakeMessageType,
    PeerId,
    RecordProtocol,
    ServerPrecommit,
    pull_abort,
    pull_client_finish,
    pull_client_id,
    pull_client_precommit,
    pull_server_finish,
    pull_server_id,
    pull_server_precommit,
    push_abort,
    push_client_finish,
    push_client_id,
    push_client_precommit,
    push_server_finish,
    push_server_id,
    push_server_precommit,
)
from .transcript import CLIENT_FINISH_LABEL, SERVER_FINISH_LABEL, Transcript

T = TypeVar("T")


class State(Enum):
    """
    Handshake states. Each non-terminal state names the one message it
    accepts, besides Abort.
    """

    CLIENT_HANDSHAKE_START = 0
    CLIENT_EXPECT_SERVER_PRECOMMIT = 1
    CLIENT_EXPECT_SERVER_ID = 2
    CLIENT_EXPECT_SERVER_FINISH = 3
    CLIENT_COMPLETE = 4

    SERVER_EXPECT_CLIENT_PRECOMMIT = 5
    SERVER_EXPECT_CLIENT_ID = 6
    SERVER_EXPECT_CLIENT_FINISH = 7
    SERVER_COMPLETE = 8

    ABORTED = 9


COMPLETE_STATES = frozenset([State.CLIENT_COMPLETE, State.SERVER_COMPLETE])
TERMINAL_STATES = COMPLETE_STATES | frozenset([State.ABORTED])


def negotiate(
    offered: Optional[List[T]], supported: List[Any], exc: Optional[Alert] = None
) -> T:
    """
    Return the first value of the client's `offered` list which is also in
    the server's `supported` list.
    """
    if offered is not None:
        for c in offered:
            if c in supported:
                return c

    if exc is not None:
        raise exc
    return None


@contextmanager
def push_message(transcript: Transcript, buf: Buffer) -> Generator:
    start = buf.tell()
    yield
    transcript.append(buf.data_slice(start, buf.tell()))


@dataclass(frozen=True)
class RecordKeys:
    record_protocol: RecordProtocol
    client_write_key: bytes
    server_write_key: bytes


@dataclass(frozen=True)
class HandshakeResult:
    ekep_version: str
    cipher_suite: HandshakeCipher
    record_protocol: RecordProtocol
    peer_identities: List[PeerIdentity]
    peer_additional_authenticated_data: bytes


# callback types
RecordKeysHandler = Callable[[RecordProtocol, RecordKeys], None]


class Context:
    """
    One side of an EKEP handshake.

    The context performs no I/O: frames received from the peer are fed to
    :meth:`handle_message` and frames to send are written to the output
    buffer.
    """

    def __init__(
        self,
        configuration: EkepConfiguration,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
    ):
        # configuration
        self._is_client = configuration.is_client
        self._additional_authenticated_data = configuration.additional_authenticated_data
        self._broker = AssertionBroker(configuration.assertion_authority)
        self._cipher_suites = list(configuration.cipher_suites)
        self._ekep_versions = list(configuration.ekep_versions)
        self._max_frame_size = configuration.max_frame_size
        self._record_protocols = list(configuration.record_protocols)
        self.__logger = logger if logger is not None else logging.getLogger("ekep")

        # callbacks
        self.record_keys_cb: RecordKeysHandler = lambda p, k: None

        # state
        self.abort_signal: Optional[AbortSignal] = None
        self.cipher_suite: Optional[HandshakeCipher] = None
        self.ekep_version: Optional[str] = None
        self.peer_additional_authenticated_data: Optional[bytes] = None
        self.peer_identities: List[PeerIdentity] = []
        self.record_protocol: Optional[RecordProtocol] = None
        self.transcript = Transcript()
        self._challenge = os.urandom(CHALLENGE_SIZE)
        self._client_precommit: Optional[ClientPrecommit] = None
        self._dh_private_key: Optional[DhPrivateKey] = None
        self._dh_public_key: Optional[bytes] = None
        self._local_obligations: List[AssertionObligation] = []
        self._peer_dh_public_key: Optional[bytes] = None
        self._peer_obligations: List[AssertionObligation] = []
        self._receive_buffer = b""
        self._secrets: Optional[HandshakeSecrets] = None
        self._shared_secret: Optional[SecretBytes] = None

        if self._is_client:
            self.state = State.CLIENT_HANDSHAKE_START
        else:
            self.state = State.SERVER_EXPECT_CLIENT_PRECOMMIT

    @property
    def is_client(self) -> bool:
        return self._is_client

    @property
    def complete(self) -> bool:
        return self.state in COMPLETE_STATES

    @property
    def aborted(self) -> bool:
        return self.state == State.ABORTED

    @property
    def assertion_obligations(self) -> List[AssertionObligation]:
        return self._local_obligations + self._peer_obligations

    @property
    def result(self) -> Optional[HandshakeResult]:
        if not self.complete:
            return None
        return HandshakeResult(
            ekep_version=self.ekep_version,
            cipher_suite=self.cipher_suite,
            record_protocol=self.record_protocol,
            peer_identities=list(self.peer_identities),
            peer_additional_authenticated_data=self.peer_additional_authenticated_data,
        )

    def abort(
        self,
        output_buf: Buffer,
        code: AbortCode = AbortCode.INTERNAL_ERROR,
        message: str = "",
    ) -> None:
        """
        Abort the handshake from outside the message flow, for instance when
        the peer is too slow to answer.

        Once the handshake is complete or aborted this does nothing.
        """
        if self.state in TERMINAL_STATES:
            return
        self._abort(output_buf, code, message)

    def handle_message(self, input_data: bytes, output_buf: Buffer) -> None:
        """
        Feed bytes received from the peer and write any reply to `output_buf`.

        A client starts the handshake by calling this with empty
        `input_data`; peer data at that point aborts the handshake. Frames
        may be split or coalesced arbitrarily. Protocol failures do not
        raise: an Abort frame is written and the context moves to
        ``ABORTED``.
        """
        if self.state in TERMINAL_STATES:
            raise AlertBadMessage(
                "Handshake is already %s"
                % ("aborted" if self.state == State.ABORTED else "complete")
            )

        output_start = output_buf.tell()
        try:
            if self.state == State.CLIENT_HANDSHAKE_START:
                if input_data:
                    raise AlertBadMessage(
                        "Received data before sending ClientPrecommit"
                    )
                self._client_send_precommit(output_buf)
                return

            self._receive_buffer += input_data
            while len(self._receive_buffer) >= FRAME_HEADER_SIZE:
                # determine message length
                message_type = self._receive_buffer[0]
                body_length = int.from_bytes(
                    self._receive_buffer[1:FRAME_HEADER_SIZE], byteorder="big"
                )
                if body_length > self._max_frame_size:
                    raise AlertProtocolError(
                        f"Frame of {body_length} bytes exceeds the "
                        f"{self._max_frame_size} bytes limit"
                    )
                message_length = FRAME_HEADER_SIZE + body_length

                # check message is complete
                if len(self._receive_buffer) < message_length:
                    break
                message = self._receive_buffer[:message_length]
                self._receive_buffer = self._receive_buffer[message_length:]

                # process the message
                try:
                    self._handle_reassembled_message(
                        message_type=message_type,
                        input_buf=Buffer(data=message),
                        output_buf=output_buf,
                    )
                except BufferReadError:
                    raise AlertDeserializationFailed("Could not parse EKEP message")

                if self.state in TERMINAL_STATES:
                    self._receive_buffer = b""
                    break
        except Alert as exc:
            self._abort(output_buf, exc.code, str(exc), rewind_to=output_start)
        except Exception:
            self.__logger.exception("EKEP internal error in state %s", self.state)
            self._abort(
                output_buf,
                AbortCode.INTERNAL_ERROR,
                "internal error",
                rewind_to=output_start,
            )

    def _handle_reassembled_message(
        self, message_type: int, input_buf: Buffer, output_buf: Buffer
    ) -> None:
        if message_type == HandshakeMessageType.ABORT:
            self._handle_abort(input_buf)
            return

        # client states

        if self.state == State.CLIENT_EXPECT_SERVER_PRECOMMIT:
            if message_type == HandshakeMessageType.SERVER_PRECOMMIT:
                self._client_handle_precommit(input_buf, output_buf)
            else:
                raise self._unexpected_message(message_type)
        elif self.state == State.CLIENT_EXPECT_SERVER_ID:
            if message_type == HandshakeMessageType.SERVER_ID:
                self._client_handle_id(input_buf)
            else:
                raise self._unexpected_message(message_type)
        elif self.state == State.CLIENT_EXPECT_SERVER_FINISH:
            if message_type == HandshakeMessageType.SERVER_FINISH:
                self._client_handle_finish(input_buf, output_buf)
            else:
                raise self._unexpected_message(message_type)

        # server states

        elif self.state == State.SERVER_EXPECT_CLIENT_PRECOMMIT:
            if message_type == HandshakeMessageType.CLIENT_PRECOMMIT:
                self._server_handle_precommit(input_buf, output_buf)
            else:
                raise self._unexpected_message(message_type)
        elif self.state == State.SERVER_EXPECT_CLIENT_ID:
            if message_type == HandshakeMessageType.CLIENT_ID:
                self._server_handle_id(input_buf, output_buf)
            else:
                raise self._unexpected_message(message_type)
        elif self.state == State.SERVER_EXPECT_CLIENT_FINISH:
            if message_type == HandshakeMessageType.CLIENT_FINISH:
                self._server_handle_finish(input_buf)
            else:
                raise self._unexpected_message(message_type)

        # This condition should never be reached, because if the message
        # contains any extra bytes, the `pull_block` inside the message
        # parser will raise `AlertDeserializationFailed`.
        assert input_buf.eof()

    def _unexpected_message(self, message_type: int) -> AlertBadMessage:
        try:
            name = HandshakeMessageType(message_type).name
        except ValueError:
            name = f"unknown ({message_type})"
        return AlertBadMessage(
            f"Unexpected message type {name} in state {self.state.name}"
        )

    def _handle_abort(self, input_buf: Buffer) -> None:
        abort = pull_abort(input_buf)
        code = AbortCode.from_wire(abort.code)

        self.abort_signal = AbortSignal(code=code, message=abort.message, received=True)
        self.__logger.info("EKEP peer aborted the handshake: %s %s", code.name, abort.message)
        self._set_state(State.ABORTED)
        self._wipe_secrets()

    def _abort(
        self,
        output_buf: Buffer,
        code: AbortCode,
        message: str,
        rewind_to: Optional[int] = None,
    ) -> None:
        # drop any partially written handshake message
        if rewind_to is not None:
            output_buf.seek(rewind_to)
        push_abort(output_buf, Abort(code=code, message=message))

        self.abort_signal = AbortSignal(code=code, message=message)
        self.__logger.warning("EKEP handshake aborted: %s %s", code.name, message)
        self._receive_buffer = b""
        self._set_state(State.ABORTED)
        self._wipe_secrets()

    def _check_challenge(self, challenge: bytes) -> None:
        if len(challenge) != CHALLENGE_SIZE:
            raise AlertProtocolError(
                f"Challenge is {len(challenge)} bytes, expected {CHALLENGE_SIZE}"
            )

    def _set_selection(
        self, ekep_version: str, cipher_suite: int, record_protocol: int
    ) -> None:
        # the selection must also be implemented locally
        algorithm = cipher_suite_hash(cipher_suite)
        record_protocol_key_size(record_protocol)

        self.ekep_version = ekep_version
        self.cipher_suite = HandshakeCipher(cipher_suite)
        self.record_protocol = RecordProtocol(record_protocol)
        self.transcript.select(algorithm)

        self.__logger.debug(
            "EKEP selected version %r, cipher %s, record protocol %s",
            self.ekep_version,
            self.cipher_suite.name,
            self.record_protocol.name,
        )

    def _client_send_precommit(self, output_buf: Buffer) -> None:
        self._client_precommit = ClientPrecommit(
            challenge=self._challenge,
            ekep_versions=self._ekep_versions,
            cipher_suites=self._cipher_suites,
            record_protocols=self._record_protocols,
            options=self._additional_authenticated_data,
            client_offers=self._broker.client_offers(),
            client_requests=self._broker.client_requests(),
        )

        with push_message(self.transcript, output_buf):
            push_client_precommit(output_buf, self._client_precommit)

        self._set_state(State.CLIENT_EXPECT_SERVER_PRECOMMIT)

    def _client_handle_precommit(self, input_buf: Buffer, output_buf: Buffer) -> None:
        peer_precommit = pull_server_precommit(input_buf)
        self.transcript.append(input_buf.data)

        self._check_challenge(peer_precommit.challenge)

        own = self._client_precommit
        if peer_precommit.selected_ekep_version not in own.ekep_versions:
            raise AlertBadProtocolVersion(
                "ServerPrecommit has an EKEP version we did not advertise"
            )
        if peer_precommit.selected_cipher_suite not in own.cipher_suites:
            raise AlertBadHandshakeCipher(
                "ServerPrecommit has a handshake cipher we did not advertise"
            )
        if peer_precommit.selected_record_protocol not in own.record_protocols:
            raise AlertBadRecordProtocol(
                "ServerPrecommit has a record protocol we did not advertise"
            )
        self._broker.check_server_selection(
            client_offers=own.client_offers,
            client_requests=own.client_requests,
            server_offers=peer_precommit.server_offers,
            server_requests=peer_precommit.server_requests,
        )
        self._set_selection(
            peer_precommit.selected_ekep_version,
            peer_precommit.selected_cipher_suite,
            peer_precommit.selected_record_protocol,
        )
        self.peer_additional_authenticated_data = peer_precommit.options
        self._local_obligations = [
            AssertionObligation(
                description=r.description,
                role=ObligationRole.OFFERED,
                additional_information=r.additional_information,
            )
            for r in peer_precommit.server_requests
        ]
        self._peer_obligations = [
            AssertionObligation(
                description=o.description,
                role=ObligationRole.REQUESTED,
                additional_information=o.additional_information,
            )
            for o in peer_precommit.server_offers
        ]

        # send ClientId
        self._dh_private_key, self._dh_public_key = generate_keypair(self.cipher_suite)
        assertions = self._broker.produce(
            self._local_obligations,
            is_client=True,
            transcript_hash=self.transcript.hash_value(),
            dh_public_key=self._dh_public_key,
        )
        with push_message(self.transcript, output_buf):
            push_client_id(
                output_buf,
                PeerId(dh_public_key=self._dh_public_key, assertions=assertions),
            )

        self._set_state(State.CLIENT_EXPECT_SERVER_ID)

    def _client_handle_id(self, input_buf: Buffer) -> None:
        server_id = pull_server_id(input_buf)
        # the server's assertions cover the transcript up to its ServerId
        transcript_hash = self.transcript.hash_value()
        self.transcript.append(input_buf.data)

        check_public_key(self.cipher_suite, server_id.dh_public_key)
        self.peer_identities = self._broker.verify(
            self._peer_obligations,
            server_id.assertions,
            is_client=False,
            transcript_hash=transcript_hash,
            dh_public_key=server_id.dh_public_key,
        )
        self._peer_dh_public_key = server_id.dh_public_key

        # perform key exchange
        self._shared_secret = compute_shared_secret(
            self.cipher_suite, self._dh_private_key, self._peer_dh_public_key
        )
        self._secrets = derive_secrets(
            self.cipher_suite,
            self.record_protocol,
            self._shared_secret,
            self.transcript.hash_value(),
        )

        self._set_state(State.CLIENT_EXPECT_SERVER_FINISH)

    def _client_handle_finish(self, input_buf: Buffer, output_buf: Buffer) -> None:
        finish = pull_server_finish(input_buf)

        # check authenticator
        self.transcript.verify_authenticator(
            self._secrets.server_authenticator_secret.bytes(),
            SERVER_FINISH_LABEL,
            finish.handshake_authenticator,
        )
        self.transcript.append(input_buf.data)

        # send finish
        with push_message(self.transcript, output_buf):
            push_client_finish(
                output_buf,
                Finish(
                    handshake_authenticator=self.transcript.finish_authenticator(
                        self._secrets.client_authenticator_secret.bytes(),
                        CLIENT_FINISH_LABEL,
                    )
                ),
            )

        self._complete(State.CLIENT_COMPLETE)

    def _server_handle_precommit(self, input_buf: Buffer, output_buf: Buffer) -> None:
        peer_precommit = pull_client_precommit(input_buf)
        self.transcript.append(input_buf.data)

        self._check_challenge(peer_precommit.challenge)

        ekep_version = negotiate(
            peer_precommit.ekep_versions,
            self._ekep_versions,
            AlertBadProtocolVersion("No supported EKEP version"),
        )
        cipher_suite = negotiate(
            peer_precommit.cipher_suites,
            self._cipher_suites,
            AlertBadHandshakeCipher("No supported handshake cipher"),
        )
        record_protocol = negotiate(
            peer_precommit.record_protocols,
            self._record_protocols,
            AlertBadRecordProtocol("No supported record protocol"),
        )
        server_offers, server_requests = self._broker.select_server_assertions(
            client_offers=peer_precommit.client_offers,
            client_requests=peer_precommit.client_requests,
        )
        self._set_selection(ekep_version, cipher_suite, record_protocol)
        self.peer_additional_authenticated_data = peer_precommit.options
        self._local_obligations = [
            AssertionObligation(
                description=o.description,
                role=ObligationRole.OFFERED,
                additional_information=o.additional_information,
            )
            for o in server_offers
        ]
        self._peer_obligations = [
            AssertionObligation(
                description=r.description,
                role=ObligationRole.REQUESTED,
                additional_information=r.additional_information,
            )
            for r in server_requests
        ]

        # send ServerPrecommit
        with push_message(self.transcript, output_buf):
            push_server_precommit(
                output_buf,
                ServerPrecommit(
                    challenge=self._challenge,
                    selected_ekep_version=self.ekep_version,
                    selected_cipher_suite=self.cipher_suite,
                    selected_record_protocol=self.record_protocol,
                    options=self._additional_authenticated_data,
                    server_offers=server_offers,
                    server_requests=server_requests,
                ),
            )

        self._set_state(State.SERVER_EXPECT_CLIENT_ID)

    def _server_handle_id(self, input_buf: Buffer, output_buf: Buffer) -> None:
        client_id = pull_client_id(input_buf)
        # the client's assertions cover the transcript up to its ClientId
        transcript_hash = self.transcript.hash_value()
        self.transcript.append(input_buf.data)

        check_public_key(self.cipher_suite, client_id.dh_public_key)
        self.peer_identities = self._broker.verify(
            self._peer_obligations,
            client_id.assertions,
            is_client=True,
            transcript_hash=transcript_hash,
            dh_public_key=client_id.dh_public_key,
        )
        self._peer_dh_public_key = client_id.dh_public_key

        # perform key exchange
        self._dh_private_key, self._dh_public_key = generate_keypair(self.cipher_suite)
        self._shared_secret = compute_shared_secret(
            self.cipher_suite, self._dh_private_key, self._peer_dh_public_key
        )

        # send ServerId
        assertions = self._broker.produce(
            self._local_obligations,
            is_client=False,
            transcript_hash=self.transcript.hash_value(),
            dh_public_key=self._dh_public_key,
        )
        with push_message(self.transcript, output_buf):
            push_server_id(
                output_buf,
                PeerId(dh_public_key=self._dh_public_key, assertions=assertions),
            )

        # send ServerFinish
        self._secrets = derive_secrets(
            self.cipher_suite,
            self.record_protocol,
            self._shared_secret,
            self.transcript.hash_value(),
        )
        with push_message(self.transcript, output_buf):
            push_server_finish(
                output_buf,
                Finish(
                    handshake_authenticator=self.transcript.finish_authenticator(
                        self._secrets.server_authenticator_secret.bytes(),
                        SERVER_FINISH_LABEL,
                    )
                ),
            )

        self._set_state(State.SERVER_EXPECT_CLIENT_FINISH)

    def _server_handle_finish(self, input_buf: Buffer) -> None:
        finish = pull_client_finish(input_buf)

        # check authenticator
        self.transcript.verify_authenticator(
            self._secrets.client_authenticator_secret.bytes(),
            CLIENT_FINISH_LABEL,
            finish.handshake_authenticator,
        )
        self.transcript.append(input_buf.data)

        self._complete(State.SERVER_COMPLETE)

    def _complete(self, state: State) -> None:
        # hand the record keys over, then forget them
        keys = RecordKeys(
            record_protocol=self.record_protocol,
            client_write_key=self._secrets.client_write_key.bytes(),
            server_write_key=self._secrets.server_write_key.bytes(),
        )
        self.record_keys_cb(self.record_protocol, keys)

        self._set_state(state)
        self._wipe_secrets()

    def _wipe_secrets(self) -> None:
        wipe_secret(self._shared_secret)
        if self._secrets is not None:
            self._secrets.wipe()
        self._dh_private_key = None

    def _set_state(self, state: State) -> None:
        self.__logger.debug("EKEP %s -> %s", self.state, state)
        self.state = state
