from dataclasses import dataclass
from enum import IntEnum


class AbortCode(IntEnum):
    UNKNOWN_ERROR_CODE = 0
    BAD_MESSAGE = 1
    DESERIALIZATION_FAILED = 2
    BAD_PROTOCOL_VERSION = 3
    BAD_HANDSHAKE_CIPHER = 4
    BAD_RECORD_PROTOCOL = 5
    BAD_AUTHENTICATOR = 6
    BAD_ASSERTION_TYPE = 7
    BAD_ASSERTION = 8
    PROTOCOL_ERROR = 9
    INTERNAL_ERROR = 10

    @classmethod
    def from_wire(cls, value: int) -> "AbortCode":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN_ERROR_CODE


class Alert(Exception):
    code: AbortCode


class AlertBadMessage(Alert):
    code = AbortCode.BAD_MESSAGE


class AlertDeserializationFailed(Alert):
    code = AbortCode.DESERIALIZATION_FAILED


class AlertBadProtocolVersion(Alert):
    code = AbortCode.BAD_PROTOCOL_VERSION


class AlertBadHandshakeCipher(Alert):
    code = AbortCode.BAD_HANDSHAKE_CIPHER


class AlertBadRecordProtocol(Alert):
    code = AbortCode.BAD_RECORD_PROTOCOL


class AlertBadAuthenticator(Alert):
    code = AbortCode.BAD_AUTHENTICATOR


class AlertBadAssertionType(Alert):
    code = AbortCode.BAD_ASSERTION_TYPE


class AlertBadAssertion(Alert):
    code = AbortCode.BAD_ASSERTION


class AlertProtocolError(Alert):
    code = AbortCode.PROTOCOL_ERROR


class AlertInternalError(Alert):
    code = AbortCode.INTERNAL_ERROR


@dataclass(frozen=True)
class AbortSignal:
    """
    Terminal outcome of an aborted handshake.

    `received` is True when the peer sent the Abort, False when this side
    detected the failure.
    """

    code: AbortCode
    message: str
    received: bool = False


class HandshakeAborted(Exception):
    def __init__(self, signal: AbortSignal) -> None:
        super().__init__(f"{signal.code.name}: {signal.message}")
        self.signal = signal

    @property
    def code(self) -> AbortCode:
        return self.signal.code
