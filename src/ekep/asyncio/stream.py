import asyncio
import logging
from typing import Optional, Union

from ..buffer import Buffer
from ..configuration import EkepConfiguration
from ..errors import AbortCode, HandshakeAborted
from ..handshake import (
    TERMINAL_STATES,
    Context,
    HandshakeResult,
    RecordKeysHandler,
)
from ..messages import FRAME_HEADER_SIZE


async def _flush(
    writer: asyncio.StreamWriter,
    buf: Buffer,
    logger: Union[logging.Logger, logging.LoggerAdapter],
) -> None:
    if not buf.tell():
        return
    try:
        writer.write(buf.data)
        await writer.drain()
    except ConnectionError as exc:
        # the peer may already be gone when we send an Abort
        logger.debug("EKEP could not send %d bytes: %s", buf.tell(), exc)


async def perform_handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    configuration: EkepConfiguration,
    *,
    logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
    record_keys_cb: Optional[RecordKeysHandler] = None,
) -> HandshakeResult:
    """
    Run one EKEP handshake over an asyncio stream pair.

    Each peer frame must arrive within `configuration.handshake_timeout`
    seconds. A timeout or a lost connection aborts the handshake with
    ``INTERNAL_ERROR``.

    :param reader: The stream to read peer frames from.
    :param writer: The stream to write our frames to.
    :param configuration: The handshake configuration.
    :param logger: The logger the handshake context reports to.
    :param record_keys_cb: Called with the record keys once the handshake
        completes.

    Raises :class:`~ekep.errors.HandshakeAborted` if the handshake does not
    complete.
    """
    if logger is None:
        logger = logging.getLogger("ekep")
    context = Context(configuration, logger=logger)
    if record_keys_cb is not None:
        context.record_keys_cb = record_keys_cb
    timeout = configuration.handshake_timeout

    if context.is_client:
        buf = Buffer()
        context.handle_message(b"", buf)
        await _flush(writer, buf, logger)

    while context.state not in TERMINAL_STATES:
        buf = Buffer()
        try:
            header = await asyncio.wait_for(
                reader.readexactly(FRAME_HEADER_SIZE), timeout
            )
            context.handle_message(header, buf)

            body_length = int.from_bytes(header[1:], byteorder="big")
            if body_length and context.state not in TERMINAL_STATES:
                body = await asyncio.wait_for(reader.readexactly(body_length), timeout)
                context.handle_message(body, buf)
        except asyncio.TimeoutError:
            context.abort(buf, AbortCode.INTERNAL_ERROR, "handshake timed out")
        except (asyncio.IncompleteReadError, ConnectionError):
            context.abort(buf, AbortCode.INTERNAL_ERROR, "connection lost")
        await _flush(writer, buf, logger)

    if context.abort_signal is not None:
        raise HandshakeAborted(context.abort_signal)
    return context.result
