import argparse
import asyncio
import logging

from ekep.assertions import NullAssertionGenerator, NullAssertionVerifier
from ekep.asyncio import perform_handshake
from ekep.configuration import EkepConfiguration
from ekep.errors import HandshakeAborted
from ekep.handshake import RecordKeys
from ekep.messages import HandshakeCipher

logger = logging.getLogger("client")


def log_record_keys(record_protocol, keys: RecordKeys) -> None:
    logger.info(
        "Record keys for %s: client %d bytes, server %d bytes",
        record_protocol.name,
        len(keys.client_write_key),
        len(keys.server_write_key),
    )


async def main(configuration: EkepConfiguration, host: str, port: int) -> None:
    reader, writer = await asyncio.open_connection(host, port)
    try:
        result = await perform_handshake(
            reader, writer, configuration, record_keys_cb=log_record_keys
        )
    except HandshakeAborted as exc:
        logger.error("Handshake aborted: %s", exc)
    else:
        logger.info(
            "Handshake complete: %s, %s, %s",
            result.ekep_version,
            result.cipher_suite.name,
            result.record_protocol.name,
        )
        for identity in result.peer_identities:
            logger.info("Server identity: %s", identity.description)
    finally:
        writer.close()
        await writer.wait_closed()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="EKEP client")
    parser.add_argument("host", type=str, help="the server's host name or address")
    parser.add_argument("port", type=int, help="the server's port")
    parser.add_argument(
        "--ca-certs", type=str, help="load CA certificates from the specified file"
    )
    parser.add_argument(
        "--certificate",
        type=str,
        help="load the client certificate from the specified file",
    )
    parser.add_argument(
        "--private-key",
        type=str,
        help="load the client private key from the specified file",
    )
    parser.add_argument(
        "--cipher-suites",
        type=str,
        help="only advertise the given handshake ciphers, e.g. `CURVE25519_SHA256`",
    )
    parser.add_argument(
        "--server-name",
        type=str,
        help="check the server certificate against this name",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=EkepConfiguration().handshake_timeout,
        help="seconds to wait for each server message",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="increase logging verbosity"
    )

    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    # prepare configuration
    configuration = EkepConfiguration(is_client=True, handshake_timeout=args.timeout)
    if args.cipher_suites:
        configuration.cipher_suites = [
            HandshakeCipher[s] for s in args.cipher_suites.split(",")
        ]
    if args.ca_certs:
        configuration.load_verify_locations(args.ca_certs, server_name=args.server_name)
    else:
        configuration.assertion_authority = (
            configuration.assertion_authority.with_verifier(NullAssertionVerifier())
        )
    if args.certificate is not None:
        configuration.load_cert_chain(args.certificate, args.private_key)
    else:
        configuration.assertion_authority = (
            configuration.assertion_authority.with_generator(NullAssertionGenerator())
        )

    asyncio.run(main(configuration=configuration, host=args.host, port=args.port))
