import argparse
import asyncio
import logging

from ekep.assertions import NullAssertionGenerator, NullAssertionVerifier
from ekep.asyncio import perform_handshake
from ekep.configuration import EkepConfiguration
from ekep.errors import HandshakeAborted

logger = logging.getLogger("server")


class HandshakeServer:
    def __init__(self, configuration: EkepConfiguration) -> None:
        self.configuration = configuration

    async def handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        try:
            result = await perform_handshake(reader, writer, self.configuration)
        except HandshakeAborted as exc:
            logger.warning("Handshake with %s aborted: %s", peer, exc)
        else:
            logger.info(
                "Handshake with %s complete: %s, %s",
                peer,
                result.cipher_suite.name,
                result.record_protocol.name,
            )
            for identity in result.peer_identities:
                logger.info("Client identity: %s", identity.description)
        finally:
            writer.close()


async def main(configuration: EkepConfiguration, host: str, port: int) -> None:
    handshake_server = HandshakeServer(configuration)
    server = await asyncio.start_server(handshake_server.handle, host, port)
    logger.info("Listening on %s:%d", host, port)
    async with server:
        await server.serve_forever()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="EKEP server")
    parser.add_argument(
        "--host",
        type=str,
        default="::",
        help="listen on the specified address (defaults to ::)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=4433,
        help="listen on the specified port (defaults to 4433)",
    )
    parser.add_argument(
        "-c",
        "--certificate",
        type=str,
        help="load the server certificate from the specified file",
    )
    parser.add_argument(
        "-k",
        "--private-key",
        type=str,
        help="load the server private key from the specified file",
    )
    parser.add_argument(
        "--ca-certs",
        type=str,
        help="require client certificates issued by the CAs in the specified file",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="increase logging verbosity"
    )
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    configuration = EkepConfiguration(is_client=False)
    if args.certificate is not None:
        configuration.load_cert_chain(args.certificate, args.private_key)
    else:
        configuration.assertion_authority = (
            configuration.assertion_authority.with_generator(NullAssertionGenerator())
        )
    if args.ca_certs:
        configuration.load_verify_locations(args.ca_certs)
    else:
        configuration.assertion_authority = (
            configuration.assertion_authority.with_verifier(NullAssertionVerifier())
        )

    try:
        asyncio.run(main(configuration=configuration, host=args.host, port=args.port))
    except KeyboardInterrupt:
        pass
