import datetime
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from ekep.assertions import (
    AssertionAuthority,
    NullAssertionGenerator,
    NullAssertionVerifier,
)
from ekep.buffer import Buffer
from ekep.configuration import EkepConfiguration
from ekep.handshake import TERMINAL_STATES, Context
from ekep.messages import Abort, pull_abort


def generate_ec_certificate(
    common_name: str,
    alternative_names: Optional[List[str]] = None,
    curve=ec.SECP256R1,
    not_valid_before: Optional[datetime.datetime] = None,
    not_valid_after: Optional[datetime.datetime] = None,
):
    if alternative_names is None:
        alternative_names = [common_name]
    key = ec.generate_private_key(curve())

    now = datetime.datetime.now(datetime.timezone.utc)
    if not_valid_before is None:
        not_valid_before = now - datetime.timedelta(days=1)
    if not_valid_after is None:
        not_valid_after = now + datetime.timedelta(days=10)

    subject = issuer = x509.Name(
        [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    )
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_valid_before)
        .not_valid_after(not_valid_after)
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(name) for name in alternative_names]
            ),
            critical=False,
        )
    )
    cert = builder.sign(key, hashes.SHA256())
    return cert, key


def certificate_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(Encoding.PEM)


def null_authority() -> AssertionAuthority:
    return AssertionAuthority(
        generators=[NullAssertionGenerator()], verifiers=[NullAssertionVerifier()]
    )


def create_client(**kwargs) -> Context:
    kwargs.setdefault("assertion_authority", null_authority())
    return Context(EkepConfiguration(is_client=True, **kwargs))


def create_server(**kwargs) -> Context:
    kwargs.setdefault("assertion_authority", null_authority())
    return Context(EkepConfiguration(is_client=False, **kwargs))


def feed(context: Context, data: bytes) -> bytes:
    buf = Buffer()
    context.handle_message(data, buf)
    return buf.data


def read_abort(data: bytes) -> Abort:
    buf = Buffer(data=data)
    abort = pull_abort(buf)
    assert buf.eof()
    return abort


def handshake(client: Context, server: Context) -> None:
    """
    Shuttle frames between the two contexts until neither has anything to
    send.
    """
    data = feed(client, b"")
    receiver, sender = server, client
    while data and receiver.state not in TERMINAL_STATES:
        data = feed(receiver, data)
        receiver, sender = sender, receiver
