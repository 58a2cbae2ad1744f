"""
Certificate-backed EKEP assertions.

The generator signs the handshake binding data (transcript hash and the
producer's DH public key) with the private key of an X.509 certificate and
sends the certificate chain alongside the signature. The verifier checks the
chain against a CA store, optionally checks the certificate names, then
checks the signature.
"""

import datetime
import ipaddress
from enum import IntEnum
from functools import partial
from typing import Dict, List, Optional, Tuple

import certifi
import service_identity
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import (
    CertificateIssuerPublicKeyTypes,
    PrivateKeyTypes,
)
from cryptography.hazmat.primitives.serialization import Encoding
from OpenSSL import crypto

from .assertions import AssertionContext, AssertionRejected, PeerIdentity
from .buffer import Buffer, BufferReadError
from .errors import Alert
from .messages import (
    AssertionDescription,
    IdentityType,
    pull_list,
    pull_opaque,
    push_list,
    push_opaque,
)

CERTIFICATE_ASSERTION_DESCRIPTION = AssertionDescription(
    identity_type=IdentityType.CERT_IDENTITY, authority_type="X509"
)

CLIENT_CONTEXT_STRING = b"EKEP v1, client CertificateAssertion"
SERVER_CONTEXT_STRING = b"EKEP v1, server CertificateAssertion"


# facilitate mocking for the test suite
def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class SignatureAlgorithm(IntEnum):
    RSA_PSS_RSAE_SHA256 = 0x0804
    RSA_PSS_RSAE_SHA384 = 0x0805
    RSA_PSS_RSAE_SHA512 = 0x0806
    ECDSA_SECP256R1_SHA256 = 0x0403
    ECDSA_SECP384R1_SHA384 = 0x0503
    ECDSA_SECP521R1_SHA512 = 0x0603
    ED25519 = 0x0807
    ED448 = 0x0808


SIGNATURE_ALGORITHMS: Dict = {
    SignatureAlgorithm.ECDSA_SECP256R1_SHA256: (None, hashes.SHA256),
    SignatureAlgorithm.ECDSA_SECP384R1_SHA384: (None, hashes.SHA384),
    SignatureAlgorithm.ECDSA_SECP521R1_SHA512: (None, hashes.SHA512),
    SignatureAlgorithm.RSA_PSS_RSAE_SHA256: (padding.PSS, hashes.SHA256),
    SignatureAlgorithm.RSA_PSS_RSAE_SHA384: (padding.PSS, hashes.SHA384),
    SignatureAlgorithm.RSA_PSS_RSAE_SHA512: (padding.PSS, hashes.SHA512),
}


def load_pem_private_key(
    data: bytes, password: Optional[bytes] = None
) -> PrivateKeyTypes:
    """
    Load a PEM-encoded private key.
    """
    return serialization.load_pem_private_key(data, password=password)


def load_pem_x509_certificates(data: bytes) -> List[x509.Certificate]:
    """
    Load a chain of PEM-encoded X509 certificates.
    """
    boundary = b"-----END CERTIFICATE-----\n"
    certificates = []
    for chunk in data.split(boundary):
        if chunk.strip():
            certificates.append(x509.load_pem_x509_certificate(chunk + boundary))
    return certificates


def _check_validity_period(certificate: x509.Certificate) -> None:
    now = utcnow()
    if now < certificate.not_valid_before_utc:
        raise AssertionRejected("Certificate is not valid yet")
    if now > certificate.not_valid_after_utc:
        raise AssertionRejected("Certificate is no longer valid")


def _check_peer_name(certificate: x509.Certificate, peer_name: str) -> None:
    try:
        ipaddress.ip_address(peer_name)
    except ValueError:
        check = service_identity.cryptography.verify_certificate_hostname
    else:
        check = service_identity.cryptography.verify_certificate_ip_address

    try:
        check(certificate, peer_name)
    except (
        service_identity.CertificateError,
        service_identity.VerificationError,
    ) as exc:
        names = ", ".join(
            str(pattern)
            for pattern in service_identity.cryptography.extract_patterns(certificate)
        )
        raise AssertionRejected(
            f"Peer name {peer_name!r} doesn't match the certificate "
            f"({names or 'no names'})"
        ) from exc


def _trust_store(
    cadata: Optional[bytes], cafile: Optional[str], capath: Optional[str]
) -> crypto.X509Store:
    store = crypto.X509Store()
    if cadata is None and cafile is None and capath is None:
        store.load_locations(certifi.where())
    if cadata is not None:
        for cert in load_pem_x509_certificates(cadata):
            store.add_cert(crypto.X509.from_cryptography(cert))
    if cafile is not None or capath is not None:
        store.load_locations(cafile, capath)
    return store


def verify_certificate_chain(
    chain: List[x509.Certificate],
    server_name: Optional[str] = None,
    cadata: Optional[bytes] = None,
    cafile: Optional[str] = None,
    capath: Optional[str] = None,
) -> None:
    """
    Check the leaf certificate `chain[0]`, presented with the intermediates
    `chain[1:]`, against the trusted CAs.

    Without any CA source, certifi's bundle is trusted.
    """
    leaf = chain[0]
    _check_validity_period(leaf)
    if server_name is not None:
        _check_peer_name(leaf, server_name)

    store_ctx = crypto.X509StoreContext(
        _trust_store(cadata, cafile, capath),
        crypto.X509.from_cryptography(leaf),
        [crypto.X509.from_cryptography(cert) for cert in chain[1:]],
    )
    try:
        store_ctx.verify_certificate()
    except crypto.X509StoreContextError as exc:
        raise AssertionRejected(f"Certificate chain is not trusted: {exc}")


def signature_algorithm_for_private_key(private_key: PrivateKeyTypes) -> SignatureAlgorithm:
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return SignatureAlgorithm.ED25519
    elif isinstance(private_key, ed448.Ed448PrivateKey):
        return SignatureAlgorithm.ED448
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        if isinstance(private_key.curve, ec.SECP384R1):
            return SignatureAlgorithm.ECDSA_SECP384R1_SHA384
        elif isinstance(private_key.curve, ec.SECP521R1):
            return SignatureAlgorithm.ECDSA_SECP521R1_SHA512
        return SignatureAlgorithm.ECDSA_SECP256R1_SHA256
    elif isinstance(private_key, rsa.RSAPrivateKey):
        return SignatureAlgorithm.RSA_PSS_RSAE_SHA256
    raise ValueError(f"Unsupported private key type {type(private_key).__name__}")


def signature_algorithm_params(signature_algorithm: int) -> Tuple:
    if signature_algorithm in (SignatureAlgorithm.ED25519, SignatureAlgorithm.ED448):
        return tuple()

    padding_cls, algorithm_cls = SIGNATURE_ALGORITHMS[signature_algorithm]
    algorithm = algorithm_cls()
    if padding_cls is None:
        return (ec.ECDSA(algorithm),)
    return (
        padding_cls(mgf=padding.MGF1(algorithm), salt_length=padding.PSS.DIGEST_LENGTH),
        algorithm,
    )


def assertion_signed_data(context: AssertionContext) -> bytes:
    context_string = CLIENT_CONTEXT_STRING if context.is_client else SERVER_CONTEXT_STRING
    return (
        b" " * 64
        + context_string
        + b"\x00"
        + context.transcript_hash
        + context.dh_public_key
    )


def push_certificate_assertion(
    buf: Buffer, algorithm: int, certificates: List[bytes], signature: bytes
) -> None:
    buf.push_uint16(algorithm)
    push_list(buf, 3, partial(push_opaque, buf, 3), certificates)
    push_opaque(buf, 2, signature)


def pull_certificate_assertion(buf: Buffer) -> Tuple[int, List[bytes], bytes]:
    algorithm = buf.pull_uint16()
    certificates = pull_list(buf, 3, partial(pull_opaque, buf, 3))
    signature = pull_opaque(buf, 2)
    return algorithm, certificates, signature


class CertificateAssertionGenerator:
    description = CERTIFICATE_ASSERTION_DESCRIPTION

    def __init__(
        self,
        certificate: x509.Certificate,
        private_key: PrivateKeyTypes,
        certificate_chain: Optional[List[x509.Certificate]] = None,
    ) -> None:
        self.certificate = certificate
        self.certificate_chain = list(certificate_chain or [])
        self.private_key = private_key
        self.signature_algorithm = signature_algorithm_for_private_key(private_key)

    def produce(self, context: AssertionContext) -> bytes:
        signature = self.private_key.sign(
            assertion_signed_data(context),
            *signature_algorithm_params(self.signature_algorithm),
        )
        buf = Buffer(capacity=1024)
        push_certificate_assertion(
            buf,
            self.signature_algorithm,
            [
                c.public_bytes(Encoding.DER)
                for c in [self.certificate] + self.certificate_chain
            ],
            signature,
        )
        return buf.data


class CertificateAssertionVerifier:
    """
    Verifies certificate assertions against a CA store.

    When no CA is given, certifi's bundle is used. If `server_name` is set the
    peer's leaf certificate must match it.
    """

    description = CERTIFICATE_ASSERTION_DESCRIPTION

    def __init__(
        self,
        cadata: Optional[bytes] = None,
        cafile: Optional[str] = None,
        capath: Optional[str] = None,
        server_name: Optional[str] = None,
    ) -> None:
        self.cadata = cadata
        self.cafile = cafile
        self.capath = capath
        self.server_name = server_name

    def verify(self, assertion: bytes, context: AssertionContext) -> PeerIdentity:
        buf = Buffer(data=assertion)
        try:
            algorithm, certificates, signature = pull_certificate_assertion(buf)
            if not buf.eof():
                raise AssertionRejected("Certificate assertion has trailing bytes")
            chain = [x509.load_der_x509_certificate(c) for c in certificates]
        except (Alert, BufferReadError, ValueError):
            raise AssertionRejected("Certificate assertion is malformed")
        if not chain:
            raise AssertionRejected("Certificate assertion carries no certificate")
        try:
            algorithm = SignatureAlgorithm(algorithm)
        except ValueError:
            raise AssertionRejected(
                f"Signature algorithm {algorithm:#06x} is not supported"
            )

        verify_certificate_chain(
            chain,
            server_name=self.server_name,
            cadata=self.cadata,
            cafile=self.cafile,
            capath=self.capath,
        )

        public_key: CertificateIssuerPublicKeyTypes = chain[0].public_key()
        try:
            public_key.verify(
                signature,
                assertion_signed_data(context),
                *signature_algorithm_params(algorithm),
            )
        except (InvalidSignature, TypeError, ValueError):
            raise AssertionRejected("Certificate assertion signature is invalid")

        return PeerIdentity(description=self.description, identity=certificates[0])
