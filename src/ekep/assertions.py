from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence

from .errors import AlertBadAssertion, AlertBadAssertionType
from .messages import (
    Assertion,
    AssertionDescription,
    AssertionOffer,
    AssertionRequest,
    IdentityType,
)

NULL_ASSERTION_DESCRIPTION = AssertionDescription(
    identity_type=IdentityType.NULL_IDENTITY, authority_type="Any"
)

NULL_ASSERTION = b"EKEP null assertion"


class AssertionRejected(Exception):
    """
    Raised by a verifier when an assertion does not hold.
    """


@dataclass(frozen=True)
class AssertionContext:
    """
    Handshake values an assertion is produced for, or verified against.

    `is_client` is the role of the peer producing the assertion.
    `transcript_hash` covers every frame preceding the Id message carrying
    the assertion and `dh_public_key` is the producer's ephemeral public key.
    """

    is_client: bool
    description: AssertionDescription
    additional_information: bytes
    transcript_hash: bytes
    dh_public_key: bytes


@dataclass(frozen=True)
class PeerIdentity:
    description: AssertionDescription
    identity: bytes = b""


class AssertionGenerator(Protocol):
    description: AssertionDescription

    def produce(self, context: AssertionContext) -> bytes:
        ...


class AssertionVerifier(Protocol):
    description: AssertionDescription

    def verify(self, assertion: bytes, context: AssertionContext) -> PeerIdentity:
        ...


class NullAssertionGenerator:
    """
    Produces the null assertion, which carries no identity.
    """

    description = NULL_ASSERTION_DESCRIPTION

    def produce(self, context: AssertionContext) -> bytes:
        return NULL_ASSERTION


class NullAssertionVerifier:
    description = NULL_ASSERTION_DESCRIPTION

    def verify(self, assertion: bytes, context: AssertionContext) -> PeerIdentity:
        if assertion != NULL_ASSERTION:
            raise AssertionRejected("null assertion has unexpected contents")
        return PeerIdentity(description=self.description)


class AssertionAuthority:
    """
    Registry of the assertion generators and verifiers available to one
    side of the handshake, keyed by assertion description.

    The registry is built once and only read afterwards, so a single
    authority can be shared by concurrent handshakes.
    """

    def __init__(
        self,
        generators: Iterable[AssertionGenerator] = (),
        verifiers: Iterable[AssertionVerifier] = (),
    ) -> None:
        self._generators = MappingProxyType(
            dict((g.description, g) for g in generators)
        )
        self._verifiers = MappingProxyType(dict((v.description, v) for v in verifiers))

    @property
    def generators(self) -> Mapping[AssertionDescription, AssertionGenerator]:
        return self._generators

    @property
    def verifiers(self) -> Mapping[AssertionDescription, AssertionVerifier]:
        return self._verifiers

    def with_generator(self, generator: AssertionGenerator) -> "AssertionAuthority":
        return AssertionAuthority(
            generators=list(self._generators.values()) + [generator],
            verifiers=self._verifiers.values(),
        )

    def with_verifier(self, verifier: AssertionVerifier) -> "AssertionAuthority":
        return AssertionAuthority(
            generators=self._generators.values(),
            verifiers=list(self._verifiers.values()) + [verifier],
        )

    def offers(self) -> List[AssertionOffer]:
        return [AssertionOffer(description=d) for d in self._generators]

    def requests(self) -> List[AssertionRequest]:
        return [AssertionRequest(description=d) for d in self._verifiers]

    def generator(self, description: AssertionDescription) -> Optional[AssertionGenerator]:
        return self._generators.get(description)

    def verifier(self, description: AssertionDescription) -> Optional[AssertionVerifier]:
        return self._verifiers.get(description)


class ObligationRole(Enum):
    OFFERED = "offered"
    REQUESTED = "requested"


class ObligationStatus(Enum):
    UNSATISFIED = "unsatisfied"
    SATISFIED = "satisfied"
    REJECTED = "rejected"


@dataclass
class AssertionObligation:
    """
    An assertion one side agreed to present (OFFERED) or to check
    (REQUESTED) during this handshake.
    """

    description: AssertionDescription
    role: ObligationRole
    additional_information: bytes = b""
    status: ObligationStatus = ObligationStatus.UNSATISFIED


def _descriptions(items: Iterable) -> List[AssertionDescription]:
    return [item.description for item in items]


class AssertionBroker:
    """
    Reconciles the assertion offers and requests of both peers and
    dispatches production and verification to the authority's providers.

    Assertion bytes are never inspected here.
    """

    def __init__(self, authority: AssertionAuthority) -> None:
        self._authority = authority

    def client_offers(self) -> List[AssertionOffer]:
        return self._authority.offers()

    def client_requests(self) -> List[AssertionRequest]:
        return self._authority.requests()

    def select_server_assertions(
        self,
        client_offers: Sequence[AssertionOffer],
        client_requests: Sequence[AssertionRequest],
    ):
        """
        Pick what the server presents and what it wants from the client.

        The server offers the client requests it can produce and requests the
        client offers it can verify. Both must be non-empty.
        """
        server_offers: List[AssertionOffer] = []
        for request in client_requests:
            if (
                self._authority.generator(request.description) is not None
                and request.description not in _descriptions(server_offers)
            ):
                server_offers.append(
                    AssertionOffer(
                        description=request.description,
                        additional_information=request.additional_information,
                    )
                )

        server_requests: List[AssertionRequest] = []
        for offer in client_offers:
            if (
                self._authority.verifier(offer.description) is not None
                and offer.description not in _descriptions(server_requests)
            ):
                server_requests.append(
                    AssertionRequest(
                        description=offer.description,
                        additional_information=offer.additional_information,
                    )
                )

        if not server_offers:
            raise AlertBadAssertionType(
                "None of the client's requested assertions can be offered"
            )
        if not server_requests:
            raise AlertBadAssertionType(
                "None of the client's offered assertions can be verified"
            )
        return server_offers, server_requests

    def check_server_selection(
        self,
        client_offers: Sequence[AssertionOffer],
        client_requests: Sequence[AssertionRequest],
        server_offers: Sequence[AssertionOffer],
        server_requests: Sequence[AssertionRequest],
    ) -> None:
        if not server_offers:
            raise AlertBadAssertionType("Server offered no assertions")
        if not server_requests:
            raise AlertBadAssertionType("Server requested no assertions")

        requested = _descriptions(client_requests)
        for offer in server_offers:
            if offer.description not in requested:
                raise AlertBadAssertionType(
                    f"Server offered assertion {offer.description} that was not requested"
                )

        offered = _descriptions(client_offers)
        for request in server_requests:
            if request.description not in offered:
                raise AlertBadAssertionType(
                    f"Server requested assertion {request.description} that was not offered"
                )

    def produce(
        self,
        obligations: Sequence[AssertionObligation],
        *,
        is_client: bool,
        transcript_hash: bytes,
        dh_public_key: bytes,
    ) -> List[Assertion]:
        assertions = []
        for obligation in obligations:
            generator = self._authority.generator(obligation.description)
            if generator is None:
                raise AlertBadAssertionType(
                    f"No generator for assertion {obligation.description}"
                )
            context = AssertionContext(
                is_client=is_client,
                description=obligation.description,
                additional_information=obligation.additional_information,
                transcript_hash=transcript_hash,
                dh_public_key=dh_public_key,
            )
            assertions.append(
                Assertion(
                    description=obligation.description,
                    assertion=generator.produce(context),
                )
            )
            obligation.status = ObligationStatus.SATISFIED
        return assertions

    def verify(
        self,
        obligations: Sequence[AssertionObligation],
        assertions: Sequence[Assertion],
        *,
        is_client: bool,
        transcript_hash: bytes,
        dh_public_key: bytes,
    ) -> List[PeerIdentity]:
        """
        Verify that `assertions` are exactly the ones the peer owes us.

        `is_client` is the role of the peer that produced the assertions.
        """
        expected = dict((o.description, o) for o in obligations)
        presented = _descriptions(assertions)

        for description in presented:
            if description not in expected:
                raise AlertBadAssertionType(
                    f"Peer presented assertion {description} that was not requested"
                )
        if len(set(presented)) != len(presented):
            raise AlertBadAssertion("Peer presented an assertion more than once")
        for description in expected:
            if description not in presented:
                raise AlertBadAssertion(f"Peer did not present assertion {description}")

        identities = []
        for assertion in assertions:
            obligation = expected[assertion.description]
            verifier = self._authority.verifier(assertion.description)
            if verifier is None:
                raise AlertBadAssertionType(
                    f"No verifier for assertion {assertion.description}"
                )
            context = AssertionContext(
                is_client=is_client,
                description=assertion.description,
                additional_information=obligation.additional_information,
                transcript_hash=transcript_hash,
                dh_public_key=dh_public_key,
            )
            try:
                identities.append(verifier.verify(assertion.assertion, context))
            except AssertionRejected as exc:
                obligation.status = ObligationStatus.REJECTED
                raise AlertBadAssertion(
                    f"Assertion {assertion.description} was rejected: {exc}"
                )
            obligation.status = ObligationStatus.SATISFIED
        return identities
