import logging
from typing import Callable, Dict, FrozenSet, List, Union

from lxml import etree

from ..config import ResponseDialect
from .attribute_mapper import derive_attributes
from .errors import ProtocolError, ValidationRejected
from .outcome import Failure, RawAttribute, Success, ValidationOutcome
from .xmlutils import CAS_NS, SLATE_NS, local_name, namespace, parse_document, prefix_of, text_content

logger = logging.getLogger(__name__)

# Children of authenticationSuccess defined by the CAS protocol itself
SUCCESS_SCHEMA = frozenset(["user", "attributes", "proxyGrantingTicket", "proxies"])


def _unparseable(message: str) -> Failure:
    return Failure(ProtocolError.code, message, ProtocolError(message))


class ResponseDecoder:
    """
    Decodes a serviceValidate response. Subclasses only differ in which
    namespaces the protocol elements may live in.
    """

    namespaces: FrozenSet[str] = frozenset([CAS_NS])

    def _is(self, element, name: str) -> bool:
        return (
            isinstance(element, etree._Element)
            and local_name(element) == name
            and namespace(element) in self.namespaces
        )

    def _children(self, element, name: str) -> List:
        return [child for child in element if self._is(child, name)]

    def decode(self, document) -> ValidationOutcome:
        root = document.getroot()
        if not self._is(root, "serviceResponse"):
            return _unparseable(f"Unexpected root element {root.tag}")

        successes = self._children(root, "authenticationSuccess")
        failures = self._children(root, "authenticationFailure")
        if len(successes) + len(failures) != 1:
            return _unparseable(
                "Error parsing serviceResponse: expected exactly one "
                "authenticationSuccess or authenticationFailure element"
            )

        if failures:
            return self.decode_failure(failures[0])
        return self.decode_success(document, successes[0])

    def decode_failure(self, element) -> Failure:
        code = element.get("code") or "UNKNOWN"
        message = text_content(element)
        return Failure(
            code,
            message,
            ValidationRejected(
                f"Error when validating CAS service ticket: {message} ({code})",
                code=code,
            ),
        )

    def decode_success(self, document, element) -> ValidationOutcome:
        users = self._children(element, "user")
        username = text_content(users[0]) if users else ""
        if not username:
            return _unparseable("authenticationSuccess without a user")

        attributes = []
        for container in self._children(element, "attributes"):
            for child in container.iterchildren(etree.Element):
                attributes.append(self._raw_attribute(child, is_metadata=False))

        for child in element.iterchildren(etree.Element):
            if self._is_schema_element(child):
                continue
            attributes.append(self._raw_attribute(child, is_metadata=True))

        elements = tuple(attributes)
        return Success(
            username=username,
            raw_attributes=derive_attributes(elements),
            elements=elements,
            document=document,
            success_element=element,
        )

    def _is_schema_element(self, element) -> bool:
        return namespace(element) in self.namespaces and local_name(element) in SUCCESS_SCHEMA

    @staticmethod
    def _raw_attribute(element, is_metadata: bool) -> RawAttribute:
        return RawAttribute(
            local_name=local_name(element),
            prefix=prefix_of(element),
            text=text_content(element),
            is_metadata=is_metadata,
        )


class StandardDecoder(ResponseDecoder):
    namespaces = frozenset([CAS_NS])


class SlateDecoder(ResponseDecoder):
    """Slate responses may put the protocol elements in the Slate namespace."""

    namespaces = frozenset([CAS_NS, SLATE_NS])


DECODERS: Dict[ResponseDialect, Callable[[], ResponseDecoder]] = {
    ResponseDialect.STANDARD: StandardDecoder,
    ResponseDialect.SLATE: SlateDecoder,
}


def parse(body: Union[str, bytes], dialect: ResponseDialect = ResponseDialect.STANDARD) -> ValidationOutcome:
    """
    Decode a CAS 2.0/3.0 (or Slate) serviceValidate response body.
    Never raises for bad input; malformed bodies become a Failure.
    """
    try:
        document = parse_document(body)
    except etree.XMLSyntaxError as e:
        message = f"Validation response is not well-formed XML: {e}"
        return Failure("parse-error", message, ProtocolError(message, code="parse-error"))

    outcome = DECODERS[dialect]().decode(document)
    if isinstance(outcome, Failure):
        logger.debug("CAS client: serviceResponse decoded as failure %s", outcome.code)
    return outcome

