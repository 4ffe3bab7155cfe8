from typing import Dict, Union

from lxml import etree

CAS_NS = "http://www.yale.edu/tp/cas"
SLATE_NS = "http://technolutions.com/slate"

CAS_PREFIX = "cas"
SLATE_PREFIX = "slate"

# Validation responses come from a remote server: never resolve entities or fetch DTDs.
_parser = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    remove_comments=True,
    remove_pis=True,
    huge_tree=False,
)


def parse_document(body: Union[str, bytes]) -> etree._ElementTree:
    """Raises etree.XMLSyntaxError when the body is not well-formed."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return etree.ElementTree(etree.fromstring(body, parser=_parser))


def local_name(element) -> str:
    return etree.QName(element).localname


def namespace(element) -> str:
    return etree.QName(element).namespace or ""


def prefix_of(element) -> str:
    return element.prefix or ""


def text_content(element) -> str:
    """Concatenated text of the element and all its descendants, trimmed."""
    return "".join(element.itertext()).strip()


def namespace_map(document) -> Dict[str, str]:
    """
    Prefixes usable in attribute queries: cas and slate always, plus every
    prefix declared anywhere in the document. Default namespaces have no
    prefix in XPath 1.0 and are left out.
    """
    declared = {}
    root = document.getroot() if hasattr(document, "getroot") else document
    for element in root.iter(etree.Element):
        for prefix, uri in element.nsmap.items():
            if prefix and prefix not in declared:
                declared[prefix] = uri
    return {CAS_PREFIX: CAS_NS, SLATE_PREFIX: SLATE_NS, **declared}
