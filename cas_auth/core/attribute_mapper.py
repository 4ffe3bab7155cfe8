import json
import logging
import re
from typing import Iterable, List, Optional, Sequence

from lxml import etree

from ..config import AttributeExtractionRule, AttributeMergePolicy
from .errors import ExtractionError
from .outcome import AttributeMap, RawAttribute, Success
from .xmlutils import CAS_PREFIX, namespace_map, text_content

logger = logging.getLogger(__name__)

# Legacy configurations address attributes from the document root, e.g.
# /cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:sn
_SUCCESS_MARKER = re.compile(r"(?:[A-Za-z_][\w.-]*:)?authenticationSuccess/")


def attribute_key(attribute: RawAttribute) -> str:
    if attribute.prefix == "":
        return attribute.local_name
    # Elements inside the attributes container are CAS attributes already, so
    # a cas: prefix carries no information. Metadata siblings keep theirs.
    if attribute.prefix == CAS_PREFIX and not attribute.is_metadata:
        return attribute.local_name
    return f"{attribute.prefix}:{attribute.local_name}"


def derive_attributes(elements: Iterable[RawAttribute]) -> AttributeMap:
    """
    Flatten the raw attribute elements of an authenticationSuccess block.
    Values with the same key accumulate in document order, duplicates included.
    """
    result: AttributeMap = {}
    for attribute in elements:
        if not attribute.local_name:
            continue
        result.setdefault(attribute_key(attribute), []).append(attribute.text.strip())
    return result


def unique(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


def _values_of(result) -> List[str]:
    # XPath can return a node-set, a string, a number or a boolean
    if isinstance(result, list):
        values = []
        for node in result:
            if isinstance(node, etree._Element):
                values.append(text_content(node))
            else:
                values.append(str(node).strip())
        return values
    if isinstance(result, bool):
        return ["true" if result else "false"]
    if isinstance(result, float):
        return [str(int(result)) if result.is_integer() else str(result)]
    # string() of an empty node-set is "", which is no match
    value = str(result).strip()
    return [value] if value else []


def _resolve(rule: AttributeExtractionRule, root, success_element):
    """Pick the query to run and the node to run it from."""
    query = rule.query
    if rule.is_absolute:
        match = _SUCCESS_MARKER.search(query)
        if match and success_element is not None:
            relative = query[match.end():]
            logger.info(
                'CAS client: rewriting absolute CAS XPath for "%s" from "%s" to relative "%s"',
                rule.name, query, relative,
            )
            return relative, success_element
        return query, root
    return query, success_element if success_element is not None else root


def apply_rules(
    document,
    rules: Sequence[AttributeExtractionRule],
    success_element=None,
    errors: Optional[List[ExtractionError]] = None,
) -> AttributeMap:
    """
    Evaluate the configured attribute queries against a validation response.

    Every rule is evaluated on its own: an invalid query is logged (and
    collected into `errors` when given) without stopping the other rules.
    Rules matching nothing produce no key. Values are deduplicated.
    """
    if not rules or document is None:
        return {}

    root = document.getroot() if hasattr(document, "getroot") else document
    nsmap = namespace_map(root)
    result: AttributeMap = {}

    for rule in rules:
        query, context = _resolve(rule, root, success_element)
        try:
            values = _values_of(context.xpath(query, namespaces=nsmap))
        except etree.XPathError as e:
            error = ExtractionError(rule.name, rule.query, str(e))
            logger.warning("CAS client: %s", error)
            if errors is not None:
                errors.append(error)
            continue

        if values:
            result.setdefault(rule.name, []).extend(values)

        logger.debug(
            "CAS client: parsed metadata %s => %s",
            rule.name, json.dumps(result.get(rule.name, [])),
        )

    return {name: unique(values) for name, values in result.items()}


def combine(
    derived: AttributeMap,
    rule_based: AttributeMap,
    policy: AttributeMergePolicy = AttributeMergePolicy.REPLACE,
) -> AttributeMap:
    combined = {key: list(values) for key, values in derived.items()}
    for name, values in rule_based.items():
        if policy == AttributeMergePolicy.APPEND:
            combined[name] = unique(combined.get(name, []) + list(values))
        else:
            # configuration wins
            combined[name] = unique(values)
    return combined


def map_attributes(
    success: Success,
    rules: Sequence[AttributeExtractionRule],
    policy: AttributeMergePolicy = AttributeMergePolicy.REPLACE,
    errors: Optional[List[ExtractionError]] = None,
) -> AttributeMap:
    """Attributes of a successful validation: auto-derived, then overridden by rules."""
    rule_based = apply_rules(success.document, rules, success.success_element, errors)
    return combine(success.raw_attributes, rule_based, policy)
