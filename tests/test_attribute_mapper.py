import logging

import pytest

from cas_auth.config import AttributeExtractionRule, AttributeMergePolicy, CasSourceConfig
from cas_auth.core import response_parser
from cas_auth.core.attribute_mapper import apply_rules, attribute_key, combine, derive_attributes, map_attributes
from cas_auth.core.errors import ExtractionError
from cas_auth.core.outcome import RawAttribute
from cas_auth.core.xmlutils import parse_document

from conftest import AUTHSOURCES, read_response


def rules(**queries):
    return [AttributeExtractionRule(name=name, query=query) for name, query in queries.items()]


def parsed(body):
    outcome = response_parser.parse(body)
    assert outcome.username
    return outcome


def test_attribute_key_rules():
    assert attribute_key(RawAttribute("sn", "", "Doe")) == "sn"
    assert attribute_key(RawAttribute("sn", "cas", "Doe")) == "sn"
    assert attribute_key(RawAttribute("person", "slate", "1")) == "slate:person"
    # metadata siblings keep a cas: prefix
    assert attribute_key(RawAttribute("sn", "", "Doe", is_metadata=True)) == "sn"
    assert attribute_key(RawAttribute("sn", "cas", "Doe", is_metadata=True)) == "cas:sn"
    assert attribute_key(RawAttribute("person", "slate", "1", is_metadata=True)) == "slate:person"


def test_derive_attributes_accumulates_without_dedup():
    derived = derive_attributes([
        RawAttribute("memberOf", "cas", " a "),
        RawAttribute("memberOf", "", "a"),
        RawAttribute("memberOf", "cas", "b"),
        RawAttribute("", "cas", "skipped"),
    ])
    assert derived == {"memberOf": ["a", "a", "b"]}


@pytest.mark.parametrize("source", ["casserver", "casserver_legacy"])
def test_configured_rules_extract_values(source):
    config = CasSourceConfig.from_authsource(AUTHSOURCES[source])
    outcome = parsed(read_response("cas-success-service-response.xml"))

    extracted = apply_rules(outcome.document, config.attribute_rules, outcome.success_element)

    assert extracted == {
        "uid": ["jdoe"],
        "person": ["12345"],
        "person_top": ["12345_top"],
        "sn": ["Doe"],
        "givenName": ["John"],
        "mail": ["jdoe@example.edu"],
        "eduPersonPrincipalName": ["jdoe@example.edu"],
    }


def test_absolute_and_relative_rules_agree():
    outcome = parsed(read_response("cas-success-service-response.xml"))
    legacy = apply_rules(
        outcome.document,
        rules(sn="/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:sn"),
        outcome.success_element,
    )
    relative = apply_rules(outcome.document, rules(sn="cas:attributes/cas:sn"), outcome.success_element)
    assert legacy == relative == {"sn": ["Doe"]}


def test_absolute_rewrite_is_logged(caplog):
    outcome = parsed(read_response("cas-success-service-response.xml"))
    with caplog.at_level(logging.INFO, logger="cas_auth.core.attribute_mapper"):
        apply_rules(
            outcome.document,
            rules(mail="/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:mail"),
            outcome.success_element,
        )
    assert 'rewriting absolute CAS XPath for "mail"' in caplog.text
    assert 'to relative "cas:attributes/cas:mail"' in caplog.text


def test_absolute_rule_without_marker_runs_on_document():
    outcome = parsed(read_response("cas-success-service-response.xml"))
    extracted = apply_rules(
        outcome.document,
        rules(person="//slate:person", user="/cas:serviceResponse//cas:user"),
        outcome.success_element,
    )
    assert extracted == {"person": ["12345", "12345_top"], "user": ["jdoe"]}


def test_absolute_rule_without_success_element_is_not_rewritten():
    document = parse_document(read_response("cas-success-service-response.xml"))
    extracted = apply_rules(
        document,
        rules(
            sn="/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:sn",
            relative="cas:authenticationSuccess/cas:user",
        ),
    )
    # relative rules fall back to the document root
    assert extracted == {"sn": ["Doe"], "relative": ["jdoe"]}


def test_rule_values_are_deduplicated_in_order():
    outcome = parsed(
        "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>"
        "<cas:authenticationSuccess><cas:user>jdoe</cas:user><cas:attributes>"
        "<cas:group>b</cas:group><cas:group> a </cas:group><cas:group>b</cas:group><cas:group>a</cas:group>"
        "</cas:attributes></cas:authenticationSuccess></cas:serviceResponse>"
    )
    extracted = apply_rules(outcome.document, rules(group="cas:attributes/cas:group"), outcome.success_element)
    assert extracted == {"group": ["b", "a"]}
    # the auto-derived values keep every occurrence
    assert outcome.raw_attributes == {"group": ["b", "a", "b", "a"]}


def test_rule_matching_nothing_yields_no_key():
    outcome = parsed(read_response("cas-success-service-response.xml"))
    extracted = apply_rules(outcome.document, rules(phone="cas:attributes/cas:phone"), outcome.success_element)
    assert extracted == {}


def test_invalid_rule_does_not_stop_others(caplog):
    outcome = parsed(read_response("cas-success-service-response.xml"))
    errors = []
    with caplog.at_level(logging.WARNING, logger="cas_auth.core.attribute_mapper"):
        extracted = apply_rules(
            outcome.document,
            rules(broken="cas:attributes/[", unknown="nope:attributes", sn="cas:attributes/cas:sn"),
            outcome.success_element,
            errors,
        )
    assert extracted == {"sn": ["Doe"]}
    assert [e.name for e in errors] == ["broken", "unknown"]
    assert all(isinstance(e, ExtractionError) for e in errors)
    assert "broken" in caplog.text


def test_scalar_query_results():
    outcome = parsed(read_response("cas-success-service-response.xml"))
    extracted = apply_rules(
        outcome.document,
        rules(
            surname="string(cas:attributes/cas:sn)",
            groups="count(cas:attributes/cas:memberOf)",
            has_mail="boolean(cas:attributes/cas:mail)",
        ),
        outcome.success_element,
    )
    assert extracted == {"surname": ["Doe"], "groups": ["2"], "has_mail": ["true"]}


def test_attribute_node_results():
    outcome = parsed(
        "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>"
        "<cas:authenticationSuccess><cas:user>jdoe</cas:user><cas:attributes>"
        "<cas:attribute name='mail' value='jdoe@example.edu'/>"
        "</cas:attributes></cas:authenticationSuccess></cas:serviceResponse>"
    )
    extracted = apply_rules(
        outcome.document,
        rules(mail="cas:attributes/cas:attribute[@name='mail']/@value"),
        outcome.success_element,
    )
    assert extracted == {"mail": ["jdoe@example.edu"]}


def test_rules_replace_auto_derived_values():
    outcome = parsed(
        "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas' xmlns:slate='http://technolutions.com/slate'>"
        "<cas:authenticationSuccess><cas:user>jdoe</cas:user>"
        "<cas:attributes><cas:sn>Doe</cas:sn><cas:mail>jdoe@example.edu</cas:mail></cas:attributes>"
        "<slate:profile><cas:sn>Smith</cas:sn></slate:profile>"
        "</cas:authenticationSuccess></cas:serviceResponse>"
    )
    attributes = map_attributes(outcome, rules(sn="//slate:profile/cas:sn"))
    assert attributes["sn"] == ["Smith"]
    assert attributes["mail"] == ["jdoe@example.edu"]


def test_rule_on_sibling_element_wins():
    outcome = parsed(
        "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas' xmlns:slate='http://technolutions.com/slate'>"
        "<cas:authenticationSuccess><cas:user>jdoe</cas:user>"
        "<cas:attributes><cas:sn>Doe</cas:sn></cas:attributes>"
        "<slate:person>12345</slate:person>"
        "</cas:authenticationSuccess></cas:serviceResponse>"
    )
    attributes = map_attributes(outcome, rules(sn="//slate:person"))
    assert attributes["sn"] == ["12345"]
    assert "person" not in attributes


def test_combine_policies():
    derived = {"sn": ["Doe"], "mail": ["a@x", "a@x"]}
    rule_based = {"sn": ["Smith", "Doe"], "uid": ["jdoe"]}

    replaced = combine(derived, rule_based)
    assert replaced == {"sn": ["Smith", "Doe"], "mail": ["a@x", "a@x"], "uid": ["jdoe"]}
    assert list(replaced) == ["sn", "mail", "uid"]

    appended = combine(derived, rule_based, AttributeMergePolicy.APPEND)
    assert appended == {"sn": ["Doe", "Smith"], "mail": ["a@x", "a@x"], "uid": ["jdoe"]}

    # inputs untouched
    assert derived == {"sn": ["Doe"], "mail": ["a@x", "a@x"]}


def test_no_rules_keeps_auto_derived_map():
    outcome = parsed(read_response("cas-success-service-response.xml"))
    assert map_attributes(outcome, []) == outcome.raw_attributes


def test_auto_map_matches_explicit_rules():
    """The auto-derived map equals what explicit queries extract for the same elements."""
    outcome = parsed(read_response("cas-success-service-response.xml"))
    explicit = apply_rules(
        outcome.document,
        rules(
            firstname="cas:attributes/cas:firstname",
            sn="cas:attributes/cas:sn",
            mail="cas:attributes/cas:mail",
            eduPersonPrincipalName="cas:attributes/cas:eduPersonPrincipalName",
            memberOf="cas:attributes/cas:memberOf",
        ),
        outcome.success_element,
    )
    for key, values in explicit.items():
        assert outcome.raw_attributes[key] == values


def test_empty_scalar_result_yields_no_key():
    outcome = parsed(read_response("cas-success-service-response.xml"))
    extracted = apply_rules(
        outcome.document,
        rules(phone="string(cas:attributes/cas:phone)", sn="string(cas:attributes/cas:sn)"),
        outcome.success_element,
    )
    assert extracted == {"sn": ["Doe"]}
