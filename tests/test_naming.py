import re

import pytest

from tailnest.naming import (
    LABEL_HOSTNAME_LENGTH,
    InvalidNamespaceName,
    check_for_fqdn_rules,
    generate_given_name,
    normalize_to_fqdn_rules,
)


@pytest.mark.parametrize(
    ("name", "strip", "expected"),
    [
        ("normalize-simple.name", False, "normalize-simple.name"),
        ("foo.bar@example.com", False, "foo.bar.example.com"),
        ("foo.bar@example.com", True, "foo.bar"),
        ("not-email-and-strip-enabled", True, "not-email-and-strip-enabled"),
        ("foo.bar+complex-email@example.com", False, "foo.bar-complex-email.example.com"),
        ("name space", False, "name-space"),
        ("Jamie's iPhone 5", False, "jamies-iphone-5"),
    ],
)
def test_normalize_to_fqdn_rules(name, strip, expected):
    assert normalize_to_fqdn_rules(name, strip) == expected


def test_normalize_leading_at_is_not_stripped():
    assert normalize_to_fqdn_rules("@example.com", True) == ".example.com"


def test_normalize_rejects_long_label():
    with pytest.raises(InvalidNamespaceName, match="more than 63 chars"):
        normalize_to_fqdn_rules("a" * 64, False)


def test_normalize_accepts_long_name_with_short_labels():
    name = ".".join(["a" * 60] * 3)
    assert normalize_to_fqdn_rules(name, False) == name


def test_check_for_fqdn_rules_valid():
    assert check_for_fqdn_rules("valid-namespace") == "valid-namespace"


@pytest.mark.parametrize(
    "name",
    [
        "Invalid-CapItaLIzed-namespace",
        "foo.bar@example.com",
        "super-namespace+name",
        "super-long-namespace-name-that-should-be-a-little-more-than-63-chars",
    ],
)
def test_check_for_fqdn_rules_invalid(name):
    with pytest.raises(InvalidNamespaceName):
        check_for_fqdn_rules(name)


def test_check_for_fqdn_rules_messages():
    with pytest.raises(InvalidNamespaceName, match="lowercase"):
        check_for_fqdn_rules("Upper")
    with pytest.raises(InvalidNamespaceName, match="over 63 chars"):
        check_for_fqdn_rules("a" * 64)
    with pytest.raises(InvalidNamespaceName, match="hyphen and dots"):
        check_for_fqdn_rules("a_b")


def test_invalid_namespace_name_is_value_error():
    with pytest.raises(ValueError):
        check_for_fqdn_rules("Bad Name")


_SUFFIX = re.compile(r"-[a-z0-9]{8}")


def test_generate_given_name_simple():
    got = generate_given_name("testmachine", True)
    assert got.startswith("testmachine-")
    assert len(got) == len("testmachine") + 9
    assert _SUFFIX.fullmatch(got[-9:])


@pytest.mark.parametrize(
    "supplied",
    [
        "testmaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaachine",
        "testmaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaachine1234567",
        "testmaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaachine1234567890",
        "testmaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaachine1234567891",
    ],
)
def test_generate_given_name_fits_label(supplied):
    got = generate_given_name(supplied, True)
    assert len(got) <= LABEL_HOSTNAME_LENGTH
    assert _SUFFIX.fullmatch(got[-9:])
    base = got[:-9]
    assert supplied.startswith(base)
    assert len(base) == min(len(supplied), 53)


def test_generate_given_name_too_long_label():
    with pytest.raises(InvalidNamespaceName):
        generate_given_name(
            "testmaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaachine12345678901234567890",
            True,
        )


def test_generate_given_name_normalizes_and_strips_domain():
    got = generate_given_name("Joe.Smith@example.com", True)
    assert got.startswith("joe.smith-")
    assert _SUFFIX.fullmatch(got[-9:])


def test_generate_given_name_random_suffix():
    names = {generate_given_name("host", False) for _ in range(20)}
    assert len(names) > 1
    assert all(name.startswith("host-") and len(name) == 13 for name in names)