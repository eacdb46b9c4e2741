"""Tests for entitlement parsing."""

from docklytask.auth.claims import ClaimBag
from docklytask.auth.entitlements import (
    entitlement_claim_tenants,
    entitlement_role_tenants,
    group_path_tenants,
    parse_entitlements,
    split_entitlement_value,
)

NAMES = ["use_docklytask", "manage_docklytask"]


class TestSplitEntitlementValue:
    def test_list(self):
        assert split_entitlement_value(["acme", " beta ", "", 3]) == ["acme", "beta"]

    def test_semicolon_and_comma(self):
        assert split_entitlement_value("acme; beta,gamma") == ["acme", "beta", "gamma"]

    def test_other_types(self):
        assert split_entitlement_value(None) == []
        assert split_entitlement_value({"a": 1}) == []


class TestEntitlementSources:
    def test_top_level_and_nested_claims(self):
        bag = ClaimBag(
            {
                "use_docklytask": "acme;beta",
                "extra": {"manage_docklytask": ["gamma"]},
                "attributes": {"use_docklytask": "delta"},
            }
        )
        assert entitlement_claim_tenants(bag, NAMES) == {"acme", "beta", "gamma", "delta"}

    def test_client_role_grants(self):
        bag = ClaimBag(
            {
                "resource_access": {
                    "docklytask": {
                        "roles": [
                            "use_docklytask:acme-gmbh",
                            "manage_docklytask=beta",
                            "use_docklytask:",
                            "unrelated:zeta",
                        ]
                    }
                }
            }
        )
        assert entitlement_role_tenants(bag, NAMES) == {"acme-gmbh", "beta"}

    def test_role_grants_without_names(self):
        bag = ClaimBag({"resource_access": {"c": {"roles": ["use_docklytask:acme"]}}})
        assert entitlement_role_tenants(bag, []) == set()

    def test_group_paths(self):
        groups = ["/customers/ACME", "tenant/beta/team", "/realm-management/view-users"]
        assert group_path_tenants(groups) == {"ACME", "beta"}


class TestParseEntitlements:
    def test_union_is_deduplicated(self):
        bag = ClaimBag(
            {
                "use_docklytask": ["acme-gmbh"],
                "resource_access": {"app": {"roles": ["use_docklytask:acme-gmbh"]}},
                "groups": ["/customers/ACME"],
            }
        )
        assert parse_entitlements(bag, NAMES) == {"acme-gmbh", "ACME"}

    def test_no_entitlements(self):
        assert parse_entitlements(ClaimBag({"email": "a@b.de"}), NAMES) == set()

    def test_nested_claim_shadowed_by_later_source(self):
        bag = ClaimBag(
            {"attributes": {"use_docklytask": "acme"}},
            {"attributes": {"locale": "de"}},
        )
        assert parse_entitlements(bag, ["use_docklytask"]) == {"acme"}
