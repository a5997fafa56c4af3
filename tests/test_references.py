"""Tests for reference parsing and resolution."""

import pytest

from provisioner.references import (
    UNKNOWN,
    InvalidReferenceError,
    ParameterRef,
    Reference,
    Template,
    contains_unknown,
    iter_references,
    lookup_attribute,
    parse_reference,
    parse_value,
    render_value,
    resolve_value,
    substitute_parameters,
)


class TestParsing:
    """Tests for reference syntax."""

    def test_bare_name_refers_to_id(self) -> None:
        """Test that a bare name references the physical id."""
        assert parse_reference("ProxyVpc") == Reference("ProxyVpc", "id")

    def test_attribute_path(self) -> None:
        """Test a dotted attribute path."""
        assert parse_reference("Ip.properties.ipAddress") == Reference(
            "Ip", "properties.ipAddress"
        )

    @pytest.mark.parametrize("expression", ["1abc", "Vpc..id", "Vpc.-", "a b"])
    def test_invalid_reference(self, expression: str) -> None:
        """Test that malformed references are rejected."""
        with pytest.raises(InvalidReferenceError):
            parse_reference(expression)

    def test_ref_mapping(self) -> None:
        """Test {ref: ...} and {param: ...} mappings."""
        value = parse_value({"role": {"ref": "Role.arn"}, "model": {"param": "ModelId"}})

        assert value == {"role": Reference("Role", "arn"), "model": ParameterRef("ModelId")}

    def test_template(self) -> None:
        """Test string interpolation."""
        value = parse_value("http://${Alb.dnsName}/api/v1")

        assert value == Template(("http://", Reference("Alb", "dnsName"), "/api/v1"))

    def test_escaped_template(self) -> None:
        """Test that $${ produces a literal ${."""
        assert parse_value("cost: $${price}") == "cost: ${price}"

    def test_plain_values_unchanged(self) -> None:
        """Test that values without references come back as-is."""
        raw = {"port": 80, "tags": ["a", "b"], "open": True}
        assert parse_value(raw) == raw

    def test_iter_references(self) -> None:
        """Test that nested references are all found."""
        value = parse_value(
            {"a": {"ref": "A"}, "b": ["${B.x}-${C}"], "c": {"nested": {"ref": "D.y"}}}
        )

        assert {ref.resource for ref in iter_references(value)} == {"A", "B", "C", "D"}


class TestSubstitution:
    """Tests for parameters and resolution."""

    def test_substitute_parameters_in_template(self) -> None:
        """Test that substituted parameters merge into literal text."""
        value = parse_value("${param:Env}-${Vpc}-suffix")
        result = substitute_parameters(value, {"Env": "prod"})

        assert result == Template(("prod-", Reference("Vpc", "id"), "-suffix"))

    def test_fully_literal_template_collapses(self) -> None:
        """Test that a template with only parameters becomes a plain string."""
        value = parse_value("${param:Env}.example.com")
        assert substitute_parameters(value, {"Env": "dev"}) == "dev.example.com"

    def test_resolve_value(self) -> None:
        """Test resolving references through a lookup."""
        known = {("Alb", "dnsName"): "lb.example.com", ("Vpc", "id"): "vpc-1"}
        value = parse_value({"url": "http://${Alb.dnsName}/", "vpc": {"ref": "Vpc"}})

        result = resolve_value(value, lambda ref: known[(ref.resource, ref.attribute)])

        assert result == {"url": "http://lb.example.com/", "vpc": "vpc-1"}

    def test_template_with_unknown_is_unknown(self) -> None:
        """Test that one unknown part makes the whole string unknown."""
        value = parse_value("http://${Alb.dnsName}/")

        assert resolve_value(value, lambda ref: UNKNOWN) is UNKNOWN
        assert contains_unknown({"url": resolve_value(value, lambda ref: UNKNOWN)})

    def test_lookup_attribute(self) -> None:
        """Test dotted lookups through dicts and lists."""
        attributes = {"properties": {"ips": ["10.0.0.1", "10.0.0.2"]}}

        assert lookup_attribute(attributes, "properties.ips.1") == "10.0.0.2"
        with pytest.raises(KeyError):
            lookup_attribute(attributes, "properties.missing")

    def test_render_value(self) -> None:
        """Test display rendering of unresolved values."""
        value = {"a": Reference("Vpc", "id"), "b": UNKNOWN}

        assert render_value(value) == {"a": "${Vpc.id}", "b": "(known after apply)"}
