"""Tests for package document parsing and rendering."""

import json
from pathlib import Path

import pytest
import yaml

from schema_engine.errors import ConflictError, LoadError, PackageLoadError
from schema_engine.schemas import AtomKind, AtomType, CompositeType, ConditionalType, ListType, RefType, StructType
from schema_engine.schemas.canonical import PackageDocumentParser, parse_package_document, to_document
from schema_engine.schemas.parser import (
    detect_format,
    discover_package_files,
    parse_package_file,
    parse_package_string,
)

# Test data paths
PACKAGES_DIR = Path(__file__).parent.parent / "examples" / "packages"


def parse(content: str, source_file: str | None = None):
    return parse_package_string(content, source_file)


def definition(content: str, name: str = "T"):
    return parse(content).definitions[name]


# =============================================================================
# Document Shape Tests
# =============================================================================

class TestDocumentShape:
    """Tests for structural validation of documents."""

    def test_minimal_package(self):
        package = parse("package: p\n")
        assert package.name == "p"
        assert package.imports == ()
        assert package.definitions == {}

    def test_missing_package_name(self):
        with pytest.raises(PackageLoadError) as exc_info:
            parse("definitions: {}\n")
        assert "'package' is a required property" in str(exc_info.value)

    def test_unknown_top_level_key(self):
        with pytest.raises(PackageLoadError, match="typo"):
            parse("package: p\ntypo: 1\n")

    def test_not_a_mapping(self):
        with pytest.raises(PackageLoadError, match="mapping"):
            parse("- a\n- b\n")

    def test_invalid_yaml(self):
        with pytest.raises(PackageLoadError, match="invalid YAML"):
            parse("package: [\n")

    def test_json_by_suffix(self):
        package = parse(json.dumps({"package": "p", "definitions": {"T": "string"}}), "p.json")
        assert package.definitions["T"] == AtomType(kind=AtomKind.STRING)

    def test_invalid_json(self):
        with pytest.raises(PackageLoadError, match="invalid JSON"):
            parse("{", "p.json")

    def test_version_kept_as_string(self):
        assert parse("package: p\nversion: 2\n").version == "2"

    def test_errors_carry_source_file(self):
        with pytest.raises(PackageLoadError) as exc_info:
            parse("package: p\ntypo: 1\n", "p.yaml")
        assert exc_info.value.errors[0].location.source_file == "p.yaml"


# =============================================================================
# Type Expression Tests
# =============================================================================

class TestTypeExpressions:
    """Tests for the compact type notation."""

    def test_scalar_shorthand(self):
        assert definition("package: p\ndefinitions:\n  T: bool\n") == AtomType(kind=AtomKind.BOOL)

    def test_null(self):
        assert definition("package: p\ndefinitions:\n  T: null\n") == AtomType(kind=AtomKind.NULL)

    def test_int_is_number_with_integer(self):
        expr = definition("package: p\ndefinitions:\n  T: int\n")
        assert expr.kind == AtomKind.NUMBER
        assert [r.rule for r in expr.refinements] == ["integer"]

    def test_refined_number(self):
        expr = definition("package: p\ndefinitions:\n  T: {type: number, minimum: 0, maximum: 10, exclusive_maximum: true}\n")
        r = expr.find("range")[0]
        assert (r.minimum, r.maximum, r.exclusive_maximum) == (0, 10, True)

    def test_field_bound(self):
        expr = definition("package: p\ndefinitions:\n  T: {type: int, minimum: {field: start}}\n")
        bound = expr.find("field_bound")[0]
        assert (bound.op, bound.field) == (">=", "start")

    def test_string_refinements(self):
        expr = definition(
            "package: p\ndefinitions:\n"
            "  T: {type: string, min_length: 1, max_length: 3, pattern: ['^[A-Z]', '[A-Z]$'], format: email}\n"
        )
        assert [r.rule for r in expr.refinements] == ["length", "pattern", "pattern", "format"]

    def test_refinement_wrong_kind(self):
        with pytest.raises(PackageLoadError, match="does not apply to string"):
            parse("package: p\ndefinitions:\n  T: {type: string, minimum: 1}\n")

    def test_invalid_pattern(self):
        with pytest.raises(PackageLoadError, match="invalid pattern"):
            parse("package: p\ndefinitions:\n  T: {type: string, pattern: '['}\n")

    def test_unknown_format(self):
        with pytest.raises(PackageLoadError, match="invalid format"):
            parse("package: p\ndefinitions:\n  T: {type: string, format: phone}\n")

    def test_contradictory_atom_is_conflict(self):
        with pytest.raises(PackageLoadError) as exc_info:
            parse("package: p\ndefinitions:\n  T: {type: number, minimum: 10, maximum: 5}\n")
        error = exc_info.value.errors[0]
        assert isinstance(error, ConflictError)
        assert error.location.definition == "T"

    def test_enum_grouped_by_kind(self):
        expr = definition("package: p\ndefinitions:\n  T: {enum: [a, b, 1]}\n")
        kinds = sorted(alt.kind.value for alt in expr.alternatives)
        assert kinds == ["number", "string"]

    def test_struct(self):
        expr = definition(
            "package: p\ndefinitions:\n"
            "  T:\n"
            "    type: struct\n"
            "    closed: true\n"
            "    fields:\n"
            "      a: string\n"
            "      b: {type: int, required: false, default: 3, description: count}\n"
        )
        assert isinstance(expr, StructType)
        assert expr.closed
        assert list(expr.fields) == ["a", "b"]
        b = expr.fields["b"]
        assert (b.required, b.has_default, b.default, b.description) == (False, True, 3, "count")

    def test_null_default_is_a_default(self):
        expr = definition("package: p\ndefinitions:\n  T: {type: struct, fields: {a: {one_of: [string, null], default: null}}}\n")
        assert expr.fields["a"].has_default
        assert expr.fields["a"].default is None

    def test_field_keys_outside_struct(self):
        with pytest.raises(PackageLoadError, match="only allowed on struct fields"):
            parse("package: p\ndefinitions:\n  T: {type: string, required: false}\n")

    def test_list(self):
        expr = definition("package: p\ndefinitions:\n  T: {type: list, items: int, min_items: 1}\n")
        assert isinstance(expr, ListType)
        assert expr.min_items == 1

    def test_list_needs_items(self):
        with pytest.raises(PackageLoadError, match="needs 'items'"):
            parse("package: p\ndefinitions:\n  T: {type: list}\n")

    def test_list_count_conflict(self):
        with pytest.raises(PackageLoadError, match="item count"):
            parse("package: p\ndefinitions:\n  T: {type: list, items: int, min_items: 3, max_items: 1}\n")

    def test_references_are_qualified(self):
        package = parse(
            "package: p\nimports: [base]\ndefinitions:\n"
            "  A: string\n  B: A\n  C: base.Money\n  D: {ref: A}\n  E: {type: base.Money}\n"
        )
        assert package.definitions["B"] == RefType(name="A", package="p")
        assert package.definitions["C"] == RefType(name="Money", package="base")
        assert package.definitions["D"] == RefType(name="A", package="p")
        assert package.definitions["E"] == RefType(name="Money", package="base")

    def test_all_of_builds_composite(self):
        expr = definition("package: p\ndefinitions:\n  A: string\n  T: {all_of: [A, {type: string, min_length: 1}, A]}\n")
        assert isinstance(expr, CompositeType)
        assert len(expr.operands()) == 3

    def test_when_then(self):
        expr = definition("package: p\ndefinitions:\n  T: {when: {field: kind, in: [a, b]}, then: {type: struct, fields: {x: int}}}\n")
        assert isinstance(expr, ConditionalType)
        assert expr.predicate.op == "in"

    def test_present_predicate(self):
        expr = definition(
            "package: p\ndefinitions:\n"
            "  T:\n"
            "    type: struct\n"
            "    conditionals:\n"
            "      - when: {field: a, present: false}\n"
            "        then: {type: struct, fields: {b: string}}\n"
        )
        assert expr.conditionals[0].predicate.op == "absent"

    def test_reserved_definition_name(self):
        with pytest.raises(PackageLoadError, match="reserved"):
            parse("package: p\ndefinitions:\n  string: int\n")

    def test_all_broken_definitions_reported(self):
        with pytest.raises(PackageLoadError) as exc_info:
            parse(
                "package: p\ndefinitions:\n"
                "  A: {type: string, format: phone}\n"
                "  B: string\n"
                "  C: {type: list}\n"
            )
        assert [e.location.definition for e in exc_info.value.errors] == ["A", "C"]
        assert all(isinstance(e, LoadError) for e in exc_info.value.errors)


class TestMachines:
    """Tests for state machine documents."""

    def test_machine(self):
        package = parse("package: p\nmachines:\n  S: {a: [b], b: []}\n")
        assert package.machines["S"].transitions == {"a": ("b",), "b": ()}

    def test_undeclared_target(self):
        with pytest.raises(PackageLoadError, match="invalid state machine"):
            parse("package: p\nmachines:\n  S: {a: [b]}\n")


# =============================================================================
# Rendering Tests
# =============================================================================

class TestToDocument:
    """Tests for rendering type expressions back to document notation."""

    def test_render_parses_back(self):
        source = (
            "package: p\ndefinitions:\n"
            "  T:\n"
            "    type: struct\n"
            "    closed: true\n"
            "    fields:\n"
            "      amount: {type: int, minimum: 0}\n"
            "      currency: {type: string, pattern: '^[A-Z]{3}$'}\n"
            "      tags: {type: list, items: {enum: [x, y]}, max_items: 2}\n"
            "      note: {type: string, required: false, default: ''}\n"
            "      end: {type: number, minimum: {field: amount}, exclusive_minimum: true}\n"
        )
        expr = definition(source)
        rendered = yaml.safe_dump({"package": "p", "definitions": {"T": to_document(expr, "p")}})
        assert definition(rendered) == expr

    def test_scalar_shorthand(self):
        assert to_document(AtomType(kind=AtomKind.STRING)) == "string"

    def test_reference_relative_to_package(self):
        assert to_document(RefType(name="A", package="p"), "p") == "A"
        assert to_document(RefType(name="A", package="q"), "p") == "q.A"

    def test_not_an_expression(self):
        with pytest.raises(TypeError):
            to_document(42)


# =============================================================================
# File Tests
# =============================================================================

class TestFiles:
    """Tests for file discovery and reading."""

    def test_discover_directory(self):
        files = discover_package_files([PACKAGES_DIR])
        assert [f.name for f in files] == ["base.yaml", "billing.yaml"]

    def test_discover_missing_path(self, temp_dir):
        with pytest.raises(PackageLoadError, match="does not exist"):
            discover_package_files([temp_dir / "missing"])

    def test_discover_patterns(self, write_package, temp_dir):
        write_package("a.yaml", "package: a\n")
        write_package("nested/b.json", '{"package": "b"}')
        write_package("notes.txt", "hello")
        assert [f.name for f in discover_package_files([temp_dir])] == ["a.yaml", "b.json"]
        assert [f.name for f in discover_package_files([temp_dir], ["*.json"])] == ["b.json"]

    def test_detect_format(self):
        assert detect_format("a.yml") == "yaml"
        assert detect_format("a.JSON") == "json"
        with pytest.raises(ValueError):
            detect_format("a.txt")

    def test_parse_file(self):
        package = parse_package_file(PACKAGES_DIR / "base.yaml")
        assert package.name == "base"
        assert package.source_file.endswith("base.yaml")
        assert "OrderStatus" in package.machines

    def test_parse_file_bad_extension(self, write_package):
        path = write_package("a.txt", "package: a\n")
        with pytest.raises(PackageLoadError, match="extension"):
            parse_package_file(path)

    def test_parse_package_document(self):
        assert parse_package_document(PACKAGES_DIR / "billing.yaml").imports == ("base",)

    def test_parser_from_file_missing(self, temp_dir):
        with pytest.raises(PackageLoadError, match="cannot read file"):
            PackageDocumentParser.from_file(temp_dir / "missing.yaml")
