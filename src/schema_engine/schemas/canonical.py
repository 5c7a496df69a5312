"""Package document parser.

A package document is YAML or JSON with a ``package`` name, optional
``imports``, and named ``definitions`` and ``machines``. Definitions use a
compact type notation: bare strings for scalar kinds and references, and
mappings for refined scalars, structs, lists, unions, compositions and
conditionals. ``to_document`` renders a type expression back into the same
notation.
"""

import json
import re
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from schema_engine.engine.state_machine import StateMachine
from schema_engine.engine.unification import make_atom, make_union
from schema_engine.errors import ConflictError, LoadError, Location, PackageLoadError
from schema_engine.packages.base import Package
from schema_engine.schemas.base import (
    SUPPORTED_FORMATS,
    AtomKind,
    AtomType,
    CompositeType,
    ConditionalType,
    FieldBoundRefinement,
    FieldSpec,
    FormatRefinement,
    IntegerRefinement,
    LengthRefinement,
    ListType,
    LiteralRefinement,
    PatternRefinement,
    Predicate,
    RangeRefinement,
    RefType,
    StructType,
    UnionType,
    compose,
)
from schema_engine.values import ensure_value, kind_of

IDENTIFIER = r"^[A-Za-z_][A-Za-z0-9_]*$"

# Shorthand names that can never be definition names
SCALAR_TYPES = {"string", "number", "int", "bool", "null"}
RESERVED_NAMES = SCALAR_TYPES | {"struct", "list"}

FIELD_KEYS = {"required", "default", "description"}
NUMBER_KEYS = {"minimum", "maximum", "exclusive_minimum", "exclusive_maximum"}
STRING_KEYS = {"min_length", "max_length", "pattern", "format"}
LITERAL_KEYS = {"enum", "const"}

_scalar = {"type": ["null", "boolean", "number", "string"]}
_bound = {
    "oneOf": [
        {"type": "number"},
        {
            "type": "object",
            "properties": {"field": {"type": "string", "minLength": 1}},
            "required": ["field"],
            "additionalProperties": False,
        },
    ]
}

PACKAGE_DOCUMENT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["package"],
    "additionalProperties": False,
    "properties": {
        "package": {"type": "string", "pattern": IDENTIFIER},
        "description": {"type": "string"},
        "version": {"type": ["string", "number"]},
        "imports": {
            "type": "array",
            "items": {"type": "string", "pattern": IDENTIFIER},
            "uniqueItems": True,
        },
        "definitions": {
            "type": "object",
            "propertyNames": {"pattern": IDENTIFIER},
            "additionalProperties": {"$ref": "#/$defs/expr"},
        },
        "machines": {
            "type": "object",
            "propertyNames": {"pattern": IDENTIFIER},
            "additionalProperties": {
                "type": "object",
                "additionalProperties": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
    "$defs": {
        "expr": {
            "oneOf": [
                {"type": "null"},
                {"type": "string", "minLength": 1},
                {"$ref": "#/$defs/node"},
            ]
        },
        "predicate": {
            "type": "object",
            "required": ["field"],
            "additionalProperties": False,
            "minProperties": 2,
            "maxProperties": 2,
            "properties": {
                "field": {"type": "string", "minLength": 1},
                "equals": {},
                "not_equals": {},
                "in": {"type": "array"},
                "present": {"type": "boolean"},
            },
        },
        "node": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "type": {"type": ["string", "null"]},
                "ref": {"type": "string", "minLength": 1},
                "one_of": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/expr"}},
                "all_of": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/expr"}},
                "enum": {"type": "array", "minItems": 1, "items": _scalar},
                "const": _scalar,
                "when": {"$ref": "#/$defs/predicate"},
                "then": {"$ref": "#/$defs/expr"},
                "fields": {
                    "type": "object",
                    "additionalProperties": {"$ref": "#/$defs/expr"},
                },
                "closed": {"type": "boolean"},
                "conditionals": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["when", "then"],
                        "additionalProperties": False,
                        "properties": {
                            "when": {"$ref": "#/$defs/predicate"},
                            "then": {"$ref": "#/$defs/expr"},
                        },
                    },
                },
                "items": {"$ref": "#/$defs/expr"},
                "min_items": {"type": "integer", "minimum": 0},
                "max_items": {"type": "integer", "minimum": 0},
                "minimum": _bound,
                "maximum": _bound,
                "exclusive_minimum": {"type": "boolean"},
                "exclusive_maximum": {"type": "boolean"},
                "min_length": {"type": "integer", "minimum": 0},
                "max_length": {"type": "integer", "minimum": 0},
                "pattern": {
                    "oneOf": [
                        {"type": "string"},
                        {"type": "array", "items": {"type": "string"}, "minItems": 1},
                    ]
                },
                "format": {"type": "string"},
                "required": {"type": "boolean"},
                "default": {},
                "description": {"type": "string"},
            },
        },
    },
}

_validator = Draft202012Validator(PACKAGE_DOCUMENT_SCHEMA)


class PackageDocumentParser:
    """Parser for package documents."""

    def __init__(self, data: Any, source_file: str | None = None):
        """Initialize parser with parsed document data.

        Args:
            data: Parsed YAML/JSON document
            source_file: Optional source file path for error locations

        Raises:
            PackageLoadError: If the document does not have the package shape
        """
        self.data = data
        self.source_file = source_file
        self.errors: list[LoadError | ConflictError] = []
        self._validate_structure()
        self.name: str = data["package"]

    @classmethod
    def from_file(cls, path: Path | str) -> "PackageDocumentParser":
        """Create parser from a YAML or JSON file.

        Args:
            path: Path to the package document

        Returns:
            Initialized PackageDocumentParser
        """
        path = Path(path)
        try:
            content = path.read_text()
        except OSError as e:
            raise PackageLoadError(
                [LoadError(f"cannot read file: {e}", Location(source_file=str(path)))]
            )
        return cls.from_string(content, str(path))

    @classmethod
    def from_string(cls, content: str, source_file: str | None = None) -> "PackageDocumentParser":
        """Create parser from document text.

        ``.json`` sources are read as JSON, everything else as YAML.

        Args:
            content: Document text
            source_file: Optional source file path

        Returns:
            Initialized PackageDocumentParser
        """
        location = Location(source_file=source_file)
        if source_file and Path(source_file).suffix.lower() == ".json":
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise PackageLoadError([LoadError(f"invalid JSON: {e}", location)])
        else:
            try:
                data = yaml.safe_load(content)
            except yaml.YAMLError as e:
                raise PackageLoadError([LoadError(f"invalid YAML: {e}", location)])
        return cls(data, source_file)

    def _validate_structure(self) -> None:
        """Validate the document shape against PACKAGE_DOCUMENT_SCHEMA."""
        location = Location(source_file=self.source_file)
        if not isinstance(self.data, dict):
            raise PackageLoadError([LoadError("document must be a mapping with a 'package' key", location)])

        if isinstance(self.data.get("package"), str):
            location = Location(package=self.data["package"], source_file=self.source_file)

        errors = sorted(_validator.iter_errors(self.data), key=lambda e: list(e.absolute_path))
        if errors:
            raise PackageLoadError([
                LoadError(f"{e.json_path}: {e.message}", location) for e in errors
            ])

    def parse(self) -> Package:
        """Parse the document into a Package.

        Every definition and machine is parsed even if an earlier one fails.

        Returns:
            Parsed Package

        Raises:
            PackageLoadError: With one error per broken definition or machine
        """
        self.errors = []
        definitions = {}
        for name, node in (self.data.get("definitions") or {}).items():
            location = self._location(name)
            if name in RESERVED_NAMES:
                self.errors.append(LoadError(f"'{name}' is a reserved type name", location))
                continue
            try:
                definitions[name] = self._parse_expr(node, name)
            except ConflictError as e:
                self.errors.append(e.with_location(location))
            except LoadError as e:
                self.errors.append(LoadError(e.message, location))

        machines = {}
        for name, table in (self.data.get("machines") or {}).items():
            try:
                machines[name] = StateMachine(
                    name=name,
                    transitions={state: tuple(targets) for state, targets in table.items()},
                )
            except ValidationError as e:
                reasons = "; ".join(err["msg"] for err in e.errors())
                self.errors.append(LoadError(f"invalid state machine: {reasons}", self._location(name)))

        if self.errors:
            raise PackageLoadError(self.errors)

        version = self.data.get("version")
        return Package(
            name=self.name,
            imports=tuple(self.data.get("imports") or ()),
            definitions=definitions,
            machines=machines,
            description=self.data.get("description"),
            version=str(version) if version is not None else None,
            source_file=self.source_file,
        )

    def _location(self, definition: str | None = None) -> Location:
        return Location(package=self.name, definition=definition, source_file=self.source_file)

    # -------------------------------------------------------------------------
    # Type expressions
    # -------------------------------------------------------------------------

    def _parse_expr(self, node: Any, path: str) -> Any:
        """Parse a type expression node.

        Args:
            node: Shorthand string or mapping
            path: Path of the node for error messages

        Returns:
            Parsed type expression
        """
        # YAML reads a bare ``null`` as None
        if node is None:
            return AtomType(kind=AtomKind.NULL)
        if isinstance(node, str):
            return self._parse_name(node, path)

        misplaced = FIELD_KEYS.intersection(node) - {"description"}
        if misplaced:
            raise LoadError(f"{path}: {', '.join(sorted(misplaced))} is only allowed on struct fields")

        if "ref" in node:
            self._only(node, {"ref", "description"}, path)
            return self._parse_ref(node["ref"], path)
        if "one_of" in node:
            self._only(node, {"one_of", "description"}, path)
            return make_union([
                self._parse_expr(alt, f"{path}.one_of[{i}]") for i, alt in enumerate(node["one_of"])
            ])
        if "all_of" in node:
            self._only(node, {"all_of", "description"}, path)
            return compose(*[
                self._parse_expr(part, f"{path}.all_of[{i}]") for i, part in enumerate(node["all_of"])
            ])
        if "when" in node:
            self._only(node, {"when", "then", "description"}, path)
            if "then" not in node:
                raise LoadError(f"{path}: 'when' needs a 'then'")
            return ConditionalType(
                predicate=self._parse_predicate(node["when"]),
                then=self._parse_expr(node["then"], f"{path}.then"),
            )
        if "type" not in node:
            if "enum" in node:
                self._only(node, {"enum", "description"}, path)
                return _literal_union(node["enum"])
            raise LoadError(f"{path}: a type needs 'type', 'ref', 'one_of', 'all_of', 'enum' or 'when'")

        type_name = node["type"] if node["type"] is not None else "null"
        if type_name in SCALAR_TYPES:
            return self._parse_atom(type_name, node, path)
        if type_name == "struct":
            return self._parse_struct(node, path)
        if type_name == "list":
            return self._parse_list(node, path)
        self._only(node, {"type", "description"}, path)
        return self._parse_ref(type_name, path)

    def _only(self, node: dict[str, Any], allowed: set[str], path: str) -> None:
        extra = set(node) - allowed
        if extra:
            raise LoadError(f"{path}: unexpected key(s) {', '.join(sorted(extra))}")

    def _parse_name(self, name: str, path: str) -> Any:
        if name in SCALAR_TYPES:
            return self._parse_atom(name, {}, path)
        if name == "struct":
            return StructType()
        if name == "list":
            raise LoadError(f"{path}: a list needs 'items'")
        return self._parse_ref(name, path)

    def _parse_ref(self, name: str, path: str) -> RefType:
        package, _, definition = name.rpartition(".")
        if not re.match(IDENTIFIER, definition) or (package and not re.match(IDENTIFIER, package)):
            raise LoadError(f"{path}: '{name}' is not a type name")
        if definition in RESERVED_NAMES:
            raise LoadError(f"{path}: '{name}' refers to a reserved type name")
        return RefType(name=definition, package=package or self.name)

    def _parse_atom(self, type_name: str, node: dict[str, Any], path: str) -> AtomType:
        kind = AtomKind.NUMBER if type_name == "int" else AtomKind(type_name)
        allowed = {"type", "description"} | LITERAL_KEYS
        if kind == AtomKind.NUMBER:
            allowed |= NUMBER_KEYS
        elif kind == AtomKind.STRING:
            allowed |= STRING_KEYS
        extra = set(node) - allowed
        if extra:
            raise LoadError(f"{path}: {', '.join(sorted(extra))} does not apply to {type_name}")

        refinements: list[Any] = []
        if type_name == "int":
            refinements.append(IntegerRefinement())

        minimum, maximum = node.get("minimum"), node.get("maximum")
        exclusive_minimum = node.get("exclusive_minimum", False)
        exclusive_maximum = node.get("exclusive_maximum", False)
        if isinstance(minimum, dict):
            refinements.append(FieldBoundRefinement(op=">" if exclusive_minimum else ">=", field=minimum["field"]))
            minimum = None
        if isinstance(maximum, dict):
            refinements.append(FieldBoundRefinement(op="<" if exclusive_maximum else "<=", field=maximum["field"]))
            maximum = None
        if minimum is not None or maximum is not None:
            refinements.append(RangeRefinement(
                minimum=minimum,
                maximum=maximum,
                exclusive_minimum=exclusive_minimum if minimum is not None else False,
                exclusive_maximum=exclusive_maximum if maximum is not None else False,
            ))

        if "min_length" in node or "max_length" in node:
            refinements.append(LengthRefinement(
                min_length=node.get("min_length"),
                max_length=node.get("max_length"),
            ))

        patterns = node.get("pattern", [])
        for pattern in [patterns] if isinstance(patterns, str) else patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise LoadError(f"{path}: invalid pattern '{pattern}': {e}")
            refinements.append(PatternRefinement(pattern=pattern))

        if "format" in node:
            if node["format"] not in SUPPORTED_FORMATS:
                raise LoadError(
                    f"{path}: invalid format '{node['format']}'. "
                    f"Valid formats: {', '.join(sorted(SUPPORTED_FORMATS))}"
                )
            refinements.append(FormatRefinement(format=node["format"]))

        if "enum" in node:
            refinements.append(LiteralRefinement(values=tuple(node["enum"])))
        if "const" in node:
            refinements.append(LiteralRefinement(values=(node["const"],)))

        try:
            return make_atom(kind, *refinements)
        except ConflictError as e:
            raise ConflictError(f"{path}: {e.message}")

    def _parse_struct(self, node: dict[str, Any], path: str) -> StructType:
        self._only(node, {"type", "fields", "closed", "conditionals", "description"}, path)
        fields = {}
        for name, field_node in (node.get("fields") or {}).items():
            fields[name] = self._parse_field(field_node, f"{path}.{name}")

        conditionals = tuple(
            ConditionalType(
                predicate=self._parse_predicate(item["when"]),
                then=self._parse_expr(item["then"], f"{path}.conditionals[{i}].then"),
            )
            for i, item in enumerate(node.get("conditionals") or [])
        )
        return StructType(fields=fields, closed=node.get("closed", False), conditionals=conditionals)

    def _parse_field(self, node: Any, path: str) -> FieldSpec:
        if not isinstance(node, dict):
            return FieldSpec(type=self._parse_expr(node, path))

        rest = {k: v for k, v in node.items() if k not in FIELD_KEYS}
        if not rest:
            raise LoadError(f"{path}: field has no type")
        default = None
        if "default" in node:
            try:
                default = ensure_value(node["default"], path)
            except ValueError as e:
                raise LoadError(f"{path}: invalid default: {e}")
        return FieldSpec(
            type=self._parse_expr(rest, path),
            required=node.get("required", True),
            has_default="default" in node,
            default=default,
            description=node.get("description"),
        )

    def _parse_list(self, node: dict[str, Any], path: str) -> ListType:
        self._only(node, {"type", "items", "min_items", "max_items", "description"}, path)
        if "items" not in node:
            raise LoadError(f"{path}: a list needs 'items'")
        min_items, max_items = node.get("min_items"), node.get("max_items")
        if min_items is not None and max_items is not None and min_items > max_items:
            raise ConflictError(f"{path}: empty item count range: {min_items}..{max_items}")
        return ListType(
            element=self._parse_expr(node["items"], f"{path}[]"),
            min_items=min_items,
            max_items=max_items,
        )

    def _parse_predicate(self, node: dict[str, Any]) -> Predicate:
        if "present" in node:
            return Predicate(field=node["field"], op="present" if node["present"] else "absent")
        for op in ("equals", "not_equals", "in"):
            if op in node:
                return Predicate(field=node["field"], op=op, value=node[op])
        raise LoadError(f"predicate on '{node['field']}' has no test")


def _literal_union(values: list[Any]) -> Any:
    """Build the union of literal atoms for an ``enum`` list, one atom per kind."""
    by_kind: dict[AtomKind, list[Any]] = {}
    for value in values:
        by_kind.setdefault(AtomKind(kind_of(value).value), []).append(value)
    return make_union([
        make_atom(kind, LiteralRefinement(values=tuple(kind_values)))
        for kind, kind_values in by_kind.items()
    ])


# =============================================================================
# Rendering
# =============================================================================

def to_document(expr: Any, package: str | None = None) -> Any:
    """Render a type expression in package document notation.

    References into ``package`` are written without their package prefix.

    Args:
        expr: Type expression
        package: Package the rendering is relative to

    Returns:
        Shorthand string or mapping
    """
    if isinstance(expr, AtomType):
        return _atom_document(expr)
    if isinstance(expr, RefType):
        if expr.package is None or expr.package == package:
            return expr.name
        return expr.qualified_name
    if isinstance(expr, StructType):
        doc: dict[str, Any] = {"type": "struct"}
        if expr.fields:
            doc["fields"] = {name: _field_document(spec, package) for name, spec in expr.fields.items()}
        if expr.closed:
            doc["closed"] = True
        if expr.conditionals:
            doc["conditionals"] = [
                {"when": _predicate_document(c.predicate), "then": to_document(c.then, package)}
                for c in expr.conditionals
            ]
        return doc if len(doc) > 1 else "struct"
    if isinstance(expr, ListType):
        doc = {"type": "list", "items": to_document(expr.element, package)}
        if expr.min_items is not None:
            doc["min_items"] = expr.min_items
        if expr.max_items is not None:
            doc["max_items"] = expr.max_items
        return doc
    if isinstance(expr, UnionType):
        return {"one_of": [to_document(alt, package) for alt in expr.alternatives]}
    if isinstance(expr, ConditionalType):
        return {"when": _predicate_document(expr.predicate), "then": to_document(expr.then, package)}
    if isinstance(expr, CompositeType):
        return {"all_of": [to_document(op, package) for op in expr.operands()]}
    raise TypeError(f"not a type expression: {expr!r}")


def _atom_document(expr: AtomType) -> Any:
    integer = bool(expr.find("integer"))
    doc: dict[str, Any] = {"type": "int" if integer else expr.kind.value}
    for refinement in expr.refinements:
        if refinement.rule == "range":
            if refinement.minimum is not None:
                doc["minimum"] = refinement.minimum
                if refinement.exclusive_minimum:
                    doc["exclusive_minimum"] = True
            if refinement.maximum is not None:
                doc["maximum"] = refinement.maximum
                if refinement.exclusive_maximum:
                    doc["exclusive_maximum"] = True
        elif refinement.rule == "length":
            if refinement.min_length is not None:
                doc["min_length"] = refinement.min_length
            if refinement.max_length is not None:
                doc["max_length"] = refinement.max_length
        elif refinement.rule == "pattern":
            doc.setdefault("pattern", []).append(refinement.pattern)
        elif refinement.rule == "format":
            doc["format"] = refinement.format
        elif refinement.rule == "literal":
            if len(refinement.values) == 1:
                doc["const"] = refinement.values[0]
            else:
                doc["enum"] = list(refinement.values)
        elif refinement.rule == "field_bound":
            key = "minimum" if refinement.op in (">=", ">") else "maximum"
            doc[key] = {"field": refinement.field}
            if refinement.op in (">", "<"):
                doc[f"exclusive_{key}"] = True
    if len(doc.get("pattern", [])) == 1:
        doc["pattern"] = doc["pattern"][0]
    return doc if len(doc) > 1 else doc["type"]


def _field_document(spec: FieldSpec, package: str | None) -> Any:
    doc = to_document(spec.type, package)
    extra: dict[str, Any] = {}
    if not spec.required:
        extra["required"] = False
    if spec.has_default:
        extra["default"] = spec.default
    if spec.description:
        extra["description"] = spec.description
    if not extra:
        return doc
    if isinstance(doc, str):
        doc = {"type": doc}
    return {**doc, **extra}


def _predicate_document(predicate: Predicate) -> dict[str, Any]:
    if predicate.op in ("present", "absent"):
        return {"field": predicate.field, "present": predicate.op == "present"}
    return {"field": predicate.field, predicate.op: predicate.value}


def parse_package_document(path: Path | str) -> Package:
    """Convenience function to parse a package document file.

    Args:
        path: Path to the document

    Returns:
        Parsed Package
    """
    parser = PackageDocumentParser.from_file(path)
    return parser.parse()
