"""Type expression graph and package document format.

Example usage:
    from schema_engine.schemas.parser import parse_package_file

    package = parse_package_file("packages/base.yaml")
    money = package.definitions["Money"]
"""

from schema_engine.schemas.base import (
    AtomKind,
    AtomType,
    CompositeType,
    ConditionalType,
    FieldSpec,
    ListType,
    Predicate,
    RefType,
    StructType,
    TypeExpr,
    UnionType,
    compose,
    describe,
)

__all__ = [
    "AtomKind",
    "AtomType",
    "CompositeType",
    "ConditionalType",
    "FieldSpec",
    "ListType",
    "Predicate",
    "RefType",
    "StructType",
    "TypeExpr",
    "UnionType",
    "compose",
    "describe",
]
