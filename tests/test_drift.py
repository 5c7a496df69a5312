"""Tests for the Drift Resolver."""

from pathlib import Path

import pytest

from schema_engine.errors import DriftError
from schema_engine.packages.drift import DriftReport, DriftStatus, check_drift, first_difference
from schema_engine.packages.loader import load_packages
from schema_engine.schemas import AtomKind, AtomType, FieldSpec, StructType

# Test data paths
DRIFT_DIR = Path(__file__).parent.parent / "examples" / "drift"

DEPENDENT = """\
package: shop
imports: [base]
definitions:
  Item:
    type: struct
    fields:
      code: base.Code
  Price:
    type: struct
    fields:
      money: base.Money
"""

BASE = """\
package: base
definitions:
  Code: {{type: string{code}}}
  Money:
    type: struct
    fields:
      amount: int
      currency: {{type: string{currency}}}
"""


@pytest.fixture
def versions(write_package, temp_dir):
    """Write an old and a new package set and return a loader for both."""

    def _versions(old_base: dict, new_base: dict | None, dependent: str = DEPENDENT):
        old_dir, new_dir = temp_dir / "old", temp_dir / "new"
        write_package("base.yaml", BASE.format(**old_base), old_dir)
        write_package("shop.yaml", dependent, old_dir)
        write_package("shop.yaml", dependent, new_dir)
        if new_base is not None:
            write_package("base.yaml", BASE.format(**new_base), new_dir)
        else:
            write_package("base.yaml", "package: base\n", new_dir)
        return load_packages([old_dir]), load_packages([new_dir], lenient=True)

    return _versions


def by_reference(reports: list[DriftReport]) -> dict[str, DriftReport]:
    return {r.reference: r for r in reports}


# =============================================================================
# Classification Tests
# =============================================================================

class TestClassification:
    """Tests for per-reference drift statuses."""

    def test_example_drift(self):
        old = load_packages([DRIFT_DIR / "old"])
        new = load_packages([DRIFT_DIR / "new"], lenient=True)
        reports = check_drift(old, new)

        assert len(reports) == 4
        unsafe = [r for r in reports if r.unsafe]
        assert len(unsafe) == 1
        report = unsafe[0]
        assert report.status == DriftStatus.NARROWED_INCOMPATIBLE
        assert (report.package, report.definition, report.path) == ("billing", "Order", "status")
        assert report.reference == "base.Status"
        assert report.changed == "status"
        assert all(r.status == DriftStatus.UNCHANGED for r in reports if r is not report)

    def test_new_graph_records_broken_dependent(self):
        new = load_packages([DRIFT_DIR / "new"], lenient=True)
        assert len(new.problems) == 1
        assert new.problems[0].location.definition == "Order"

    def test_unchanged(self, versions):
        old, new = versions({"code": "", "currency": ""}, {"code": "", "currency": ""})
        assert {r.status for r in check_drift(old, new)} == {DriftStatus.UNCHANGED}

    def test_widened(self, versions):
        old, new = versions({"code": ", max_length: 10", "currency": ""}, {"code": "", "currency": ""})
        report = by_reference(check_drift(old, new))["base.Code"]
        assert report.status == DriftStatus.WIDENED
        assert not report.unsafe

    def test_narrowed_but_compatible(self, versions):
        old, new = versions({"code": "", "currency": ""}, {"code": ", max_length: 10", "currency": ""})
        report = by_reference(check_drift(old, new))["base.Code"]
        assert report.status == DriftStatus.NARROWED
        assert not report.unsafe

    def test_changed_path_names_the_field(self, versions):
        old, new = versions({"code": "", "currency": ""}, {"code": "", "currency": ", min_length: 3"})
        reports = by_reference(check_drift(old, new))
        assert reports["base.Money"].status == DriftStatus.NARROWED
        assert reports["base.Money"].changed == "currency"
        assert reports["base.Code"].status == DriftStatus.UNCHANGED

    def test_dependent_constraint_conflicts(self, versions):
        dependent = DEPENDENT.replace("code: base.Code", "code: {all_of: [base.Code, {type: string, min_length: 8}]}")
        old, new = versions({"code": "", "currency": ""}, {"code": ", max_length: 4", "currency": ""}, dependent)
        report = by_reference(check_drift(old, new))["base.Code"]
        assert report.status == DriftStatus.NARROWED_INCOMPATIBLE
        assert report.path == "code"
        assert report.unsafe

    def test_dependent_default_no_longer_valid(self, versions):
        dependent = DEPENDENT.replace("code: base.Code", "code: {type: base.Code, default: LONGCODE}")
        old, new = versions({"code": "", "currency": ""}, {"code": ", max_length: 4", "currency": ""}, dependent)
        report = by_reference(check_drift(old, new))["base.Code"]
        assert report.status == DriftStatus.NARROWED_INCOMPATIBLE
        assert "default 'LONGCODE' is no longer valid" in report.message

    def test_disjoint_definitions_incompatible(self, versions):
        old, new = versions({"code": ", const: x", "currency": ""}, {"code": ", const: y", "currency": ""})
        report = by_reference(check_drift(old, new))["base.Code"]
        assert report.status == DriftStatus.NARROWED_INCOMPATIBLE
        assert report.message.startswith("old and new definitions have no value in common")

    def test_removed(self, versions):
        old, new = versions({"code": "", "currency": ""}, None)
        reports = check_drift(old, new)
        assert {r.status for r in reports} == {DriftStatus.REMOVED}
        assert all(r.unsafe for r in reports)
        assert len(new.problems) == 2

    def test_missing_dependent_skipped(self, write_package, temp_dir):
        write_package("base.yaml", BASE.format(code="", currency=""), temp_dir / "old")
        write_package("shop.yaml", DEPENDENT, temp_dir / "old")
        write_package("base.yaml", "package: base\n", temp_dir / "new")
        old = load_packages([temp_dir / "old"])
        new = load_packages([temp_dir / "new"])
        assert check_drift(old, new) == []


# =============================================================================
# Strict Mode and Reports
# =============================================================================

class TestStrictMode:
    """Tests for failing on unsafe drift."""

    def test_strict_raises(self):
        old = load_packages([DRIFT_DIR / "old"])
        new = load_packages([DRIFT_DIR / "new"], lenient=True)
        with pytest.raises(DriftError) as exc_info:
            check_drift(old, new, strict=True)
        assert "base.Status" in exc_info.value.message
        assert len(exc_info.value.reports) == 4
        assert exc_info.value.location.package == "billing"

    def test_strict_passes_safe_drift(self, versions):
        old, new = versions({"code": "", "currency": ""}, {"code": ", max_length: 10", "currency": ""})
        assert check_drift(old, new, strict=True)


class TestReports:
    """Tests for report serialization and difference paths."""

    def test_to_dict(self):
        report = DriftReport(
            package="shop",
            definition="Item",
            path="code",
            reference="base.Code",
            status=DriftStatus.REMOVED,
        )
        data = report.to_dict()
        assert data["status"] == "removed"
        assert data["reference"] == "base.Code"

    def test_unsafe_statuses(self):
        assert {s for s in DriftStatus if s.unsafe} == {DriftStatus.NARROWED_INCOMPATIBLE, DriftStatus.REMOVED}

    def test_first_difference(self):
        string = AtomType(kind=AtomKind.STRING)
        number = AtomType(kind=AtomKind.NUMBER)
        old = StructType(fields={"a": FieldSpec(type=string), "b": FieldSpec(type=string)})
        assert first_difference(old, old) is None
        new = old.model_copy(update={"fields": {**old.fields, "b": FieldSpec(type=number)}})
        assert first_difference(old, new) == "b"
        new = old.model_copy(update={"fields": {"a": old.fields["a"]}})
        assert first_difference(old, new) == "b"
