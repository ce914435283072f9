"""
Tests for the core data model: variable names, their subsumption relation
and the error taxonomy.
"""

import pytest

from autogibbs import (
    AutoGibbsError,
    MissingVariableError,
    Overlap,
    StructuralTraceError,
    UnsupportedCompositionError,
    UnsupportedDistributionError,
    VarName,
)


def vn(s):
    return VarName.parse(s)


@pytest.mark.unit
@pytest.mark.fast
class TestVarNameConstruction:
    """Parsing, address conversion and printing of variable names."""

    def test_plain_symbol(self):
        name = VarName.from_address("m")
        assert name == VarName("m")
        assert name.indexing == ()
        assert str(name) == "m"

    def test_parse_indexed(self):
        assert vn("z[1]") == VarName("z", ((1,),))
        assert vn("x[1, 2]") == VarName("x", ((1, 2),))
        assert vn("x[1][2]") == VarName("x", ((1,), (2,)))

    def test_parse_unicode_symbol(self):
        assert vn("λ") == VarName("λ")
        assert str(vn("μ[0]")) == "μ[0]"

    def test_from_tuple_address(self):
        assert VarName.from_address(("z", 1)) == vn("z[1]")
        assert VarName.from_address(("x", 1, 2)) == vn("x[1][2]")
        assert VarName.from_address(("x", (1, 2))) == vn("x[1, 2]")

    def test_from_address_is_identity_on_names(self):
        name = vn("z[3]")
        assert VarName.from_address(name) is name

    def test_printing_roundtrips_through_parse(self):
        for s in ["x", "x[1]", "x[1, 2]", "x[1][2, 3]"]:
            assert str(vn(s)) == s
            assert vn(str(vn(s))) == vn(s)

    def test_bad_addresses(self):
        with pytest.raises(ValueError):
            VarName.parse("x[1")
        with pytest.raises(ValueError):
            VarName.from_address((1, 2))

    def test_names_are_hashable(self):
        d = {vn("z[1]"): 1, vn("z[2]"): 2}
        assert d[VarName.from_address(("z", 1))] == 1

    def test_index_and_parent(self):
        assert vn("z").index(3) == vn("z[3]")
        assert vn("x[1]").index((2, 3)) == vn("x[1][2, 3]")
        assert vn("x[1][2]").parent() == vn("x[1]")
        assert vn("x").parent() == vn("x")


@pytest.mark.unit
@pytest.mark.fast
class TestSubsumption:
    """The containment relation between names."""

    def test_reflexive(self):
        for s in ["x", "x[1]", "x[1, 2]"]:
            assert vn(s).subsumes(vn(s))

    def test_container_subsumes_element(self):
        assert vn("x").subsumes(vn("x[1]"))
        assert vn("x[1]").subsumes(vn("x[1][2]"))
        assert vn("x[1]").subsumes(vn("x[1, 2]"))

    def test_element_does_not_subsume_container(self):
        assert not vn("x[1]").subsumes(vn("x"))

    def test_siblings_and_other_symbols(self):
        assert not vn("x[1]").subsumes(vn("x[2]"))
        assert not vn("x").subsumes(vn("y"))
        assert not vn("x").subsumes(vn("xs[1]"))

    def test_excess(self):
        assert vn("x").excess(vn("x[1][2]")) == (1, 2)
        assert vn("x[1]").excess(vn("x[1, 2]")) == (2,)
        assert vn("x[1]").excess(vn("x[1]")) == ()

    @pytest.mark.parametrize(
        "source,target,expected",
        [
            ("x", "x", Overlap.EQUAL),
            ("x[1]", "x[1]", Overlap.EQUAL),
            ("x[1][2]", "x[1, 2]", Overlap.CONTAINS_BOTH),
            ("x", "x[1]", Overlap.SOURCE_CONTAINS_TARGET),
            ("x[1]", "x", Overlap.TARGET_CONTAINS_SOURCE),
            ("x[1]", "x[2]", Overlap.DISJOINT),
            ("x", "y", Overlap.DISJOINT),
        ],
    )
    def test_overlap(self, source, target, expected):
        assert vn(source).overlap(vn(target)) is expected
        assert vn(source).overlaps(vn(target)) == (expected is not Overlap.DISJOINT)


@pytest.mark.unit
@pytest.mark.fast
def test_error_taxonomy():
    """All errors share a base class, and map onto the builtin errors callers
    would catch."""
    for error in [
        StructuralTraceError,
        UnsupportedDistributionError,
        UnsupportedCompositionError,
        MissingVariableError,
    ]:
        assert issubclass(error, AutoGibbsError)
    assert issubclass(UnsupportedDistributionError, ValueError)
    assert issubclass(MissingVariableError, KeyError)
