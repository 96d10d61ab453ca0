from bambayes.alleles import alleles_starting_at, group_by_allele, group_by_sample, within_window
from bambayes.models import Allele, AlleleType, Target


def _allele(kind: AlleleType, pos: int, length: int = 1, bases: str = "A", *, sample: str = "S1", read: str = "r1") -> Allele:
    return Allele(kind, "chr1", pos, length, bases, quality=30, sample=sample, read_name=read)


def test_within_window_intersection() -> None:
    a = _allele(AlleleType.DELETION, 5, length=3, bases="")  # covers 5, 6, 7
    assert within_window(0, 6, a)
    assert within_window(7, 10, a)
    assert not within_window(8, 10, a)
    assert not within_window(0, 5, a)


def test_within_window_zero_length_by_position() -> None:
    ins = _allele(AlleleType.INSERTION, 5, length=0, bases="TT")
    assert within_window(5, 6, ins)
    assert within_window(0, 10, ins)
    assert not within_window(4, 5, ins)
    assert not within_window(6, 10, ins)


def test_within_window_degenerate_window() -> None:
    span = _allele(AlleleType.DELETION, 5, length=3, bases="")
    assert within_window(5, 5, span)
    assert within_window(7, 7, span)
    assert not within_window(8, 8, span)
    ins = _allele(AlleleType.INSERTION, 5, length=0, bases="T")
    assert within_window(5, 5, ins)
    assert not within_window(6, 6, ins)


def test_within_window_accepts_any_span() -> None:
    # anything with position/length works, e.g. a registered alignment view
    class Span:
        position = 10
        length = 5

    assert within_window(14, 20, Span())
    assert not within_window(15, 20, Span())
    assert Target("chr1", 0, 4).length == 4


def test_alleles_starting_at_one_per_read() -> None:
    ref = _allele(AlleleType.REFERENCE, 10, read="r1")
    ins = _allele(AlleleType.INSERTION, 10, length=0, bases="GG", read="r1")
    other = _allele(AlleleType.REFERENCE, 10, read="r2")
    before = _allele(AlleleType.REFERENCE, 9, read="r3")
    out = alleles_starting_at(10, [ref, ins, other, before])
    assert len(out) == 2
    by_read = {a.read_name: a for a in out}
    assert by_read["r1"].type == AlleleType.INSERTION
    assert by_read["r2"].type == AlleleType.REFERENCE


def test_alleles_starting_at_keeps_same_read_name_in_other_samples() -> None:
    a = _allele(AlleleType.REFERENCE, 3, sample="S1", read="r1")
    b = _allele(AlleleType.REFERENCE, 3, sample="S2", read="r1")
    assert len(alleles_starting_at(3, [a, b])) == 2


def test_allele_equality_ignores_observation_details() -> None:
    a = Allele(AlleleType.SUBSTITUTION, "chr1", 4, 1, "G", quality=10, sample="S1", read_name="x")
    b = Allele(AlleleType.SUBSTITUTION, "chr1", 4, 1, "G", quality=40, sample="S2", read_name="y")
    assert a == b
    assert hash(a) == hash(b)
    assert a.describe() == "snp:G"


def test_grouping() -> None:
    alleles = [
        _allele(AlleleType.REFERENCE, 1, sample="S1", read="a"),
        _allele(AlleleType.SUBSTITUTION, 1, bases="C", sample="S2", read="b"),
        _allele(AlleleType.REFERENCE, 1, sample="S2", read="c"),
    ]
    by_sample = group_by_sample(alleles)
    assert list(by_sample) == ["S1", "S2"]
    assert len(by_sample["S2"]) == 2
    groups = group_by_allele(alleles)
    assert [len(g) for g in groups] == [2, 1]
